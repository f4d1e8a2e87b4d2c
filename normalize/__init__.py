"""
Normalize package: canonical models and the pure transformers that build them.
"""
