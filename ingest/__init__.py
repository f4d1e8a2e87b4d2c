"""
Ingest package: GitLab API client and OAuth token manager.
"""
