"""
Pipeline package: per-user sync, scheduled job runner and manual refresh.
"""
