"""
Error taxonomy for the sync pipeline.
Upstream failures carry the HTTP status so callers can pick a retry policy without string matching.
"""
from typing import Optional


class MirrorError(Exception):
    """Base class for every error raised by the mirror."""


class ConfigError(MirrorError):
    """Invalid configuration value (bad number, bad cron expression, unreadable file)."""


class AuthExpired(MirrorError):
    """The refresh token was rejected or no credentials are stored: the user must log in again."""

    def __init__(self, user_id: str, message: str = "GitLab session expired or revoked. Please log in again."):
        super().__init__(message)
        self.user_id = user_id


class UpstreamError(MirrorError):
    """
    Non-success response (or transport failure) from the GitLab API.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class Unauthorized(UpstreamError):
    """401: token rejected even though the token manager believed it fresh."""


class Forbidden(UpstreamError):
    """403: token is valid but lacks access to the project."""


class RateLimited(UpstreamError):
    """429: the caller decides whether and when to retry."""

    def __init__(self, message: str, status_code: Optional[int] = 429, retry_after: Optional[float] = None):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class UpstreamServerError(UpstreamError):
    """5xx or connection failure. Transient; not retried inside a run."""


class UpstreamTimeout(UpstreamServerError):
    """The request deadline elapsed."""


class ValidationError(MirrorError):
    """A single upstream item is malformed. The item is skipped, the sync continues."""

    def __init__(self, kind: str, item_id, reason: str):
        super().__init__(f"invalid {kind} {item_id!r}: {reason}")
        self.kind = kind
        self.item_id = item_id
        self.reason = reason


class NoMonitoredProjects(MirrorError):
    def __init__(self, user_id: str):
        super().__init__("No monitored projects found. Please select projects to monitor.")
        self.user_id = user_id


class RefreshInProgress(MirrorError):
    def __init__(self, user_id: str):
        super().__init__(f"a refresh is already running for user {user_id}")
        self.user_id = user_id


class OperationCancelled(MirrorError):
    """The caller abandoned the operation."""


class ConcurrencyLimitReached(MirrorError):
    """All job slots are taken; the run was not started."""


def requires_reauth(exc: BaseException) -> bool:
    """True when the error means the user has to re-authenticate (counted as skipped, not failed)."""
    return isinstance(exc, (AuthExpired, Unauthorized))


__all__ = [
    "MirrorError",
    "ConfigError",
    "AuthExpired",
    "UpstreamError",
    "Unauthorized",
    "Forbidden",
    "RateLimited",
    "UpstreamServerError",
    "UpstreamTimeout",
    "ValidationError",
    "NoMonitoredProjects",
    "RefreshInProgress",
    "OperationCancelled",
    "ConcurrencyLimitReached",
    "requires_reauth",
]
