"""
Manual refresh: a user-triggered single-user sync with its own rate-limit backoff.

Only RateLimited is retried (1s, 2s, 4s by default, each wait reported as a countdown). Everything else is
surfaced immediately as an outcome with a user-facing message.
"""
import logging
import threading
from typing import Callable, Optional, Sequence, Set

from errors import (
    AuthExpired,
    NoMonitoredProjects,
    OperationCancelled,
    RateLimited,
    RefreshInProgress,
    Unauthorized,
    UpstreamServerError,
)
from pipeline.retry import CancellationToken, resolve_delays, retry_with_backoff
from pipeline.user_sync import UserSyncPipeline, UserSyncResult

logger = logging.getLogger(__name__)

MSG_RATE_LIMITED = "GitLab rate limit exceeded. Please try again in a few minutes."
MSG_REAUTH = "GitLab authentication expired. Please log in again."
MSG_UNAVAILABLE = "GitLab server is temporarily unavailable. Please try again in a moment."
MSG_NO_PROJECTS = "No monitored projects found. Please select projects to monitor."
MSG_CANCELLED = "Refresh cancelled."


def success_message(new_items: int) -> str:
    return f"Refreshed! {new_items} new item{'' if new_items == 1 else 's'} found"


def countdown_message(seconds: int) -> str:
    return f"Rate limited by GitLab. Retrying in {seconds}s..."


class RefreshOutcome:
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    REAUTH_REQUIRED = "reauth_required"
    UNAVAILABLE = "unavailable"
    NO_PROJECTS = "no_projects"
    CANCELLED = "cancelled"
    FAILED = "failed"

    def __init__(self, status: str, message: str, result: Optional[UserSyncResult] = None, attempts: int = 1,
                 error: Optional[BaseException] = None):
        self.status = status
        self.message = message
        self.result = result
        self.attempts = attempts
        self.error = error

    @property
    def ok(self) -> bool:
        return self.status == self.SUCCESS

    def to_dict(self):
        return {
            "status": self.status,
            "message": self.message,
            "attempts": self.attempts,
            "result": self.result.to_dict() if self.result else None,
        }

    def __repr__(self):
        return f"RefreshOutcome({self.status!r}, attempts={self.attempts})"


def outcome_for_error(ex: BaseException, attempts: int) -> RefreshOutcome:
    if isinstance(ex, OperationCancelled):
        return RefreshOutcome(RefreshOutcome.CANCELLED, MSG_CANCELLED, attempts=attempts, error=ex)
    if isinstance(ex, RateLimited):
        return RefreshOutcome(RefreshOutcome.RATE_LIMITED, MSG_RATE_LIMITED, attempts=attempts, error=ex)
    if isinstance(ex, (AuthExpired, Unauthorized)):
        return RefreshOutcome(RefreshOutcome.REAUTH_REQUIRED, MSG_REAUTH, attempts=attempts, error=ex)
    if isinstance(ex, UpstreamServerError):
        return RefreshOutcome(RefreshOutcome.UNAVAILABLE, MSG_UNAVAILABLE, attempts=attempts, error=ex)
    if isinstance(ex, NoMonitoredProjects):
        return RefreshOutcome(RefreshOutcome.NO_PROJECTS, MSG_NO_PROJECTS, attempts=attempts, error=ex)
    return RefreshOutcome(RefreshOutcome.FAILED, f"Refresh failed: {ex}", attempts=attempts, error=ex)


class RefreshHandle:
    """A manual refresh running in the background. cancel() stops any pending retry wait."""

    def __init__(self, user_id: str, token: CancellationToken):
        self.user_id = user_id
        self.token = token
        self.outcome: Optional[RefreshOutcome] = None
        self._done = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def cancel(self):
        self.token.cancel()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> Optional[RefreshOutcome]:
        self._done.wait(timeout)
        return self.outcome


class ManualRefreshController:
    """
    Runs manual refreshes, at most one in flight per user.
    The in-flight set is owned by the controller instance, not shared module state.
    """

    def __init__(self, pipeline: UserSyncPipeline, delays: Optional[Sequence[float]] = None):
        self.pipeline = pipeline
        self.delays = resolve_delays(delays)
        self._in_flight: Set[str] = set()
        self._guard = threading.Lock()

    def is_refreshing(self, user_id: str) -> bool:
        with self._guard:
            return user_id in self._in_flight

    def _claim(self, user_id: str):
        with self._guard:
            if user_id in self._in_flight:
                raise RefreshInProgress(user_id)
            self._in_flight.add(user_id)

    def _release(self, user_id: str):
        with self._guard:
            self._in_flight.discard(user_id)

    def _execute(
        self,
        user_id: str,
        token: CancellationToken,
        on_countdown: Optional[Callable[[int], None]],
        on_retry: Optional[Callable[[int, float, BaseException], None]],
    ) -> RefreshOutcome:
        attempts = {"n": 0}

        def attempt():
            attempts["n"] += 1
            return self.pipeline.run(user_id)

        def retrying(n: int, delay: float, ex: BaseException):
            logger.warning("manual-refresh: user=%s rate limited, retry %d/%d in %.0fs", user_id, n, len(self.delays), delay)
            if on_retry is not None:
                on_retry(n, delay, ex)

        try:
            result = retry_with_backoff(
                attempt,
                should_retry=lambda ex: isinstance(ex, RateLimited),
                delays=self.delays,
                token=token,
                on_retry=retrying,
                on_tick=on_countdown,
            )
        except Exception as ex:
            outcome = outcome_for_error(ex, attempts["n"])
            if outcome.status == RefreshOutcome.FAILED:
                logger.exception("manual-refresh: user=%s failed", user_id)
            else:
                logger.warning("manual-refresh: user=%s %s: %s", user_id, outcome.status, ex)
            return outcome
        logger.info("manual-refresh: user=%s stored=%d after %d attempt(s)", user_id, result.stored, attempts["n"])
        return RefreshOutcome(RefreshOutcome.SUCCESS, success_message(result.stored), result=result, attempts=attempts["n"])

    def refresh(
        self,
        user_id: str,
        cancel_token: Optional[CancellationToken] = None,
        on_countdown: Optional[Callable[[int], None]] = None,
        on_retry: Optional[Callable[[int, float, BaseException], None]] = None,
    ) -> RefreshOutcome:
        """Run a refresh in the calling thread. Raises RefreshInProgress if one is already running for the user."""
        self._claim(user_id)
        try:
            return self._execute(user_id, cancel_token or CancellationToken(), on_countdown, on_retry)
        finally:
            self._release(user_id)

    def start(
        self,
        user_id: str,
        on_countdown: Optional[Callable[[int], None]] = None,
        on_retry: Optional[Callable[[int, float, BaseException], None]] = None,
    ) -> RefreshHandle:
        """Start a refresh in the background. The per-user guard is taken before this returns."""
        self._claim(user_id)
        handle = RefreshHandle(user_id, CancellationToken())

        def target():
            try:
                handle.outcome = self._execute(user_id, handle.token, on_countdown, on_retry)
            finally:
                self._release(user_id)
                handle._done.set()

        handle._thread = threading.Thread(target=target, name=f"manual-refresh-{user_id}", daemon=True)
        handle._thread.start()
        return handle


__all__ = [
    "ManualRefreshController",
    "RefreshOutcome",
    "RefreshHandle",
    "success_message",
    "countdown_message",
    "outcome_for_error",
]
