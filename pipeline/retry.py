"""
Cancellable backoff.
Waits go through a CancellationToken so abandoning an operation stops every pending retry immediately.
"""

import logging
import math
import threading
from typing import Callable, List, Optional, Sequence, TypeVar

from errors import OperationCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_DELAYS: List[float] = [1.0, 2.0, 4.0]


def resolve_delays(delays: Optional[Sequence[float]] = None) -> List[float]:
    """Backoff schedule in seconds; DEFAULT_DELAYS when none is given."""
    if delays is not None:
        return [float(d) for d in delays]
    return list(DEFAULT_DELAYS)


class CancellationToken:
    """
    Cooperative cancellation flag. wait() doubles as an interruptible sleep.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`. Returns True if cancelled during (or before) the wait."""
        return self._event.wait(max(0.0, float(seconds)))

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise OperationCancelled("operation cancelled")


def countdown(delay: float, token: CancellationToken, on_tick: Optional[Callable[[int], None]] = None):
    """
    Wait `delay` seconds in one-second ticks, reporting the whole seconds remaining before each tick.
    Raises OperationCancelled as soon as the token is cancelled.
    """
    remaining = float(delay)
    token.raise_if_cancelled()
    while remaining > 0:
        if on_tick is not None:
            on_tick(int(math.ceil(remaining)))
        step = min(1.0, remaining)
        if token.wait(step):
            raise OperationCancelled("operation cancelled during backoff")
        remaining -= step


def retry_with_backoff(
    fn: Callable[[], T],
    should_retry: Callable[[BaseException], bool],
    delays: Optional[Sequence[float]] = None,
    token: Optional[CancellationToken] = None,
    on_retry: Optional[Callable[[int, float, BaseException], None]] = None,
    on_tick: Optional[Callable[[int], None]] = None,
) -> T:
    """
    Call fn; when it raises an error accepted by should_retry, wait the next delay and call it again.
    After the last delay is used the final error propagates. Other errors propagate immediately.
    """
    schedule = resolve_delays(delays)
    token = token or CancellationToken()
    attempt = 0
    while True:
        token.raise_if_cancelled()
        try:
            return fn()
        except Exception as ex:
            if not should_retry(ex) or attempt >= len(schedule):
                raise
            delay = schedule[attempt]
            attempt += 1
            logger.info("retry %d/%d in %.1fs after %s", attempt, len(schedule), delay, type(ex).__name__)
            if on_retry is not None:
                on_retry(attempt, delay, ex)
            countdown(delay, token, on_tick)


__all__ = ["CancellationToken", "countdown", "retry_with_backoff", "resolve_delays", "DEFAULT_DELAYS"]
