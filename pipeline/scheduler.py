"""
Scheduled sync job.

One run syncs every user with monitored projects. A failing user never affects the others: the error is logged,
counted, and the user is picked up again by the next run because its cursor did not move.
"""
import logging
import threading
import uuid
from collections import deque
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional

from croniter import croniter

from errors import ConcurrencyLimitReached, OperationCancelled, requires_reauth
from normalize.util import utcnow
from pipeline.retry import CancellationToken
from pipeline.user_sync import UserSyncPipeline
from storage.db import Database

logger = logging.getLogger(__name__)

DEFAULT_CRON = "*/10 * * * *"
FAILURE_RATE_THRESHOLD = 0.5
SUMMARY_HISTORY = 50


class RunSummary:
    """Counts for one run plus the derived health verdict."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        self.total = 0
        self.processed = 0
        self.failed = 0
        self.skipped = 0
        self.cancelled = False
        self.results: Dict[str, Dict[str, Any]] = {}
        self.errors: Dict[str, str] = {}

    @property
    def attempted(self) -> int:
        return self.processed + self.failed

    @property
    def failure_rate(self) -> float:
        return self.failed / self.attempted if self.attempted else 0.0

    @property
    def healthy(self) -> bool:
        if self.total == 0:
            return True
        return self.processed >= 1 and self.failure_rate < FAILURE_RATE_THRESHOLD

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "total": self.total,
            "processed": self.processed,
            "failed": self.failed,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "healthy": self.healthy,
            "failure_rate": round(self.failure_rate, 4),
            "errors": dict(self.errors),
        }


class JobGate:
    """Global ceiling on concurrently running job instances."""

    def __init__(self, max_concurrency: int = 5):
        self.max_concurrency = int(max_concurrency)
        self._sem = threading.BoundedSemaphore(self.max_concurrency)

    @contextmanager
    def slot(self):
        if not self._sem.acquire(blocking=False):
            raise ConcurrencyLimitReached(f"{self.max_concurrency} sync job(s) already running")
        try:
            yield
        finally:
            self._sem.release()


class SyncJob:
    def __init__(self, db: Database, pipeline: UserSyncPipeline, gate: Optional[JobGate] = None):
        self.db = db
        self.pipeline = pipeline
        self.gate = gate or JobGate()

    def _sync_user(self, user_id: str, run_id: str, summary: RunSummary):
        try:
            result = self.pipeline.run(user_id, run_id)
        except Exception as ex:
            if requires_reauth(ex):
                summary.skipped += 1
                logger.warning("api-polling: user=%s requires re-authentication, skipped: %s", user_id, ex)
            else:
                summary.failed += 1
                logger.exception("api-polling: sync failed for user=%s", user_id)
            summary.errors[user_id] = f"{type(ex).__name__}: {ex}"
            return
        summary.processed += 1
        summary.results[user_id] = result.to_dict()

    def run(self, run_id: Optional[str] = None, cancel_token: Optional[CancellationToken] = None) -> RunSummary:
        """
        One scheduled run over all eligible users, sequentially.
        Cancellation is honoured between users; the user in progress always completes.
        Errors enumerating users propagate and abort the run.
        """
        run_id = run_id or uuid.uuid4().hex
        summary = RunSummary(run_id)
        with self.gate.slot():
            users = self.db.users_with_projects()
            summary.total = len(users)
            logger.info("api-polling: run %s starting for %d user(s)", run_id, len(users))
            for user_id in users:
                if cancel_token is not None and cancel_token.cancelled:
                    summary.cancelled = True
                    logger.warning("api-polling: run %s cancelled before user=%s", run_id, user_id)
                    break
                self._sync_user(user_id, run_id, summary)
        log = logger.info if summary.healthy else logger.error
        log(
            "api-polling: run %s done processed=%d failed=%d skipped=%d healthy=%s",
            run_id, summary.processed, summary.failed, summary.skipped, summary.healthy,
        )
        return summary


def run_with_retries(
    job: SyncJob,
    retries: int = 3,
    run_id: Optional[str] = None,
    cancel_token: Optional[CancellationToken] = None,
    backoff_base: float = 1.0,
) -> RunSummary:
    """
    Host-level retry of a whole run. Every attempt reuses the run id so journaled steps are replayed.
    The last error propagates once the budget is spent; a full concurrency gate is not retried.
    """
    run_id = run_id or uuid.uuid4().hex
    token = cancel_token or CancellationToken()
    attempt = 0
    while True:
        try:
            return job.run(run_id, token)
        except ConcurrencyLimitReached:
            raise
        except Exception:
            attempt += 1
            if attempt > retries:
                raise
            delay = backoff_base * (2 ** (attempt - 1))
            logger.warning("api-polling: run %s failed, retry %d/%d in %.1fs", run_id, attempt, retries, delay, exc_info=True)
            if token.wait(delay):
                raise OperationCancelled(f"run {run_id} cancelled while waiting to retry")


class CronScheduler:
    """
    Fires the job on a cron cadence. Each tick runs in its own thread; the job gate bounds how many overlap.
    """

    def __init__(
        self,
        job: SyncJob,
        cron: str = DEFAULT_CRON,
        retries: int = 3,
        clock: Callable[[], datetime] = utcnow,
        cancel_token: Optional[CancellationToken] = None,
        history: int = SUMMARY_HISTORY,
    ):
        self.job = job
        self.cron = cron
        self.retries = retries
        self.clock = clock
        self.cancel_token = cancel_token or CancellationToken()
        self.threads: List[threading.Thread] = []
        self.summaries: Deque[RunSummary] = deque(maxlen=history)

    def next_fire(self, after: datetime) -> datetime:
        return croniter(self.cron, after).get_next(datetime)

    def _run_tick(self, run_id: str):
        try:
            self.summaries.append(run_with_retries(self.job, self.retries, run_id, self.cancel_token))
        except ConcurrencyLimitReached as ex:
            logger.warning("api-polling: tick %s skipped: %s", run_id, ex)
        except OperationCancelled:
            logger.info("api-polling: tick %s cancelled", run_id)
        except Exception:
            logger.exception("api-polling: run %s failed after %d retries", run_id, self.retries)

    def tick(self, fire_at: datetime) -> threading.Thread:
        run_id = f"cron-{fire_at.strftime('%Y%m%dT%H%M%S')}"
        thread = threading.Thread(target=self._run_tick, args=(run_id,), name=run_id, daemon=True)
        thread.start()
        self.threads = [t for t in self.threads if t.is_alive()] + [thread]
        return thread

    def run_forever(self, max_ticks: Optional[int] = None):
        """Block until cancelled (or max_ticks fired), starting a run at every cron fire time."""
        ticks = 0
        last = self.clock()
        logger.info("api-polling: scheduler started with cron %r", self.cron)
        while not self.cancel_token.cancelled:
            fire_at = self.next_fire(last)
            if self.cancel_token.wait((fire_at - self.clock()).total_seconds()):
                break
            self.tick(fire_at)
            last = fire_at
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
        logger.info("api-polling: scheduler stopped")

    def stop(self, join_timeout: Optional[float] = None):
        self.cancel_token.cancel()
        for t in self.threads:
            t.join(join_timeout)


__all__ = ["SyncJob", "RunSummary", "JobGate", "CronScheduler", "run_with_retries"]
