"""
Named, journaled pipeline steps.
A step's JSON result is recorded under run:<run_id>:user:<user_id>:<step>; when the host retries the same run,
recorded steps are replayed instead of executed again.
"""
import logging
from typing import Any, Callable, List, Optional

from storage.journal import StepJournal

logger = logging.getLogger(__name__)


def step_key(run_id: str, user_id: str, name: str) -> str:
    return f"run:{run_id}:user:{user_id}:{name}"


class StepRunner:
    def __init__(self, user_id: str, run_id: Optional[str] = None, journal: Optional[StepJournal] = None):
        self.user_id = user_id
        self.run_id = run_id
        self.journal = journal
        self.executed: List[str] = []
        self.replayed: List[str] = []

    @property
    def journaling(self) -> bool:
        return self.journal is not None and self.run_id is not None

    def run(self, name: str, fn: Callable[[], Any], record: bool = True) -> Any:
        """Run step `name`, or return its recorded result. record=False for results that must not be persisted."""
        if record and self.journaling:
            cached = self.journal.get(step_key(self.run_id, self.user_id, name))
            if cached is not None:
                logger.debug("step %s replayed for user=%s run=%s", name, self.user_id, self.run_id)
                self.replayed.append(name)
                return cached["response"]
        logger.debug("step %s starting for user=%s", name, self.user_id)
        result = fn()
        self.executed.append(name)
        if record and self.journaling:
            self.journal.set(step_key(self.run_id, self.user_id, name), result)
        return result


__all__ = ["StepRunner", "step_key"]
