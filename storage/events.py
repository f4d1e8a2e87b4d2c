"""
Idempotent event storage.
Events are keyed by (user_id, external_event_id); unchanged events are skipped, changed ones overwrite their mutable fields.
"""
import logging
from typing import Iterable, List

from normalize.models import MUTABLE_FIELDS, Event
from storage.db import Database, event_to_row

logger = logging.getLogger(__name__)


class StoreResult:
    def __init__(self, stored: int = 0, skipped: int = 0):
        self.stored = stored
        self.skipped = skipped

    def to_dict(self):
        return {"stored": self.stored, "skipped": self.skipped}

    def __repr__(self):
        return f"StoreResult(stored={self.stored}, skipped={self.skipped})"


def _chunks(items: List[Event], size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _unchanged(existing, row) -> bool:
    return all(existing[f] == row[f] for f in MUTABLE_FIELDS)


# noinspection SqlResolve
def _store_one(cur, user_id: str, event: Event) -> bool:
    """Write one event inside an open transaction. Returns True if a row was inserted or updated."""
    row = event_to_row(event)
    cur.execute(
        f"SELECT {', '.join(MUTABLE_FIELDS)} FROM events WHERE user_id = ? AND external_event_id = ?",
        (user_id, event.external_event_id),
    )
    existing = cur.fetchone()
    if existing is None:
        columns = ["user_id"] + list(row.keys())
        cur.execute(
            f"INSERT INTO events({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
            [user_id] + list(row.values()),
        )
        return True
    if _unchanged(existing, row):
        return False
    # created_at and the parent reference are immutable once stored
    assignments = ", ".join(f"{f} = ?" for f in MUTABLE_FIELDS)
    cur.execute(
        f"UPDATE events SET {assignments} WHERE user_id = ? AND external_event_id = ?",
        [row[f] for f in MUTABLE_FIELDS] + [user_id, event.external_event_id],
    )
    return True


def store_events(db: Database, user_id: str, events: Iterable[Event], batch_size: int = 500) -> StoreResult:
    """
    Persist events for a user.

    Each batch commits in its own transaction; an error rolls back the current batch and propagates.
    Nothing is ever deleted.
    """
    result = StoreResult()
    items = list(events or [])
    if not items:
        return result
    for batch in _chunks(items, max(1, int(batch_size))):
        with db.transaction() as cur:
            for event in batch:
                if _store_one(cur, user_id, event):
                    result.stored += 1
                else:
                    result.skipped += 1
    logger.info("event-store: user=%s stored=%d skipped=%d", user_id, result.stored, result.skipped)
    return result


__all__ = ["store_events", "StoreResult"]
