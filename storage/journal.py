"""
Step journal: JSON results of completed pipeline steps, keyed by run/user/step.
A host retry of the same run replays journaled steps instead of repeating them.
"""

import json
import logging
import time
from typing import Any, Dict, List, Optional

from storage.db import Database

logger = logging.getLogger(__name__)


class StepJournal:
    def __init__(self, db: Database, max_entries: Optional[int] = None, ttl_seconds: Optional[float] = None):
        """Create a journal on top of an open Database.

        :param max_entries: optional maximum number of entries to keep; older entries will be pruned when exceeded.
        :param ttl_seconds: optional TTL in seconds; entries older than TTL will be pruned on set/get.
        """
        self.db = db
        self.max_entries = int(max_entries) if max_entries is not None else None
        self.ttl_seconds = float(ttl_seconds) if ttl_seconds is not None else None

    # noinspection SqlResolve
    def stats(self) -> Dict[str, Any]:
        """Return basic statistics about the journal: count, oldest timestamp, newest timestamp."""
        row = self.db.query_one('SELECT COUNT(1), MIN(timestamp), MAX(timestamp) FROM step_journal')
        count, oldest, newest = row if row else (0, None, None)
        return {
            'count': int(count or 0),
            'oldest': float(oldest) if oldest is not None else None,
            'newest': float(newest) if newest is not None else None,
        }

    # noinspection SqlResolve
    def list_keys(self, limit: int = 1000, prefix: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return journal keys with basic metadata (key, status, timestamp), newest first."""
        if prefix:
            rows = self.db.query(
                'SELECT key, status, timestamp FROM step_journal WHERE substr(key, 1, ?) = ? ORDER BY timestamp DESC LIMIT ?',
                (len(prefix), prefix, limit),
            )
        else:
            rows = self.db.query('SELECT key, status, timestamp FROM step_journal ORDER BY timestamp DESC LIMIT ?', (limit,))
        return [{'key': k, 'status': int(status or 0), 'timestamp': float(ts or 0)} for k, status, ts in rows]

    # noinspection SqlWithoutWhere
    def clear(self) -> int:
        """Clear all entries from the journal. Returns number of rows deleted."""
        with self.db.transaction() as cur:
            cur.execute('DELETE FROM step_journal')
            return cur.rowcount

    # noinspection SqlResolve
    def delete_key(self, key: str) -> int:
        """Delete a specific journal key. Returns number of rows deleted."""
        with self.db.transaction() as cur:
            cur.execute('DELETE FROM step_journal WHERE key = ?', (key,))
            return cur.rowcount

    # noinspection SqlResolve
    def delete_prefix(self, prefix: str) -> int:
        with self.db.transaction() as cur:
            cur.execute('DELETE FROM step_journal WHERE substr(key, 1, ?) = ?', (len(prefix), prefix))
            return cur.rowcount

    # noinspection SqlResolve
    def get(self, key: str) -> Optional[Dict[str, Any]]:
        row = self.db.query_one('SELECT response, status, timestamp FROM step_journal WHERE key = ?', (key,))
        if not row:
            return None
        response, status, timestamp = row
        # TTL-based eviction on access
        if self.ttl_seconds is not None and timestamp is not None:
            if time.time() - float(timestamp) > self.ttl_seconds:
                self.delete_key(key)
                return None
        return {'response': json.loads(response), 'status': status, 'timestamp': timestamp}

    # noinspection SqlResolve
    def _prune_if_needed(self, cur):
        if self.ttl_seconds is not None:
            cutoff = time.time() - float(self.ttl_seconds)
            cur.execute('DELETE FROM step_journal WHERE timestamp < ?', (cutoff,))
        if self.max_entries is not None:
            cur.execute('SELECT COUNT(1) FROM step_journal')
            count = cur.fetchone()[0] or 0
            if count > self.max_entries:
                cur.execute(
                    'DELETE FROM step_journal WHERE key IN (SELECT key FROM step_journal ORDER BY timestamp ASC LIMIT ?)',
                    (int(count - self.max_entries),),
                )

    # noinspection SqlResolve
    def set(self, key: str, response: Any, status: int = 0):
        """Record a step result. The payload must be JSON-serializable."""
        payload = json.dumps(response)
        with self.db.transaction() as cur:
            cur.execute(
                'REPLACE INTO step_journal(key, response, status, timestamp) VALUES (?, ?, ?, ?)',
                (key, payload, status, time.time()),
            )
            self._prune_if_needed(cur)


__all__ = ["StepJournal"]
