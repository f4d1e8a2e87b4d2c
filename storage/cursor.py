"""
Per-user sync watermark.
"""
from datetime import datetime
from typing import Optional

from normalize.util import format_ts, parse_ts
from storage.db import Database


# noinspection SqlResolve
def get_last_sync(db: Database, user_id: str) -> Optional[datetime]:
    """Timestamp of the user's last successful sync, or None if the user has never synced."""
    row = db.query_one("SELECT last_sync_at FROM sync_cursors WHERE user_id = ?", (user_id,))
    return parse_ts(row["last_sync_at"]) if row else None


# noinspection SqlResolve
def advance_cursor(db: Database, user_id: str, synced_at: datetime) -> datetime:
    """
    Move the watermark forward to synced_at. Never moves it backwards.
    Returns the value stored after the call.
    """
    value = format_ts(synced_at)
    with db.transaction() as cur:
        cur.execute(
            "INSERT INTO sync_cursors(user_id, last_sync_at) VALUES (?, ?) "
            "ON CONFLICT(user_id) DO UPDATE SET last_sync_at = MAX(sync_cursors.last_sync_at, excluded.last_sync_at)",
            (user_id, value),
        )
        cur.execute("SELECT last_sync_at FROM sync_cursors WHERE user_id = ?", (user_id,))
        stored = cur.fetchone()[0]
    return parse_ts(stored)


__all__ = ["get_last_sync", "advance_cursor"]
