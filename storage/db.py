"""
SQLite persistence for the mirror.
One connection per Database, shared across threads behind an RLock; explicit transactions use BEGIN IMMEDIATE.
"""

import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from normalize.models import Event, MonitoredProject, ProjectInfo
from normalize.util import format_ts, from_json_list, parse_ts, to_json_list

DB_PATH = None  # can be overridden by caller

# noinspection SqlResolve
SQL_CREATE = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT
);
CREATE TABLE IF NOT EXISTS accounts (
    user_id TEXT PRIMARY KEY REFERENCES users(id),
    provider TEXT NOT NULL DEFAULT 'gitlab',
    access_token TEXT,
    refresh_token TEXT,
    expires_at TEXT
);
CREATE TABLE IF NOT EXISTS monitored_projects (
    user_id TEXT NOT NULL REFERENCES users(id),
    external_project_id TEXT NOT NULL,
    name TEXT NOT NULL,
    path TEXT NOT NULL,
    PRIMARY KEY (user_id, external_project_id)
);
CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    external_event_id TEXT NOT NULL,
    type TEXT NOT NULL,
    iid INTEGER,
    title TEXT NOT NULL,
    body TEXT,
    author TEXT NOT NULL,
    author_avatar TEXT,
    project TEXT NOT NULL,
    project_id TEXT NOT NULL,
    labels TEXT NOT NULL DEFAULT '[]',
    status TEXT,
    gitlab_url TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    external_parent_id TEXT,
    parent_type TEXT,
    parent_event_id INTEGER REFERENCES events(id),
    is_system_note INTEGER NOT NULL DEFAULT 0,
    assignees TEXT NOT NULL DEFAULT '[]',
    mentioned_iids TEXT NOT NULL DEFAULT '[]',
    closes_iids TEXT NOT NULL DEFAULT '[]',
    last_activity_at TEXT,
    comment_count INTEGER NOT NULL DEFAULT 0,
    participants TEXT NOT NULL DEFAULT '[]',
    UNIQUE (user_id, external_event_id)
);
CREATE INDEX IF NOT EXISTS idx_events_unlinked ON events (user_id, parent_event_id, external_parent_id);
CREATE INDEX IF NOT EXISTS idx_events_parent ON events (parent_event_id);
CREATE TABLE IF NOT EXISTS persons (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    external_person_id INTEGER NOT NULL,
    username TEXT NOT NULL,
    name TEXT,
    avatar_url TEXT,
    UNIQUE (user_id, external_person_id)
);
CREATE TABLE IF NOT EXISTS sync_cursors (
    user_id TEXT PRIMARY KEY,
    last_sync_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS step_journal (
    key TEXT PRIMARY KEY,
    response TEXT,
    status INTEGER,
    timestamp REAL
);
"""

EVENT_COLUMNS = (
    "id", "user_id", "external_event_id", "type", "iid", "title", "body", "author", "author_avatar",
    "project", "project_id", "labels", "status", "gitlab_url", "created_at", "updated_at",
    "external_parent_id", "parent_type", "parent_event_id", "is_system_note", "assignees",
    "mentioned_iids", "closes_iids", "last_activity_at", "comment_count", "participants",
)


def event_to_row(event: Event) -> Dict[str, Any]:
    """Column values for the Transformer-owned fields of an Event."""
    return {
        "external_event_id": event.external_event_id,
        "type": event.type,
        "iid": event.iid,
        "title": event.title,
        "body": event.body,
        "author": event.author,
        "author_avatar": event.author_avatar,
        "project": event.project,
        "project_id": event.project_id,
        "labels": to_json_list(event.labels),
        "status": event.status,
        "gitlab_url": event.gitlab_url,
        "created_at": format_ts(event.created_at),
        "updated_at": format_ts(event.updated_at),
        "external_parent_id": event.external_parent_id,
        "parent_type": event.parent_type,
        "is_system_note": 1 if event.is_system_note else 0,
        "assignees": to_json_list(event.assignees, sort=False),
        "mentioned_iids": to_json_list(event.mentioned_iids, sort=False),
        "closes_iids": to_json_list(event.closes_iids, sort=False),
    }


def row_to_event(row: sqlite3.Row) -> Event:
    ev = Event(
        type=row["type"],
        external_event_id=row["external_event_id"],
        iid=row["iid"],
        title=row["title"],
        body=row["body"],
        author=row["author"],
        author_avatar=row["author_avatar"],
        project=row["project"],
        project_id=row["project_id"],
        labels=from_json_list(row["labels"]),
        status=row["status"],
        gitlab_url=row["gitlab_url"],
        created_at=parse_ts(row["created_at"]),
        updated_at=parse_ts(row["updated_at"]),
        external_parent_id=row["external_parent_id"],
        parent_type=row["parent_type"],
        is_system_note=bool(row["is_system_note"]),
        assignees=from_json_list(row["assignees"]),
        mentioned_iids=from_json_list(row["mentioned_iids"]),
        closes_iids=from_json_list(row["closes_iids"]),
    )
    ev.id = row["id"]
    ev.parent_event_id = row["parent_event_id"]
    ev.last_activity_at = parse_ts(row["last_activity_at"])
    ev.comment_count = int(row["comment_count"] or 0)
    ev.participants = set(from_json_list(row["participants"]))
    return ev


class Database:
    def __init__(self, path: Optional[str] = None, timeout: float = 15.0):
        """Open (and create if needed) the mirror database.

        :param path: SQLite file path or None for in-memory.
        :param timeout: seconds to wait for a competing writer before failing (busy timeout).
        """
        self.path = path or DB_PATH or ':memory:'
        self.timeout = float(timeout)
        # isolation_level=None: transactions are opened explicitly in transaction()
        self.conn = sqlite3.connect(self.path, timeout=self.timeout, check_same_thread=False, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self):
        with self._lock:
            self.conn.execute('PRAGMA foreign_keys = ON')
            self.conn.executescript(SQL_CREATE)

    def close(self):
        with self._lock:
            if self.conn is not None:
                try:
                    self.conn.close()
                finally:
                    self.conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """Run a block inside BEGIN IMMEDIATE ... COMMIT, rolling back on any exception."""
        with self._lock:
            cur = self.conn.cursor()
            cur.execute('BEGIN IMMEDIATE')
            try:
                yield cur
                cur.execute('COMMIT')
            except BaseException:
                # a failed COMMIT (busy, deferred constraint) leaves the transaction open
                if self.conn.in_transaction:
                    cur.execute('ROLLBACK')
                raise

    def query(self, sql: str, params=()) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def query_one(self, sql: str, params=()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    # --- users / accounts / projects: written by the UI layer, read by the pipeline ---

    # noinspection SqlResolve
    def add_user(self, user_id: str, email: Optional[str] = None):
        with self.transaction() as cur:
            cur.execute('INSERT OR IGNORE INTO users(id, email) VALUES (?, ?)', (user_id, email))

    # noinspection SqlResolve
    def save_account(self, user_id: str, access_token: Optional[str], refresh_token: Optional[str], expires_at):
        with self.transaction() as cur:
            cur.execute(
                'INSERT INTO accounts(user_id, access_token, refresh_token, expires_at) VALUES (?, ?, ?, ?) '
                'ON CONFLICT(user_id) DO UPDATE SET access_token = excluded.access_token, '
                'refresh_token = excluded.refresh_token, expires_at = excluded.expires_at',
                (user_id, access_token, refresh_token, format_ts(expires_at)),
            )

    # noinspection SqlResolve
    def get_account(self, user_id: str) -> Optional[Dict[str, Any]]:
        row = self.query_one('SELECT access_token, refresh_token, expires_at FROM accounts WHERE user_id = ?', (user_id,))
        if row is None:
            return None
        return {'access_token': row['access_token'], 'refresh_token': row['refresh_token'], 'expires_at': parse_ts(row['expires_at'])}

    # noinspection SqlResolve
    def add_monitored_project(self, project: MonitoredProject):
        with self.transaction() as cur:
            cur.execute(
                'INSERT OR REPLACE INTO monitored_projects(user_id, external_project_id, name, path) VALUES (?, ?, ?, ?)',
                (project.user_id, project.external_project_id, project.name, project.path),
            )

    # noinspection SqlResolve
    def monitored_projects(self, user_id: str) -> List[MonitoredProject]:
        rows = self.query(
            'SELECT user_id, external_project_id, name, path FROM monitored_projects WHERE user_id = ? ORDER BY external_project_id',
            (user_id,),
        )
        return [MonitoredProject(r['user_id'], r['external_project_id'], r['name'], r['path']) for r in rows]

    # noinspection SqlResolve
    def users_with_projects(self) -> List[str]:
        rows = self.query('SELECT DISTINCT user_id FROM monitored_projects ORDER BY user_id')
        return [r['user_id'] for r in rows]

    def project_map(self, user_id: str, project_ids: Optional[List[str]] = None) -> Dict[int, ProjectInfo]:
        """Numeric GitLab project id -> ProjectInfo for the user's monitored projects."""
        wanted = {str(p) for p in project_ids} if project_ids is not None else None
        result: Dict[int, ProjectInfo] = {}
        for p in self.monitored_projects(user_id):
            if wanted is not None and p.external_project_id not in wanted:
                continue
            try:
                result[int(p.external_project_id)] = ProjectInfo(p.name, p.path)
            except ValueError:
                continue
        return result

    # --- event reads ---

    # noinspection SqlResolve
    def get_event(self, user_id: str, external_event_id: str) -> Optional[Event]:
        row = self.query_one('SELECT * FROM events WHERE user_id = ? AND external_event_id = ?', (user_id, external_event_id))
        return row_to_event(row) if row else None

    # noinspection SqlResolve
    def list_events(self, user_id: str, type: Optional[str] = None) -> List[Event]:
        if type:
            rows = self.query('SELECT * FROM events WHERE user_id = ? AND type = ? ORDER BY id', (user_id, type))
        else:
            rows = self.query('SELECT * FROM events WHERE user_id = ? ORDER BY id', (user_id,))
        return [row_to_event(r) for r in rows]

    # noinspection SqlResolve
    def count_events(self, user_id: str, external_event_id: Optional[str] = None) -> int:
        if external_event_id is None:
            row = self.query_one('SELECT COUNT(1) FROM events WHERE user_id = ?', (user_id,))
        else:
            row = self.query_one('SELECT COUNT(1) FROM events WHERE user_id = ? AND external_event_id = ?', (user_id, external_event_id))
        return int(row[0] or 0)


__all__ = ["Database", "event_to_row", "row_to_event", "EVENT_COLUMNS"]
