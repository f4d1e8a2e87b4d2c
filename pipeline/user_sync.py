"""
Per-user sync: token -> fetch -> transform -> store -> link -> metadata -> people -> cursor.
The cursor is written last, so a failure anywhere leaves the watermark untouched and the next run refetches.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from correlate.linker import link_parent_events, update_activity_metadata
from errors import NoMonitoredProjects
from ingest.gitlab import GitLabClient
from ingest.token import TokenManager
from normalize.events import transform_all
from normalize.people import extract_people_from_gitlab_responses
from normalize.util import format_ts, parse_ts, utcnow
from pipeline.steps import StepRunner
from storage.cursor import advance_cursor, get_last_sync
from storage.db import Database
from storage.events import store_events
from storage.journal import StepJournal
from storage.people import upsert_people

logger = logging.getLogger(__name__)

STEPS = (
    "fetch-token",
    "fetch-events",
    "transform",
    "store",
    "link",
    "update-metadata",
    "upsert-people",
    "advance-cursor",
)


class UserSyncResult:
    def __init__(self, user_id: str):
        self.user_id = user_id
        self.fetched: Dict[str, int] = {"issues": 0, "merge_requests": 0, "notes": 0}
        self.transformed = 0
        self.stored = 0
        self.skipped = 0
        self.linked = 0
        self.metadata_updated = 0
        self.people: Dict[str, int] = {"created": 0, "updated": 0, "total": 0}
        self.last_sync_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "fetched": dict(self.fetched),
            "transformed": self.transformed,
            "stored": self.stored,
            "skipped": self.skipped,
            "linked": self.linked,
            "metadata_updated": self.metadata_updated,
            "people": dict(self.people),
            "last_sync_at": format_ts(self.last_sync_at),
        }


class UserSyncPipeline:
    """
    Runs the full sync chain for one user.

    client_factory builds an upstream client from an access token; tests pass a fake.
    """

    def __init__(
        self,
        db: Database,
        token_manager: TokenManager,
        client_factory: Callable[[str], GitLabClient],
        journal: Optional[StepJournal] = None,
        store_batch_size: int = 500,
        people_batch_size: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.token_manager = token_manager
        self.client_factory = client_factory
        self.journal = journal
        self.store_batch_size = store_batch_size
        self.people_batch_size = people_batch_size
        self.clock = clock

    def run(self, user_id: str, run_id: Optional[str] = None) -> UserSyncResult:
        projects = self.db.monitored_projects(user_id)
        if not projects:
            raise NoMonitoredProjects(user_id)
        project_ids = [p.external_project_id for p in projects]
        steps = StepRunner(user_id, run_id, self.journal)
        result = UserSyncResult(user_id)

        token_box: Dict[str, str] = {}

        def fetch_token():
            token_box["token"], _ = self.token_manager.get_access_token(user_id)

        steps.run("fetch-token", fetch_token, record=False)

        def fetch_events():
            started_at = self.clock()
            since = get_last_sync(self.db, user_id)
            client = self.client_factory(token_box["token"])
            raw = client.fetch_events(project_ids, since)
            return {"started_at": format_ts(started_at), "raw": raw}

        fetched = steps.run("fetch-events", fetch_events)
        raw = fetched["raw"]
        result.fetched = {k: len(raw.get(k) or []) for k in ("issues", "merge_requests", "notes")}

        # transform and person extraction read the same payloads; neither depends on the other
        def transform():
            project_map = self.db.project_map(user_id, project_ids)
            return transform_all(raw, project_map), extract_people_from_gitlab_responses(
                raw.get("issues") or [], raw.get("merge_requests") or [], raw.get("notes") or []
            )

        events, people = steps.run("transform", transform, record=False)
        result.transformed = len(events)

        stored = steps.run("store", lambda: store_events(self.db, user_id, events, self.store_batch_size).to_dict())
        result.stored, result.skipped = stored["stored"], stored["skipped"]

        result.linked = steps.run("link", lambda: link_parent_events(self.db, user_id))
        result.metadata_updated = steps.run("update-metadata", lambda: update_activity_metadata(self.db, user_id))
        result.people = steps.run(
            "upsert-people", lambda: upsert_people(self.db, user_id, people, self.people_batch_size).to_dict()
        )

        cursor = steps.run(
            "advance-cursor",
            lambda: format_ts(advance_cursor(self.db, user_id, parse_ts(fetched["started_at"]))),
        )
        result.last_sync_at = parse_ts(cursor)
        logger.info(
            "api-polling: user=%s synced (stored=%d skipped=%d linked=%d people=%d)",
            user_id, result.stored, result.skipped, result.linked, result.people.get("total", 0),
        )
        return result


__all__ = ["UserSyncPipeline", "UserSyncResult", "STEPS"]
