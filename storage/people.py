"""
Batched person upsert.
"""
import logging
from typing import Dict, Iterable, List

from normalize.models import ExtractedPerson
from storage.db import Database

logger = logging.getLogger(__name__)

BATCH_SIZE = 100

# noinspection SqlResolve
SQL_UPSERT_PERSON = """
INSERT INTO persons(user_id, external_person_id, username, name, avatar_url)
VALUES (?, ?, ?, ?, ?)
ON CONFLICT(user_id, external_person_id) DO UPDATE SET
    username = COALESCE(NULLIF(excluded.username, ''), persons.username),
    name = COALESCE(excluded.name, persons.name),
    avatar_url = COALESCE(excluded.avatar_url, persons.avatar_url)
"""


class PeopleResult:
    def __init__(self, created: int = 0, updated: int = 0, total: int = 0):
        self.created = created
        self.updated = updated
        self.total = total

    def to_dict(self) -> Dict[str, int]:
        return {"created": self.created, "updated": self.updated, "total": self.total}

    def __repr__(self):
        return f"PeopleResult(created={self.created}, updated={self.updated}, total={self.total})"


# noinspection SqlResolve
def _existing_ids(cur, user_id: str, ids: List[int]) -> set:
    if not ids:
        return set()
    placeholders = ", ".join("?" for _ in ids)
    cur.execute(
        f"SELECT external_person_id FROM persons WHERE user_id = ? AND external_person_id IN ({placeholders})",
        [user_id] + ids,
    )
    return {int(r[0]) for r in cur.fetchall()}


def upsert_people(db: Database, user_id: str, people: Iterable[ExtractedPerson], batch_size: int = BATCH_SIZE) -> PeopleResult:
    """
    Create or update Person rows for a user.

    Each batch runs in its own transaction with the existence check inside it. A failing batch is rolled back and
    the error propagates; batches committed before it stay committed.
    """
    items = list(people or [])
    result = PeopleResult(total=len(items))
    size = max(1, int(batch_size))
    for start in range(0, len(items), size):
        batch = items[start:start + size]
        with db.transaction() as cur:
            existing = _existing_ids(cur, user_id, [p.external_person_id for p in batch])
            for person in batch:
                cur.execute(
                    SQL_UPSERT_PERSON,
                    (user_id, person.external_person_id, person.username, person.name, person.avatar_url),
                )
                if person.external_person_id in existing:
                    result.updated += 1
                else:
                    result.created += 1
                    existing.add(person.external_person_id)
        logger.debug("person-extractor: user=%s batch %d-%d committed", user_id, start, start + len(batch))
    logger.info("person-extractor: user=%s created=%d updated=%d total=%d", user_id, result.created, result.updated, result.total)
    return result


# noinspection SqlResolve
def list_people(db: Database, user_id: str) -> List[ExtractedPerson]:
    rows = db.query(
        "SELECT external_person_id, username, name, avatar_url FROM persons WHERE user_id = ? ORDER BY external_person_id",
        (user_id,),
    )
    return [ExtractedPerson(int(r["external_person_id"]), r["username"], r["name"], r["avatar_url"]) for r in rows]


__all__ = ["upsert_people", "list_people", "PeopleResult", "BATCH_SIZE"]
