"""
Relationship linker: attaches comments to their parent issue/MR events and recomputes parent activity metadata.
Both passes work on everything stored for the user, not just the latest batch, so comments and parents that
arrive in different syncs converge.
"""
import logging
from typing import Dict, List

from correlate.models import ActivityMetadata, RelationshipReport
from normalize.util import format_ts, from_json_list, parse_ts, to_json_list
from storage.db import Database

logger = logging.getLogger(__name__)

# noinspection SqlResolve
SQL_LINK = """
UPDATE events SET parent_event_id = (
    SELECT p.id FROM events p
    WHERE p.user_id = events.user_id AND p.external_event_id = events.external_parent_id AND p.type != 'comment'
)
WHERE user_id = ? AND type = 'comment' AND parent_event_id IS NULL AND external_parent_id IS NOT NULL
  AND EXISTS (
    SELECT 1 FROM events p
    WHERE p.user_id = events.user_id AND p.external_event_id = events.external_parent_id AND p.type != 'comment'
  )
"""


def link_parent_events(db: Database, user_id: str) -> int:
    """Link every unlinked comment whose parent is now stored. Returns the number of comments linked."""
    with db.transaction() as cur:
        cur.execute(SQL_LINK, (user_id,))
        linked = cur.rowcount or 0
    if linked:
        logger.info("linker: user=%s linked %d comment(s)", user_id, linked)
    return linked


# noinspection SqlResolve
def _children_by_parent(cur, user_id: str) -> Dict[int, List]:
    cur.execute(
        "SELECT parent_event_id, author, created_at, is_system_note FROM events "
        "WHERE user_id = ? AND type = 'comment' AND parent_event_id IS NOT NULL",
        (user_id,),
    )
    grouped: Dict[int, List] = {}
    for parent_id, author, created_at, is_system_note in cur.fetchall():
        grouped.setdefault(parent_id, []).append((author, created_at, bool(is_system_note)))
    return grouped


def compute_metadata(parent_author: str, parent_updated_at: str, children: List) -> ActivityMetadata:
    """
    Full recomputation from the parent row and its (author, created_at, is_system_note) children.
    System notes move last_activity_at but are not counted and do not add participants.
    """
    # stored timestamps are fixed-width UTC strings, so text max is chronological max
    last = max([parent_updated_at] + [created for _, created, _ in children])
    user_comments = [author for author, _, system in children if not system]
    participants = {parent_author} | set(user_comments)
    return ActivityMetadata(len(user_comments), parse_ts(last), participants)


# noinspection SqlResolve
def update_activity_metadata(db: Database, user_id: str) -> int:
    """
    Recompute comment_count, last_activity_at and participants for every parent with at least one linked comment.
    Returns the number of parents recomputed.
    """
    updated = 0
    with db.transaction() as cur:
        grouped = _children_by_parent(cur, user_id)
        for parent_id, children in grouped.items():
            cur.execute(
                "SELECT author, updated_at, comment_count, last_activity_at, participants FROM events WHERE id = ?",
                (parent_id,),
            )
            row = cur.fetchone()
            if row is None:
                continue
            author, updated_at, count, last_activity, participants = row
            meta = compute_metadata(author, updated_at, children)
            new_values = (meta.comment_count, format_ts(meta.last_activity_at), to_json_list(meta.participants))
            if new_values != (count, last_activity, participants):
                cur.execute(
                    "UPDATE events SET comment_count = ?, last_activity_at = ?, participants = ? WHERE id = ?",
                    new_values + (parent_id,),
                )
            updated += 1
    logger.info("linker: user=%s recomputed metadata for %d parent(s)", user_id, updated)
    return updated


# noinspection SqlResolve
def validate_relationships(db: Database, user_id: str) -> RelationshipReport:
    """Read-only consistency check of links and derived metadata for one user."""
    report = RelationshipReport()
    rows = db.query(
        "SELECT c.external_event_id, c.parent_event_id, c.external_parent_id, p.id AS expected_id, "
        "linked.external_event_id AS linked_external "
        "FROM events c "
        "LEFT JOIN events p ON p.user_id = c.user_id AND p.external_event_id = c.external_parent_id AND p.type != 'comment' "
        "LEFT JOIN events linked ON linked.id = c.parent_event_id "
        "WHERE c.user_id = ? AND c.type = 'comment'",
        (user_id,),
    )
    for r in rows:
        if r["parent_event_id"] is None:
            if r["expected_id"] is not None:
                report.unlinked.append(r["external_event_id"])
            else:
                report.orphaned += 1
        elif r["linked_external"] != r["external_parent_id"]:
            report.mislinked.append(r["external_event_id"])

    children: Dict[int, List] = {}
    for r in db.query(
        "SELECT parent_event_id, author, created_at, is_system_note FROM events "
        "WHERE user_id = ? AND type = 'comment' AND parent_event_id IS NOT NULL",
        (user_id,),
    ):
        children.setdefault(r["parent_event_id"], []).append((r["author"], r["created_at"], bool(r["is_system_note"])))

    for p in db.query(
        "SELECT id, external_event_id, author, updated_at, comment_count, last_activity_at, participants FROM events "
        "WHERE user_id = ? AND type != 'comment'",
        (user_id,),
    ):
        linked = children.get(p["id"])
        if not linked:
            if p["comment_count"]:
                report.stale_parents.append(
                    {"external_event_id": p["external_event_id"], "stored_count": p["comment_count"], "expected_count": 0}
                )
            continue
        expected = compute_metadata(p["author"], p["updated_at"], linked)
        stored = ActivityMetadata(p["comment_count"], parse_ts(p["last_activity_at"]), set(from_json_list(p["participants"])))
        if stored != expected:
            report.stale_parents.append(
                {
                    "external_event_id": p["external_event_id"],
                    "stored_count": stored.comment_count,
                    "expected_count": expected.comment_count,
                }
            )
    if not report.ok:
        logger.warning("linker: user=%s relationship check failed: %s", user_id, report.to_dict())
    return report


__all__ = ["link_parent_events", "update_activity_metadata", "validate_relationships", "compute_metadata"]
