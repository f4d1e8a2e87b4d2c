"""
Data models for parent/child relationships and derived activity metadata.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional


class ActivityMetadata:
    """
    Aggregate state of a parent event, derived from its linked comments.
    """

    def __init__(self, comment_count: int, last_activity_at: Optional[datetime], participants: set):
        self.comment_count = comment_count
        self.last_activity_at = last_activity_at
        self.participants = set(participants)

    def __eq__(self, other):
        if not isinstance(other, ActivityMetadata):
            return NotImplemented
        return (self.comment_count, self.last_activity_at, self.participants) == (
            other.comment_count, other.last_activity_at, other.participants
        )

    def __repr__(self):
        return f"ActivityMetadata(comment_count={self.comment_count}, participants={sorted(self.participants)})"


class RelationshipReport:
    """
    Result of validate_relationships: comments that should be linked but are not, comments linked to the
    wrong parent, and parents whose stored metadata disagrees with their linked children.
    """

    def __init__(self):
        self.unlinked: List[str] = []
        self.mislinked: List[str] = []
        self.stale_parents: List[Dict[str, Any]] = []
        self.orphaned: int = 0

    @property
    def ok(self) -> bool:
        return not (self.unlinked or self.mislinked or self.stale_parents)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "unlinked": list(self.unlinked),
            "mislinked": list(self.mislinked),
            "stale_parents": list(self.stale_parents),
            "orphaned": self.orphaned,
        }

    def __str__(self):
        return (
            f"Unlinked comments: {len(self.unlinked)}\n"
            f"Mislinked comments: {len(self.mislinked)}\n"
            f"Stale parents: {len(self.stale_parents)}\n"
            f"Orphaned comments: {self.orphaned}"
        )
