"""
Canonical data models for mirrored GitLab activity.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

EVENT_TYPES = ("issue", "merge_request", "comment")

# Fields a later sync may overwrite. created_at and the identity/parent reference never change.
MUTABLE_FIELDS = (
    "iid",
    "title",
    "body",
    "author_avatar",
    "project",
    "project_id",
    "labels",
    "status",
    "gitlab_url",
    "updated_at",
    "is_system_note",
    "assignees",
    "mentioned_iids",
    "closes_iids",
)


class MonitoredProject:
    """
    A GitLab project a user has chosen to mirror. Read-only to the pipeline.
    """
    def __init__(self, user_id: str, external_project_id: str, name: str, path: str):
        self.user_id = user_id
        self.external_project_id = str(external_project_id)
        self.name = name
        self.path = path

    def __repr__(self):
        return f"MonitoredProject({self.user_id!r}, {self.external_project_id!r}, {self.path!r})"


class ProjectInfo:
    """Name/path pair used by the transformer to resolve a numeric project id."""
    def __init__(self, name: str, path: str):
        self.name = name
        self.path = path


class Event:
    """
    Canonical record of one issue, merge request or comment.

    Identity is (user_id, external_event_id); the user is supplied at store time.
    parent_event_id, last_activity_at, comment_count and participants are owned by the linker.
    """
    def __init__(
        self,
        type: str,
        external_event_id: str,
        title: str,
        body: Optional[str],
        author: str,
        author_avatar: Optional[str],
        project: str,
        project_id: str,
        gitlab_url: str,
        created_at: datetime,
        updated_at: datetime,
        iid: Optional[int] = None,
        labels: Optional[Iterable[str]] = None,
        status: Optional[str] = None,
        external_parent_id: Optional[str] = None,
        parent_type: Optional[str] = None,
        is_system_note: bool = False,
        assignees: Optional[List[str]] = None,
        mentioned_iids: Optional[List[int]] = None,
        closes_iids: Optional[List[int]] = None,
    ):
        if type not in EVENT_TYPES:
            raise ValueError(f"unknown event type: {type}")
        self.type = type
        self.external_event_id = external_event_id
        self.iid = iid
        self.title = title
        self.body = body
        self.author = author
        self.author_avatar = author_avatar
        self.project = project
        self.project_id = project_id
        self.labels = set(labels or [])
        self.status = status
        self.gitlab_url = gitlab_url
        self.created_at = created_at
        self.updated_at = updated_at
        self.external_parent_id = external_parent_id
        self.parent_type = parent_type
        self.is_system_note = bool(is_system_note)
        self.assignees = list(assignees or [])
        self.mentioned_iids = list(mentioned_iids or [])
        self.closes_iids = list(closes_iids or [])
        # populated when read back from storage
        self.id: Optional[int] = None
        self.parent_event_id: Optional[int] = None
        self.last_activity_at: Optional[datetime] = None
        self.comment_count: int = 0
        self.participants: set = set()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "external_event_id": self.external_event_id,
            "iid": self.iid,
            "title": self.title,
            "body": self.body,
            "author": self.author,
            "author_avatar": self.author_avatar,
            "project": self.project,
            "project_id": self.project_id,
            "labels": sorted(self.labels),
            "status": self.status,
            "gitlab_url": self.gitlab_url,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "external_parent_id": self.external_parent_id,
            "parent_type": self.parent_type,
            "is_system_note": self.is_system_note,
            "assignees": list(self.assignees),
            "mentioned_iids": list(self.mentioned_iids),
            "closes_iids": list(self.closes_iids),
            "parent_event_id": self.parent_event_id,
            "last_activity_at": self.last_activity_at,
            "comment_count": self.comment_count,
            "participants": sorted(self.participants),
        }

    def __repr__(self):
        return f"Event({self.type!r}, {self.external_event_id!r})"


class ExtractedPerson:
    """
    A GitLab author identity, keyed by the GitLab user id.
    """
    def __init__(self, external_person_id: int, username: str, name: Optional[str] = None, avatar_url: Optional[str] = None):
        self.external_person_id = external_person_id
        self.username = username
        self.name = name
        self.avatar_url = avatar_url

    def __eq__(self, other):
        if not isinstance(other, ExtractedPerson):
            return NotImplemented
        return (self.external_person_id, self.username, self.name, self.avatar_url) == (
            other.external_person_id, other.username, other.name, other.avatar_url
        )

    def __repr__(self):
        return f"ExtractedPerson({self.external_person_id!r}, {self.username!r})"
