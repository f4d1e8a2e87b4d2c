"""
Event transformer.
Maps GitLab issue, merge request and note payloads into canonical Event objects.
The functions here never touch the network or the database; malformed items are logged and skipped.
"""
import logging
import re
from typing import Any, Callable, Dict, List, Mapping, Optional

from errors import ValidationError
from normalize.models import Event, ProjectInfo
from normalize.util import first_line, parse_ts

logger = logging.getLogger(__name__)

ProjectMap = Mapping[int, ProjectInfo]

_MENTION_PATTERN = re.compile(r"[#!](\d+)")
_CLOSES_PATTERN = re.compile(r"(?:close[sd]?|fix(?:e[sd])?|resolve[sd]?)\s+#(\d+)", re.IGNORECASE)


def _unique_ints(pattern: re.Pattern, text: Optional[str]) -> List[int]:
    if not text:
        return []
    found: List[int] = []
    for m in pattern.finditer(text):
        n = int(m.group(1))
        if n not in found:
            found.append(n)
    return found


def extract_mentioned_iids(text: Optional[str]) -> List[int]:
    """`#123` (issue) and `!456` (merge request) references, in order of first appearance."""
    return _unique_ints(_MENTION_PATTERN, text)


def parse_closes_iids(text: Optional[str]) -> List[int]:
    """Issue numbers closed by an MR description ('closes #1', 'Fixes #2', 'resolved #3')."""
    return _unique_ints(_CLOSES_PATTERN, text)


def _project(project_map: ProjectMap, raw_project_id) -> ProjectInfo:
    try:
        key = int(raw_project_id)
    except (TypeError, ValueError):
        key = raw_project_id
    info = project_map.get(key) if project_map else None
    if info is not None:
        return info
    return ProjectInfo(name=f"Project {raw_project_id}", path=str(raw_project_id))


def _author(kind: str, item: Dict[str, Any]) -> Dict[str, Any]:
    author = item.get("author")
    if not isinstance(author, dict) or not author.get("username"):
        raise ValidationError(kind, item.get("id"), "missing author username")
    return author


def _required_ts(kind: str, item: Dict[str, Any], field: str):
    ts = parse_ts(item.get(field))
    if ts is None:
        raise ValidationError(kind, item.get("id"), f"missing or invalid {field}")
    return ts


def _required_id(kind: str, item: Any):
    if not isinstance(item, dict):
        raise ValidationError(kind, None, f"expected object, got {type(item).__name__}")
    if item.get("id") is None:
        raise ValidationError(kind, None, "missing id")
    return item["id"]


def _issue_status(state: Optional[str]) -> str:
    return "open" if state == "opened" else "closed"


def _mr_status(state: Optional[str]) -> Optional[str]:
    if state == "opened":
        return "open"
    return state


def _usernames(people: Any) -> List[str]:
    if not isinstance(people, list):
        return []
    return [p.get("username") for p in people if isinstance(p, dict) and p.get("username")]


def _work_item_event(kind: str, external_prefix: str, item: Dict[str, Any], project_map: ProjectMap, status_of: Callable[[Optional[str]], Optional[str]]) -> Event:
    item_id = _required_id(kind, item)
    author = _author(kind, item)
    created_at = _required_ts(kind, item, "created_at")
    updated_at = parse_ts(item.get("updated_at")) or created_at
    project = _project(project_map, item.get("project_id"))
    description = item.get("description")
    title = item.get("title") or ""
    return Event(
        type=kind,
        external_event_id=f"{external_prefix}-{item_id}",
        iid=item.get("iid"),
        title=title,
        body=description,
        author=author["username"],
        author_avatar=author.get("avatar_url"),
        project=project.name,
        project_id=project.path,
        labels=item.get("labels") or [],
        status=status_of(item.get("state")),
        gitlab_url=item.get("web_url") or "",
        created_at=created_at,
        updated_at=updated_at,
        assignees=_usernames(item.get("assignees")),
        mentioned_iids=extract_mentioned_iids(f"{title}\n{description or ''}"),
        closes_iids=parse_closes_iids(description) if kind == "merge_request" else [],
    )


def _transform_all(kind: str, items: List[Dict[str, Any]], build: Callable[[Dict[str, Any]], Event]) -> List[Event]:
    events: List[Event] = []
    for item in items or []:
        try:
            events.append(build(item))
        except ValidationError as ex:
            logger.warning("event-transformer: skipping malformed %s: %s", kind, ex)
    return events


def transform_issues(issues: List[Dict[str, Any]], project_map: ProjectMap) -> List[Event]:
    """Transform GitLab issues into issue Events."""
    return _transform_all(
        "issue", issues, lambda it: _work_item_event("issue", "issue", it, project_map, _issue_status)
    )


def transform_merge_requests(merge_requests: List[Dict[str, Any]], project_map: ProjectMap) -> List[Event]:
    """Transform GitLab merge requests into merge_request Events."""
    return _transform_all(
        "merge_request", merge_requests, lambda it: _work_item_event("merge_request", "mr", it, project_map, _mr_status)
    )


def _comment_title(body: str) -> str:
    line = first_line(body, default="")
    return f"Comment: {line}" if line else "Comment"


def _note_event(note: Dict[str, Any], project_map: ProjectMap) -> Event:
    note_id = _required_id("comment", note)
    author = _author("comment", note)
    created_at = _required_ts("comment", note, "created_at")
    updated_at = parse_ts(note.get("updated_at")) or created_at
    noteable_type = note.get("noteable_type")
    noteable_id = note.get("noteable_id")
    if noteable_type not in ("Issue", "MergeRequest") or noteable_id is None:
        raise ValidationError("comment", note_id, "missing or unsupported parent reference")
    parent_type = "issue" if noteable_type == "Issue" else "merge_request"
    parent_prefix = "issue" if parent_type == "issue" else "mr"
    project = _project(project_map, note.get("project_id"))
    body = note.get("body") or ""
    return Event(
        type="comment",
        external_event_id=f"note-{note_id}",
        iid=None,
        title=_comment_title(body),
        body=body,
        author=author["username"],
        author_avatar=author.get("avatar_url"),
        project=project.name,
        project_id=project.path,
        labels=[],
        status=None,
        gitlab_url=note.get("web_url") or "",
        created_at=created_at,
        updated_at=updated_at,
        external_parent_id=f"{parent_prefix}-{noteable_id}",
        parent_type=parent_type,
        is_system_note=bool(note.get("system")),
        mentioned_iids=extract_mentioned_iids(body),
    )


def transform_notes(notes: List[Dict[str, Any]], project_map: ProjectMap) -> List[Event]:
    """
    Transform GitLab notes into comment Events.
    The parent reference is kept raw in external_parent_id; the linker resolves it later.
    """
    return _transform_all("comment", notes, lambda it: _note_event(it, project_map))


def transform_all(raw: Dict[str, List[Dict[str, Any]]], project_map: ProjectMap) -> List[Event]:
    """Issues, then merge requests, then notes."""
    return (
        transform_issues(raw.get("issues") or [], project_map)
        + transform_merge_requests(raw.get("merge_requests") or [], project_map)
        + transform_notes(raw.get("notes") or [], project_map)
    )


__all__ = [
    "transform_issues",
    "transform_merge_requests",
    "transform_notes",
    "transform_all",
    "extract_mentioned_iids",
    "parse_closes_iids",
]
