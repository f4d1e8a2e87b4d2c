"""
Person extraction from GitLab payloads.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from normalize.models import ExtractedPerson

logger = logging.getLogger(__name__)


def extract_person_from_author(author: Dict[str, Any]) -> Optional[ExtractedPerson]:
    """Build an ExtractedPerson from a GitLab author object, or None if it has no usable id."""
    if not isinstance(author, dict) or author.get("id") is None:
        return None
    try:
        person_id = int(author["id"])
    except (TypeError, ValueError):
        logger.warning("person-extractor: author %r has a non-numeric id %r", author.get("username"), author["id"])
        return None
    return ExtractedPerson(
        external_person_id=person_id,
        username=author.get("username") or "",
        name=author.get("name"),
        avatar_url=author.get("avatar_url"),
    )


def _merge(existing: ExtractedPerson, incoming: ExtractedPerson) -> ExtractedPerson:
    # last non-null value wins per field
    return ExtractedPerson(
        external_person_id=existing.external_person_id,
        username=incoming.username or existing.username,
        name=incoming.name if incoming.name is not None else existing.name,
        avatar_url=incoming.avatar_url if incoming.avatar_url is not None else existing.avatar_url,
    )


def deduplicate_people(people: Iterable[ExtractedPerson]) -> List[ExtractedPerson]:
    """Collapse people sharing an external id, keeping first-seen order."""
    merged: Dict[int, ExtractedPerson] = {}
    for person in people:
        existing = merged.get(person.external_person_id)
        merged[person.external_person_id] = person if existing is None else _merge(existing, person)
    return list(merged.values())


def extract_people_from_gitlab_responses(
    issues: List[Dict[str, Any]], merge_requests: List[Dict[str, Any]], notes: List[Dict[str, Any]]
) -> List[ExtractedPerson]:
    """Unique authors across issues, merge requests and notes."""
    found: List[ExtractedPerson] = []
    missing = 0
    for item in list(issues or []) + list(merge_requests or []) + list(notes or []):
        person = extract_person_from_author((item or {}).get("author") if isinstance(item, dict) else None)
        if person is None:
            missing += 1
            continue
        found.append(person)
    if missing:
        logger.warning("person-extractor: %d item(s) without a usable author id skipped", missing)
    return deduplicate_people(found)


__all__ = ["extract_people_from_gitlab_responses", "extract_person_from_author", "deduplicate_people"]
