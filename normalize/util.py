"""
Normalization utility helpers.
Timestamp parsing/formatting and small coercions shared by the transformer, storage and linker.
"""
import json
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional


def parse_ts(value: Any) -> Optional[datetime]:
    """Parse an ISO 8601 string (or datetime) into an aware UTC datetime. Returns None when unparsable."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_ts(dt: Optional[datetime]) -> Optional[str]:
    """Format as fixed-width UTC ISO 8601 with milliseconds ('2024-01-15T12:00:00.000Z') so stored values sort as text."""
    if dt is None:
        return None
    dt = parse_ts(dt)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_json_list(values: Optional[Iterable[Any]], sort: bool = True) -> str:
    items = list(values or [])
    if sort:
        items = sorted(set(items))
    return json.dumps(items)


def from_json_list(raw: Optional[str]) -> List[Any]:
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except ValueError:
        return []
    return parsed if isinstance(parsed, list) else []


def first_line(text: Optional[str], limit: int = 100, default: str = "Comment") -> str:
    """First non-blank line, truncated to `limit` characters with a trailing ellipsis."""
    line = next((ln.strip() for ln in (text or "").split("\n") if ln.strip()), "") or default
    if len(line) > limit:
        return line[: limit - 3] + "..."
    return line
