"""
GitLab REST client.
Fetches issues, merge requests and their notes for a set of projects, optionally only items updated after a
watermark. Pagination is exhaustive. The client never retries: every failure is raised as a typed UpstreamError
so the caller picks the retry policy.
"""
import email.utils
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from errors import Forbidden, RateLimited, Unauthorized, UpstreamError, UpstreamServerError, UpstreamTimeout
from normalize.util import format_ts

logger = logging.getLogger(__name__)

NOTE_PARENTS = {"issues": "Issue", "merge_requests": "MergeRequest"}


def _parse_retry_after(raw_ra: Optional[str]) -> Optional[float]:
    """Retry-After as seconds; accepts delta-seconds or an HTTP date."""
    if not raw_ra:
        return None
    try:
        return float(raw_ra)
    except ValueError:
        pass
    try:
        dt = email.utils.parsedate_to_datetime(raw_ra)
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return max(0.0, (dt - datetime.now(timezone.utc)).total_seconds())


def _error_message(resp) -> str:
    try:
        body = resp.json()
    except ValueError:
        return (getattr(resp, "text", "") or "")[:200]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)
    return str(body)


def raise_for_status(resp) -> None:
    """Map a non-2xx GitLab response onto the error taxonomy."""
    status = resp.status_code
    if 200 <= status < 300:
        return
    message = f"GitLab API error {status}: {_error_message(resp)}"
    if status == 401:
        raise Unauthorized(message, status)
    if status == 403:
        raise Forbidden(message, status)
    if status == 429:
        raise RateLimited(message, status, retry_after=_parse_retry_after(resp.headers.get("Retry-After")))
    if status >= 500:
        raise UpstreamServerError(message, status)
    raise UpstreamError(message, status)


class GitLabClient:
    """Project-scoped GitLab API v4 client for a single access token."""

    def __init__(
        self,
        access_token: str,
        base_url: str = "https://gitlab.com",
        timeout: float = 5.0,
        per_page: int = 100,
        max_pages: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_url = f"{self.base_url}/api/v4"
        self.timeout = timeout
        self.per_page = per_page
        self.max_pages = max_pages
        self.session = session or requests.Session()
        self.headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}

    def _get(self, url: str, params: Optional[Dict[str, Any]] = None):
        try:
            resp = self.session.get(url, headers=self.headers, params=params, timeout=self.timeout)
        except requests.Timeout as ex:
            raise UpstreamTimeout(f"GitLab request timed out after {self.timeout}s: {url}") from ex
        except requests.RequestException as ex:
            raise UpstreamServerError(f"GitLab request failed: {ex}") from ex
        raise_for_status(resp)
        return resp

    def _paginate(self, path: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Follow Link rel="next" (or X-Next-Page) until GitLab reports no further page."""
        url: Optional[str] = f"{self.api_url}{path}"
        query: Optional[Dict[str, Any]] = dict(params, per_page=self.per_page)
        items: List[Dict[str, Any]] = []
        pages = 0
        while url:
            resp = self._get(url, query)
            data = resp.json()
            if isinstance(data, list):
                items.extend(data)
            pages += 1
            if self.max_pages is not None and pages >= self.max_pages:
                if resp.links.get("next") or resp.headers.get("X-Next-Page"):
                    logger.warning("gitlab-client: page cap %d reached for %s, remaining pages skipped", self.max_pages, path)
                break
            next_link = resp.links.get("next", {}).get("url")
            if next_link:
                # the link already carries every query parameter
                url, query = next_link, None
                continue
            next_page = resp.headers.get("X-Next-Page")
            if next_page:
                query = dict(params, per_page=self.per_page, page=next_page)
                url = f"{self.api_url}{path}"
                continue
            url = None
        return items

    @staticmethod
    def _project_path(project_id) -> str:
        return f"/projects/{quote(str(project_id), safe='')}"

    def _list_params(self, updated_after: Optional[datetime]) -> Dict[str, Any]:
        params: Dict[str, Any] = {"scope": "all", "order_by": "updated_at", "sort": "desc"}
        if updated_after is not None:
            params["updated_after"] = format_ts(updated_after)
        return params

    def fetch_issues(self, project_id, updated_after: Optional[datetime] = None) -> List[Dict[str, Any]]:
        return self._paginate(f"{self._project_path(project_id)}/issues", self._list_params(updated_after))

    def fetch_merge_requests(self, project_id, updated_after: Optional[datetime] = None) -> List[Dict[str, Any]]:
        return self._paginate(f"{self._project_path(project_id)}/merge_requests", self._list_params(updated_after))

    def fetch_notes(self, project_id, kind: str, parent: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        Notes of one issue or merge request (kind is 'issues' or 'merge_requests').
        Each note is annotated with project_id, noteable_type, noteable_id and a web_url anchored on the parent.
        """
        path = f"{self._project_path(project_id)}/{kind}/{parent['iid']}/notes"
        notes = self._paginate(path, {"order_by": "created_at", "sort": "desc"})
        parent_url = parent.get("web_url") or ""
        for note in notes:
            note.setdefault("noteable_type", NOTE_PARENTS[kind])
            note.setdefault("noteable_id", parent.get("id"))
            note["project_id"] = parent.get("project_id", project_id)
            note["web_url"] = f"{parent_url}#note_{note.get('id')}" if parent_url else ""
        return notes

    def _fetch_project(self, project_id, updated_after: Optional[datetime]) -> Dict[str, List[Dict[str, Any]]]:
        issues = self.fetch_issues(project_id, updated_after)
        merge_requests = self.fetch_merge_requests(project_id, updated_after)
        notes: List[Dict[str, Any]] = []
        # a new note bumps its parent's updated_at, so the parents just fetched cover every changed thread
        for issue in issues:
            if issue.get("iid") is not None:
                notes.extend(self.fetch_notes(project_id, "issues", issue))
        for mr in merge_requests:
            if mr.get("iid") is not None:
                notes.extend(self.fetch_notes(project_id, "merge_requests", mr))
        return {"issues": issues, "merge_requests": merge_requests, "notes": notes}

    def fetch_events(self, project_ids: List[Any], updated_after: Optional[datetime] = None) -> Dict[str, List[Dict[str, Any]]]:
        """
        Fetch issues, merge requests and notes for the given projects only.

        :param project_ids: GitLab project ids (numeric or URL path).
        :param updated_after: optional watermark; only items modified after it are returned.
        """
        result: Dict[str, List[Dict[str, Any]]] = {"issues": [], "merge_requests": [], "notes": []}
        for project_id in project_ids:
            part = self._fetch_project(project_id, updated_after)
            for key in result:
                result[key].extend(part[key])
        logger.info(
            "gitlab-client: fetched %d issues, %d merge requests, %d notes from %d project(s)",
            len(result["issues"]), len(result["merge_requests"]), len(result["notes"]), len(project_ids),
        )
        return result


__all__ = ["GitLabClient", "raise_for_status"]
