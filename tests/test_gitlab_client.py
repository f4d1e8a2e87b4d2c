import json
import unittest
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest
import requests

from errors import Forbidden, RateLimited, Unauthorized, UpstreamError, UpstreamServerError, UpstreamTimeout
from factories import issue, merge_request, note
from ingest.gitlab import GitLabClient, raise_for_status

BASE = 'https://gitlab.example'
API = f'{BASE}/api/v4'


def make_response(status=200, body=None, headers=None, url=''):
    resp = requests.Response()
    resp.status_code = status
    resp._content = json.dumps(body if body is not None else []).encode('utf-8')
    resp.headers.update(headers or {})
    resp.url = url
    return resp


class RoutedSession:
    """Fake requests.Session: maps a URL to a list of responses served in order."""

    def __init__(self, routes):
        self.routes = {url: list(responses) for url, responses in routes.items()}
        self.calls = []

    def get(self, url, headers=None, params=None, timeout=None):
        self.calls.append({'url': url, 'params': params, 'timeout': timeout, 'headers': headers})
        queue = self.routes.get(url)
        if not queue:
            return make_response(200, [])
        return queue.pop(0)


class TestGitLabClient(unittest.TestCase):
    def test_follows_link_header_until_exhausted(self):
        next_url = f'{API}/projects/42/issues?page=2&per_page=2'
        session = RoutedSession({
            f'{API}/projects/42/issues': [make_response(200, [issue(id=1, iid=1), issue(id=2, iid=2)], {'Link': f'<{next_url}>; rel="next"'})],
            next_url: [make_response(200, [issue(id=3, iid=3)])],
        })
        client = GitLabClient('tok', BASE, per_page=2, session=session)
        issues = client.fetch_issues(42)
        self.assertEqual([i['id'] for i in issues], [1, 2, 3])
        self.assertIsNone(session.calls[1]['params'])
        self.assertEqual(session.calls[0]['params']['per_page'], 2)
        self.assertEqual(session.calls[0]['headers']['Authorization'], 'Bearer tok')

    def test_falls_back_to_x_next_page(self):
        url = f'{API}/projects/42/merge_requests'
        session = RoutedSession({
            url: [
                make_response(200, [merge_request(id=1)], {'X-Next-Page': '2'}),
                make_response(200, [merge_request(id=2)], {'X-Next-Page': ''}),
            ],
        })
        client = GitLabClient('tok', BASE, session=session)
        mrs = client.fetch_merge_requests(42)
        self.assertEqual([m['id'] for m in mrs], [1, 2])
        self.assertEqual(session.calls[1]['params']['page'], '2')

    def test_max_pages_caps_pagination(self):
        url = f'{API}/projects/42/issues'
        session = RoutedSession({url: [make_response(200, [issue(id=1)], {'X-Next-Page': '2'})]})
        client = GitLabClient('tok', BASE, max_pages=1, session=session)
        self.assertEqual(len(client.fetch_issues(42)), 1)
        self.assertEqual(len(session.calls), 1)

    def test_updated_after_and_scope_params(self):
        session = RoutedSession({})
        client = GitLabClient('tok', BASE, timeout=5.0, session=session)
        client.fetch_issues(42, datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc))
        params = session.calls[0]['params']
        self.assertEqual(params['updated_after'], '2024-01-02T03:04:05.000Z')
        self.assertEqual(params['scope'], 'all')
        self.assertEqual(params['order_by'], 'updated_at')
        self.assertEqual(session.calls[0]['timeout'], 5.0)

    def test_project_path_is_url_encoded(self):
        session = RoutedSession({})
        GitLabClient('tok', BASE, session=session).fetch_issues('group/backend')
        self.assertEqual(session.calls[0]['url'], f'{API}/projects/group%2Fbackend/issues')

    def test_fetch_events_annotates_notes(self):
        session = RoutedSession({
            f'{API}/projects/42/issues': [make_response(200, [issue(id=100, iid=1)])],
            f'{API}/projects/42/merge_requests': [make_response(200, [merge_request(id=200, iid=5)])],
            f'{API}/projects/42/issues/1/notes': [make_response(200, [{'id': 7, 'body': 'hi', 'author': {'id': 1, 'username': 'a'}}])],
            f'{API}/projects/42/merge_requests/5/notes': [make_response(200, [{'id': 8, 'body': 'lgtm', 'noteable_type': 'MergeRequest', 'noteable_id': 200}])],
        })
        result = GitLabClient('tok', BASE, session=session).fetch_events([42])
        self.assertEqual(len(result['issues']), 1)
        self.assertEqual(len(result['merge_requests']), 1)
        issue_note, mr_note = result['notes']
        self.assertEqual(issue_note['noteable_type'], 'Issue')
        self.assertEqual(issue_note['noteable_id'], 100)
        self.assertEqual(issue_note['project_id'], 42)
        self.assertEqual(issue_note['web_url'], 'https://gitlab.example/group/backend/-/issues/1#note_7')
        self.assertEqual(mr_note['noteable_type'], 'MergeRequest')
        self.assertTrue(mr_note['web_url'].endswith('/merge_requests/5#note_8'))

    def test_only_requested_projects_are_fetched(self):
        session = RoutedSession({})
        GitLabClient('tok', BASE, session=session).fetch_events([42, 43])
        projects = {c['url'].split('/projects/')[1].split('/')[0] for c in session.calls}
        self.assertEqual(projects, {'42', '43'})


@pytest.mark.parametrize('status,exc', [
    (401, Unauthorized),
    (403, Forbidden),
    (429, RateLimited),
    (500, UpstreamServerError),
    (503, UpstreamServerError),
    (404, UpstreamError),
])
def test_status_mapping(status, exc):
    with pytest.raises(exc) as info:
        raise_for_status(make_response(status, {'message': 'nope'}))
    assert info.value.status_code == status
    assert 'nope' in str(info.value)


def test_rate_limited_carries_retry_after():
    with pytest.raises(RateLimited) as info:
        raise_for_status(make_response(429, {}, {'Retry-After': '30'}))
    assert info.value.retry_after == 30.0


def test_client_does_not_retry_rate_limit():
    session = Mock()
    session.get.return_value = make_response(429, {'message': 'slow down'})
    with pytest.raises(RateLimited):
        GitLabClient('tok', BASE, session=session).fetch_issues(42)
    assert session.get.call_count == 1


def test_timeout_and_connection_errors_are_typed():
    session = Mock()
    session.get.side_effect = requests.Timeout('read timed out')
    with pytest.raises(UpstreamTimeout):
        GitLabClient('tok', BASE, session=session).fetch_issues(42)
    session.get.side_effect = requests.ConnectionError('refused')
    with pytest.raises(UpstreamServerError):
        GitLabClient('tok', BASE, session=session).fetch_issues(42)


if __name__ == '__main__':
    unittest.main()
