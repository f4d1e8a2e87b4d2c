import unittest
from datetime import datetime, timezone

from factories import author, issue, merge_request, note
from normalize.events import (
    extract_mentioned_iids,
    parse_closes_iids,
    transform_all,
    transform_issues,
    transform_merge_requests,
    transform_notes,
)
from normalize.models import ProjectInfo

PROJECTS = {42: ProjectInfo('Backend', 'group/backend')}


class TestTransformIssues(unittest.TestCase):
    def test_issue_fields(self):
        events = transform_issues([issue(labels=['bug', 'ui', 'bug'], assignees=[{'username': 'dave'}])], PROJECTS)
        self.assertEqual(len(events), 1)
        ev = events[0]
        self.assertEqual(ev.type, 'issue')
        self.assertEqual(ev.external_event_id, 'issue-100')
        self.assertEqual(ev.iid, 1)
        self.assertEqual(ev.title, 'Login broken')
        self.assertEqual(ev.author, 'alice')
        self.assertEqual(ev.author_avatar, 'https://gitlab.example/a.png')
        self.assertEqual(ev.project, 'Backend')
        self.assertEqual(ev.project_id, 'group/backend')
        self.assertEqual(ev.labels, {'bug', 'ui'})
        self.assertEqual(ev.status, 'open')
        self.assertEqual(ev.assignees, ['dave'])
        self.assertEqual(ev.created_at, datetime(2024, 1, 10, 9, 0, tzinfo=timezone.utc))
        self.assertIsNone(ev.external_parent_id)

    def test_closed_issue_status(self):
        ev = transform_issues([issue(state='closed')], PROJECTS)[0]
        self.assertEqual(ev.status, 'closed')

    def test_unknown_project_falls_back(self):
        ev = transform_issues([issue(project_id=999)], PROJECTS)[0]
        self.assertEqual(ev.project, 'Project 999')
        self.assertEqual(ev.project_id, '999')

    def test_malformed_item_is_skipped(self):
        bad = issue(id=101)
        bad['author'] = None
        no_date = issue(id=102)
        no_date['created_at'] = 'not a date'
        events = transform_issues([bad, issue(id=103), no_date, 'garbage'], PROJECTS)
        self.assertEqual([e.external_event_id for e in events], ['issue-103'])

    def test_deterministic(self):
        a = transform_issues([issue()], PROJECTS)[0].to_dict()
        b = transform_issues([issue()], PROJECTS)[0].to_dict()
        self.assertEqual(a, b)


class TestTransformMergeRequests(unittest.TestCase):
    def test_mr_fields(self):
        ev = transform_merge_requests([merge_request(description='Fixes #1 and resolves #7, see !3')], PROJECTS)[0]
        self.assertEqual(ev.type, 'merge_request')
        self.assertEqual(ev.external_event_id, 'mr-200')
        self.assertEqual(ev.status, 'open')
        self.assertEqual(ev.closes_iids, [1, 7])
        self.assertEqual(ev.mentioned_iids, [1, 7, 3])
        self.assertIsNone(ev.author_avatar)

    def test_merged_status_kept(self):
        ev = transform_merge_requests([merge_request(state='merged')], PROJECTS)[0]
        self.assertEqual(ev.status, 'merged')


class TestTransformNotes(unittest.TestCase):
    def test_issue_note(self):
        ev = transform_notes([note(body='\n  First line here\nsecond')], PROJECTS)[0]
        self.assertEqual(ev.type, 'comment')
        self.assertEqual(ev.external_event_id, 'note-300')
        self.assertEqual(ev.external_parent_id, 'issue-100')
        self.assertEqual(ev.parent_type, 'issue')
        self.assertEqual(ev.title, 'Comment: First line here')
        self.assertIsNone(ev.iid)
        self.assertIsNone(ev.parent_event_id)

    def test_mr_note(self):
        ev = transform_notes([note(noteable_id=200, noteable_type='MergeRequest')], PROJECTS)[0]
        self.assertEqual(ev.external_parent_id, 'mr-200')
        self.assertEqual(ev.parent_type, 'merge_request')

    def test_long_title_truncated(self):
        ev = transform_notes([note(body='x' * 150)], PROJECTS)[0]
        self.assertEqual(ev.title, 'Comment: ' + 'x' * 97 + '...')

    def test_empty_body_title(self):
        ev = transform_notes([note(body='')], PROJECTS)[0]
        self.assertEqual(ev.title, 'Comment')

    def test_system_note_flag(self):
        ev = transform_notes([note(system=True, body='changed the description')], PROJECTS)[0]
        self.assertTrue(ev.is_system_note)

    def test_note_without_parent_is_skipped(self):
        orphan = note(noteable_type='Snippet')
        self.assertEqual(transform_notes([orphan], PROJECTS), [])


def test_transform_all_orders_by_kind():
    raw = {
        'issues': [issue()],
        'merge_requests': [merge_request()],
        'notes': [note(who=author(4, 'dan', None, None))],
    }
    events = transform_all(raw, PROJECTS)
    assert [e.type for e in events] == ['issue', 'merge_request', 'comment']


def test_reference_extraction():
    assert extract_mentioned_iids('see #12, !4 and #12 again') == [12, 4]
    assert extract_mentioned_iids(None) == []
    assert parse_closes_iids('Closed #2. fix #3; Resolved #4; relates to #5') == [2, 3, 4]


if __name__ == '__main__':
    unittest.main()
