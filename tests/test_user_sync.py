from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from errors import NoMonitoredProjects, UpstreamServerError
from factories import FakeClient, add_user, build_pipeline, issue, note, payload
from storage.cursor import get_last_sync
from storage.journal import StepJournal
from storage.people import list_people

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now


def test_full_sync_stores_links_and_advances_cursor(db):
    add_user(db, 'u1')
    client = FakeClient()
    result = build_pipeline(db, {'u1': client}, clock=Clock()).run('u1')
    assert client.calls == [(['42'], None)]
    assert result.fetched == {'issues': 1, 'merge_requests': 1, 'notes': 1}
    assert (result.stored, result.skipped, result.linked) == (3, 0, 1)
    assert result.metadata_updated == 1
    assert result.people['total'] == 3
    assert result.last_sync_at == T0
    assert get_last_sync(db, 'u1') == T0
    assert len(list_people(db, 'u1')) == 3
    assert db.get_event('u1', 'issue-100').project == 'Project 42'


def test_second_sync_is_incremental_and_idempotent(db):
    add_user(db, 'u1')
    client = FakeClient()
    clock = Clock()
    pipeline = build_pipeline(db, {'u1': client}, clock=clock)
    pipeline.run('u1')
    clock.now = T0 + timedelta(minutes=10)
    second = pipeline.run('u1')
    assert client.calls[1][1] == T0
    assert (second.stored, second.skipped, second.linked) == (0, 3, 0)
    assert get_last_sync(db, 'u1') == T0 + timedelta(minutes=10)


def test_failure_leaves_cursor_untouched(db):
    add_user(db, 'u1')
    client = FakeClient(errors=[UpstreamServerError('boom', 502)])
    with pytest.raises(UpstreamServerError):
        build_pipeline(db, {'u1': client}, clock=Clock()).run('u1')
    assert get_last_sync(db, 'u1') is None


def test_late_failure_does_not_advance_cursor(db):
    add_user(db, 'u1')
    with patch('pipeline.user_sync.upsert_people', side_effect=RuntimeError('locked')):
        with pytest.raises(RuntimeError):
            build_pipeline(db, {'u1': FakeClient()}, clock=Clock()).run('u1')
    assert get_last_sync(db, 'u1') is None
    # events already stored are kept and absorbed by the next pass
    assert db.count_events('u1') == 3


def test_retry_of_same_run_replays_completed_steps(db):
    add_user(db, 'u1')
    client = FakeClient()
    pipeline = build_pipeline(db, {'u1': client}, clock=Clock(), journal=StepJournal(db))
    with patch('pipeline.user_sync.upsert_people', side_effect=RuntimeError('locked')):
        with pytest.raises(RuntimeError):
            pipeline.run('u1', run_id='r1')
    result = pipeline.run('u1', run_id='r1')
    assert len(client.calls) == 1
    assert result.stored == 3
    assert result.people['created'] == 3
    assert get_last_sync(db, 'u1') == T0


def test_comment_from_previous_sync_links_when_parent_arrives(db):
    add_user(db, 'u1')
    clock = Clock()
    client = FakeClient(payload(notes=[note()]))
    pipeline = build_pipeline(db, {'u1': client}, clock=clock)
    assert pipeline.run('u1').linked == 0
    client.data = payload(issues=[issue()])
    clock.now = T0 + timedelta(minutes=10)
    assert pipeline.run('u1').linked == 1
    assert db.get_event('u1', 'issue-100').comment_count == 1


def test_user_without_projects(db):
    db.add_user('u1')
    with pytest.raises(NoMonitoredProjects):
        build_pipeline(db, {}).run('u1')
