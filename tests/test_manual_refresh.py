import threading
import unittest
from unittest.mock import Mock

import pytest

from errors import (
    AuthExpired,
    Forbidden,
    NoMonitoredProjects,
    OperationCancelled,
    RateLimited,
    RefreshInProgress,
    UpstreamServerError,
)
from pipeline.manual import ManualRefreshController, RefreshOutcome, countdown_message, success_message
from pipeline.retry import CancellationToken, countdown, retry_with_backoff


class RecordingToken(CancellationToken):
    """Records requested waits instead of sleeping."""

    def __init__(self, cancel_after=None):
        super().__init__()
        self.waits = []
        self.cancel_after = cancel_after

    def wait(self, seconds):
        self.waits.append(seconds)
        if self.cancel_after is not None and len(self.waits) >= self.cancel_after:
            self.cancel()
        return self.cancelled


def _result(stored=2):
    result = Mock()
    result.stored = stored
    result.to_dict.return_value = {'stored': stored}
    return result


def _controller(side_effect):
    pipeline = Mock()
    pipeline.run.side_effect = side_effect
    return ManualRefreshController(pipeline, delays=[1.0, 2.0, 4.0]), pipeline


class TestManualRefresh(unittest.TestCase):
    def test_success_message(self):
        controller, pipeline = _controller([_result(2)])
        outcome = controller.refresh('u1', cancel_token=RecordingToken())
        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.message, 'Refreshed! 2 new items found')
        self.assertEqual(outcome.attempts, 1)
        pipeline.run.assert_called_once_with('u1')

    def test_rate_limit_backoff_then_exhausted(self):
        limited = RateLimited('slow down')
        controller, pipeline = _controller([limited, limited, limited, limited])
        token = RecordingToken()
        retries = []
        outcome = controller.refresh('u1', cancel_token=token, on_retry=lambda n, d, ex: retries.append(d))
        self.assertEqual(retries, [1.0, 2.0, 4.0])
        self.assertEqual(sum(token.waits), 7.0)
        self.assertEqual(pipeline.run.call_count, 4)
        self.assertEqual(outcome.status, RefreshOutcome.RATE_LIMITED)
        self.assertFalse(outcome.ok)
        self.assertEqual(outcome.message, 'GitLab rate limit exceeded. Please try again in a few minutes.')

    def test_rate_limit_then_success(self):
        controller, _ = _controller([RateLimited('slow down'), _result(0)])
        ticks = []
        outcome = controller.refresh('u1', cancel_token=RecordingToken(), on_countdown=ticks.append)
        self.assertTrue(outcome.ok)
        self.assertEqual(outcome.attempts, 2)
        self.assertEqual(ticks, [1])
        self.assertEqual(outcome.message, 'Refreshed! 0 new items found')

    def test_countdown_ticks_every_second(self):
        controller, _ = _controller([RateLimited('x'), RateLimited('x'), RateLimited('x'), _result(1)])
        ticks = []
        outcome = controller.refresh('u1', cancel_token=RecordingToken(), on_countdown=ticks.append)
        self.assertEqual(ticks, [1, 2, 1, 4, 3, 2, 1])
        self.assertEqual(outcome.message, 'Refreshed! 1 new item found')

    def test_other_errors_are_not_retried(self):
        cases = [
            (AuthExpired('u1'), RefreshOutcome.REAUTH_REQUIRED, 'GitLab authentication expired. Please log in again.'),
            (UpstreamServerError('bad gateway', 502), RefreshOutcome.UNAVAILABLE,
             'GitLab server is temporarily unavailable. Please try again in a moment.'),
            (NoMonitoredProjects('u1'), RefreshOutcome.NO_PROJECTS, 'No monitored projects found. Please select projects to monitor.'),
            (Forbidden('GitLab API error 403: forbidden', 403), RefreshOutcome.FAILED, 'Refresh failed: GitLab API error 403: forbidden'),
        ]
        for error, status, message in cases:
            controller, pipeline = _controller([error])
            token = RecordingToken()
            outcome = controller.refresh('u1', cancel_token=token)
            self.assertEqual(outcome.status, status)
            self.assertEqual(outcome.message, message)
            self.assertEqual(pipeline.run.call_count, 1)
            self.assertEqual(token.waits, [])

    def test_cancel_during_backoff_stops_retries(self):
        controller, pipeline = _controller([RateLimited('x'), _result()])
        outcome = controller.refresh('u1', cancel_token=RecordingToken(cancel_after=1))
        self.assertEqual(outcome.status, RefreshOutcome.CANCELLED)
        self.assertEqual(pipeline.run.call_count, 1)

    def test_guard_rejects_second_refresh_for_same_user(self):
        started = threading.Event()
        release = threading.Event()

        def slow_run(user_id):
            started.set()
            release.wait(5)
            return _result(1)

        pipeline = Mock()
        pipeline.run.side_effect = slow_run
        controller = ManualRefreshController(pipeline)
        handle = controller.start('u1')
        self.assertTrue(controller.is_refreshing('u1'))
        with self.assertRaises(RefreshInProgress):
            controller.start('u1')
        with self.assertRaises(RefreshInProgress):
            controller.refresh('u1')
        # a different user is not blocked
        other = controller.start('u2')
        started.wait(5)
        release.set()
        self.assertTrue(handle.wait(5).ok)
        self.assertTrue(other.wait(5).ok)
        self.assertFalse(controller.is_refreshing('u1'))

    def test_guard_released_after_failure(self):
        controller, _ = _controller([UpstreamServerError('x', 503), _result()])
        controller.refresh('u1', cancel_token=RecordingToken())
        self.assertTrue(controller.refresh('u1', cancel_token=RecordingToken()).ok)

    def test_abandoned_handle_does_not_retry(self):
        entered = threading.Event()
        gate = threading.Event()
        calls = []

        def run(user_id):
            calls.append(user_id)
            entered.set()
            gate.wait(5)
            raise RateLimited('x')

        pipeline = Mock()
        pipeline.run.side_effect = run
        controller = ManualRefreshController(pipeline, delays=[30.0])
        handle = controller.start('u1')
        entered.wait(5)
        handle.cancel()
        gate.set()
        outcome = handle.wait(5)
        self.assertEqual(outcome.status, RefreshOutcome.CANCELLED)
        self.assertEqual(calls, ['u1'])


def test_retry_with_backoff_raises_last_error_when_exhausted():
    token = RecordingToken()
    fn = Mock(side_effect=[RateLimited('a'), RateLimited('b')])
    with pytest.raises(RateLimited) as info:
        retry_with_backoff(fn, lambda ex: isinstance(ex, RateLimited), delays=[0.5], token=token)
    assert str(info.value) == 'b'
    assert token.waits == [0.5]


def test_countdown_raises_when_already_cancelled():
    token = RecordingToken()
    token.cancel()
    with pytest.raises(OperationCancelled):
        countdown(2, token)
    assert token.waits == []


def test_messages():
    assert success_message(1) == 'Refreshed! 1 new item found'
    assert success_message(3) == 'Refreshed! 3 new items found'
    assert countdown_message(4) == 'Rate limited by GitLab. Retrying in 4s...'
