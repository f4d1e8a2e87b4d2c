import json
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest
import requests

from errors import AuthExpired, UpstreamServerError, UpstreamTimeout
from ingest.token import TokenManager

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_response(status=200, body=None):
    resp = requests.Response()
    resp.status_code = status
    resp._content = json.dumps(body or {}).encode('utf-8')
    return resp


def _manager(db, session, skew=60):
    return TokenManager(db, 'https://gitlab.example/', 'cid', 'secret', refresh_skew=skew, session=session, clock=lambda: NOW)


def test_fresh_token_is_returned_without_refresh(user_db):
    expires = NOW + timedelta(hours=1)
    user_db.save_account('u1', 'tok', 'ref', expires)
    session = Mock()
    token, expires_at = _manager(user_db, session).get_access_token('u1')
    assert token == 'tok'
    assert expires_at == expires
    session.post.assert_not_called()


def test_expired_token_is_refreshed_and_persisted(user_db):
    user_db.save_account('u1', 'old', 'ref-1', NOW - timedelta(minutes=5))
    session = Mock()
    session.post.return_value = make_response(200, {'access_token': 'new', 'refresh_token': 'ref-2', 'expires_in': 7200})
    token, expires_at = _manager(user_db, session).get_access_token('u1')
    assert token == 'new'
    assert expires_at == NOW + timedelta(seconds=7200)
    url = session.post.call_args[0][0]
    assert url == 'https://gitlab.example/oauth/token'
    data = session.post.call_args[1]['data']
    assert data['grant_type'] == 'refresh_token'
    assert data['refresh_token'] == 'ref-1'
    stored = user_db.get_account('u1')
    assert stored['access_token'] == 'new'
    assert stored['refresh_token'] == 'ref-2'
    assert stored['expires_at'] == NOW + timedelta(seconds=7200)


def test_token_inside_skew_window_is_refreshed(user_db):
    user_db.save_account('u1', 'old', 'ref', NOW + timedelta(seconds=30))
    session = Mock()
    session.post.return_value = make_response(200, {'access_token': 'new'})
    token, _ = _manager(user_db, session, skew=60).get_access_token('u1')
    assert token == 'new'
    # refresh token kept when the provider does not rotate it
    assert user_db.get_account('u1')['refresh_token'] == 'ref'


@pytest.mark.parametrize('status', [400, 401])
def test_rejected_refresh_raises_auth_expired(user_db, status):
    user_db.save_account('u1', 'old', 'revoked', NOW - timedelta(minutes=1))
    session = Mock()
    session.post.return_value = make_response(status, {'error': 'invalid_grant'})
    with pytest.raises(AuthExpired) as info:
        _manager(user_db, session).get_access_token('u1')
    assert info.value.user_id == 'u1'
    assert user_db.get_account('u1')['access_token'] == 'old'


def test_missing_credentials_raise_auth_expired(db):
    db.add_user('u9')
    with pytest.raises(AuthExpired):
        _manager(db, Mock()).get_access_token('u9')


def test_expired_without_refresh_token(user_db):
    user_db.save_account('u1', 'old', None, NOW - timedelta(minutes=1))
    with pytest.raises(AuthExpired):
        _manager(user_db, Mock()).get_access_token('u1')


def test_transport_errors_are_not_auth_errors(user_db):
    user_db.save_account('u1', 'old', 'ref', NOW - timedelta(minutes=1))
    session = Mock()
    session.post.side_effect = requests.Timeout('slow')
    with pytest.raises(UpstreamTimeout):
        _manager(user_db, session).get_access_token('u1')
    session.post.side_effect = None
    session.post.return_value = make_response(502)
    with pytest.raises(UpstreamServerError):
        _manager(user_db, session).get_access_token('u1')


def test_concurrent_callers_refresh_once(user_db):
    user_db.save_account('u1', 'old', 'ref', NOW - timedelta(minutes=1))
    session = Mock()
    session.post.return_value = make_response(200, {'access_token': 'new', 'expires_in': 3600})
    manager = _manager(user_db, session)
    tokens = []
    threads = [threading.Thread(target=lambda: tokens.append(manager.get_access_token('u1')[0])) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert tokens == ['new'] * 5
    assert session.post.call_count == 1
