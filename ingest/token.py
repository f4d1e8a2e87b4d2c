"""
OAuth token manager for GitLab.
Hands out a usable access token per user, exchanging the stored refresh token when the access token has expired.
"""
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

import requests

from errors import AuthExpired, UpstreamError, UpstreamServerError, UpstreamTimeout
from normalize.util import utcnow
from storage.db import Database

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 7200


class TokenManager:
    """Access tokens for GitLab users, refreshed on demand and persisted back to the accounts table."""

    def __init__(
        self,
        db: Database,
        gitlab_url: str,
        client_id: str = "",
        client_secret: str = "",
        timeout: float = 5.0,
        refresh_skew: float = 60.0,
        session: Optional[requests.Session] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.gitlab_url = gitlab_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self.refresh_skew = timedelta(seconds=float(refresh_skew))
        self.session = session or requests.Session()
        self.clock = clock
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _user_lock(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(user_id, threading.Lock())

    def _is_fresh(self, expires_at: Optional[datetime]) -> bool:
        # no stored expiry: trust the token until GitLab rejects it
        return expires_at is None or expires_at - self.refresh_skew > self.clock()

    def get_access_token(self, user_id: str) -> Tuple[str, Optional[datetime]]:
        """
        Return (access_token, expires_at) for the user.

        Raises AuthExpired when no credentials are stored or the refresh token is rejected.
        Transport failures during a refresh surface as UpstreamServerError / UpstreamTimeout.
        """
        # one refresh per user at a time; a second caller sees the token the first one stored
        with self._user_lock(user_id):
            account = self.db.get_account(user_id)
            if not account or not account.get("access_token"):
                raise AuthExpired(user_id, "No GitLab credentials stored. Please log in.")
            if self._is_fresh(account.get("expires_at")):
                return account["access_token"], account.get("expires_at")
            if not account.get("refresh_token"):
                raise AuthExpired(user_id)
            logger.info("token-manager: access token for user=%s expired, refreshing", user_id)
            return self._refresh(user_id, account["refresh_token"])

    def _refresh(self, user_id: str, refresh_token: str) -> Tuple[str, datetime]:
        url = f"{self.gitlab_url}/oauth/token"
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        try:
            resp = self.session.post(url, data=data, timeout=self.timeout)
        except requests.Timeout as ex:
            raise UpstreamTimeout(f"token refresh timed out: {ex}") from ex
        except requests.RequestException as ex:
            raise UpstreamServerError(f"token refresh failed: {ex}") from ex

        status = resp.status_code
        if status in (400, 401):
            logger.warning("token-manager: refresh rejected for user=%s (status %s)", user_id, status)
            raise AuthExpired(user_id)
        if status >= 500:
            raise UpstreamServerError(f"token refresh failed with status {status}", status)
        if status != 200:
            raise UpstreamError(f"token refresh failed with status {status}", status)

        body = resp.json()
        access_token = body.get("access_token")
        if not access_token:
            raise AuthExpired(user_id, "GitLab returned no access token. Please log in again.")
        new_refresh = body.get("refresh_token") or refresh_token
        expires_at = self.clock() + timedelta(seconds=int(body.get("expires_in") or DEFAULT_EXPIRES_IN))
        self.db.save_account(user_id, access_token, new_refresh, expires_at)
        logger.info("token-manager: refreshed token for user=%s", user_id)
        return access_token, expires_at


__all__ = ["TokenManager"]
