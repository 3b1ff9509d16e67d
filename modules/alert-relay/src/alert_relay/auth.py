from __future__ import annotations

import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

import requests

from .errors import AuthenticationFailed
from .models import AuthToken
from .run_logger import RelayLogger
from .state import StateStore
from .timestamps import from_epoch_ms, utc_now

AUTH_PATH = "/auth/1/userAuthorization"


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    FAILED = "failed"


class _Flight:
    def __init__(self) -> None:
        self.done = threading.Event()
        self.token: AuthToken | None = None
        self.error: Exception | None = None


class AuthManager:
    """Token acquisition for one feed.

    The token is refreshed ``refresh_buffer_seconds`` before it expires.
    Concurrent callers that find the token stale share one outstanding
    refresh; only the first caller talks to the auth endpoint. A failed
    refresh leaves the stored token untouched, so the next call retries.
    """

    def __init__(
        self,
        base_url: str,
        api_user_id: str,
        api_password: str,
        state: StateStore,
        session: requests.Session,
        logger: RelayLogger,
        refresh_buffer_seconds: float = 300.0,
        token_lifetime_seconds: float = 3600.0,
        timeout: float = 30.0,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_user_id = api_user_id
        self.api_password = api_password
        self.state_store = state
        self.session = session
        self.logger = logger
        self.refresh_buffer = timedelta(seconds=refresh_buffer_seconds)
        self.token_lifetime = timedelta(seconds=token_lifetime_seconds)
        self.timeout = timeout
        self._now = now
        self._lock = threading.Lock()
        self._flight: _Flight | None = None
        self._forced = False
        self._state = AuthState.UNAUTHENTICATED

    @property
    def state(self) -> AuthState:
        with self._lock:
            return self._state

    def get_valid_token(self) -> AuthToken:
        with self._lock:
            cached = self.state_store.get_auth_token()
            if cached is not None and not self._forced and self._is_fresh(cached):
                self._state = AuthState.AUTHENTICATED
                return cached
            flight = self._flight
            leader = flight is None
            if flight is None:
                flight = self._flight = _Flight()
                self._state = AuthState.REFRESHING
        if not leader:
            return self._wait_for(flight)
        return self._refresh(flight)

    def invalidate(self) -> None:
        """Force re-authentication on the next token request."""
        with self._lock:
            self._forced = True

    def _is_fresh(self, token: AuthToken) -> bool:
        return token.expires_at - self._now() > self.refresh_buffer

    def _wait_for(self, flight: _Flight) -> AuthToken:
        flight.done.wait()
        if flight.error is not None:
            raise AuthenticationFailed(str(flight.error)) from flight.error
        assert flight.token is not None
        return flight.token

    def _refresh(self, flight: _Flight) -> AuthToken:
        self.logger.log(f"feed={self.state_store.feed_id} acquiring authentication token")
        try:
            token = self._authenticate()
        except Exception as exc:
            flight.error = exc
            with self._lock:
                self._state = AuthState.FAILED
                self._flight = None
            flight.done.set()
            raise
        flight.token = token
        with self._lock:
            self._state = AuthState.AUTHENTICATED
            self._forced = False
            self._flight = None
        flight.done.set()
        return token

    def _authenticate(self) -> AuthToken:
        form = {
            "grant_type": "api_key",
            "scope": "first_alert_api",
            "api_user_id": self.api_user_id,
            "api_password": self.api_password,
        }
        try:
            response = self.session.post(
                f"{self.base_url}{AUTH_PATH}", data=form, timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise AuthenticationFailed(f"authentication request failed: {exc}") from exc

        if response.status_code != 200:
            raise AuthenticationFailed(
                f"authentication failed (HTTP {response.status_code}){_auth_error_detail(response)}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthenticationFailed(f"failed to parse auth response: {exc}") from exc
        if not isinstance(payload, dict) or not payload.get("authorizationToken"):
            raise AuthenticationFailed("auth response missing token")

        expiry_ms = payload.get("expirationTime")
        if expiry_ms:
            expires_at = from_epoch_ms(expiry_ms)
        else:
            expires_at = self._now() + self.token_lifetime
        token = AuthToken(value=str(payload["authorizationToken"]), expires_at=expires_at)
        self.state_store.save_auth_token(token)
        self.logger.log(
            f"feed={self.state_store.feed_id} authenticated expiry={expires_at.isoformat()}"
        )
        return token


def _auth_error_detail(response: Any) -> str:
    try:
        body = response.json()
    except ValueError:
        return ""
    if isinstance(body, dict) and body.get("Error"):
        return f": {body['Error']} - {body.get('error_description', '')}"
    return ""
