from __future__ import annotations

import json
from datetime import datetime

from .models import AuthToken
from .store import Store
from .timestamps import parse_datetime

KEY_CURSOR = "feed_{id}_cursor"
KEY_AUTH = "feed_{id}_auth"
KEY_LAST_POLL = "feed_{id}_last_poll"
KEY_LAST_SUCCESS = "feed_{id}_last_success"
KEY_FAILURES = "feed_{id}_failures"
KEY_LAST_ERROR = "feed_{id}_last_error"

OPERATIONAL_KEYS = (KEY_AUTH, KEY_CURSOR)
ALL_KEYS = (
    KEY_AUTH,
    KEY_CURSOR,
    KEY_LAST_POLL,
    KEY_LAST_SUCCESS,
    KEY_FAILURES,
    KEY_LAST_ERROR,
)


class StateStore:
    """Persisted state for one feed, keyed by the feed's immutable id."""

    def __init__(self, store: Store, feed_id: str) -> None:
        self.store = store
        self.feed_id = feed_id

    def _key(self, template: str) -> str:
        return template.format(id=self.feed_id)

    def _get_json(self, template: str) -> object | None:
        raw = self.store.kv_get(self._key(template))
        return None if raw is None else json.loads(raw)

    def _set_json(self, template: str, value: object) -> None:
        self.store.kv_set(self._key(template), json.dumps(value))

    def _get_time(self, template: str) -> datetime | None:
        value = self._get_json(template)
        return parse_datetime(str(value)) if value else None

    def get_cursor(self) -> str | None:
        value = self._get_json(KEY_CURSOR)
        return str(value) if value else None

    def save_cursor(self, cursor: str) -> None:
        self._set_json(KEY_CURSOR, cursor)

    def get_auth_token(self) -> AuthToken | None:
        value = self._get_json(KEY_AUTH)
        if not isinstance(value, dict) or not value.get("token"):
            return None
        return AuthToken(value=str(value["token"]), expires_at=parse_datetime(str(value["expiry"])))

    def save_auth_token(self, token: AuthToken) -> None:
        self._set_json(KEY_AUTH, {"token": token.value, "expiry": token.expires_at.isoformat()})

    def clear_auth_token(self) -> None:
        self.store.kv_delete(self._key(KEY_AUTH))

    def get_last_poll(self) -> datetime | None:
        return self._get_time(KEY_LAST_POLL)

    def save_last_poll(self, when: datetime) -> None:
        self._set_json(KEY_LAST_POLL, when.isoformat())

    def get_last_success(self) -> datetime | None:
        return self._get_time(KEY_LAST_SUCCESS)

    def save_last_success(self, when: datetime) -> None:
        self._set_json(KEY_LAST_SUCCESS, when.isoformat())

    def get_last_error(self) -> str:
        value = self._get_json(KEY_LAST_ERROR)
        return str(value) if value else ""

    def save_last_error(self, message: str) -> None:
        self._set_json(KEY_LAST_ERROR, message)

    def get_failures(self) -> int:
        value = self._get_json(KEY_FAILURES)
        return int(value) if value else 0

    def increment_failures(self) -> int:
        return self.store.kv_increment(self._key(KEY_FAILURES))

    def reset_failures(self) -> None:
        self._set_json(KEY_FAILURES, 0)

    def reset_failure_state(self) -> None:
        self.reset_failures()
        self.save_last_error("")

    def clear_operational_state(self) -> None:
        """Drop cursor and token; failure and timing fields stay for status display."""
        for template in OPERATIONAL_KEYS:
            self.store.kv_delete(self._key(template))

    def clear_all(self) -> None:
        for template in ALL_KEYS:
            self.store.kv_delete(self._key(template))
