from __future__ import annotations

from typing import Any

import requests

from .auth import AuthManager
from .errors import (
    BadRequest,
    FeedError,
    MalformedResponse,
    RateLimited,
    TransientError,
    Unauthorized,
)
from .models import AlertPage
from .run_logger import RelayLogger

ALERTS_PATH = "/alerts/1/alerts"
ALERT_VERSION = "19"


class APIClient:
    """One cursor-paginated fetch per call against the alerts endpoint."""

    def __init__(
        self,
        base_url: str,
        auth: AuthManager,
        session: requests.Session,
        logger: RelayLogger,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.auth = auth
        self.session = session
        self.logger = logger
        self.timeout = timeout

    def fetch_alerts(self, cursor: str | None = None) -> AlertPage:
        token = self.auth.get_valid_token()
        params = {"alertversion": ALERT_VERSION}
        if cursor:
            params["from"] = cursor
        try:
            response = self.session.get(
                f"{self.base_url}{ALERTS_PATH}",
                params=params,
                headers={
                    "Authorization": f"Dmauth {token.value}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TransientError(f"alerts request failed: {exc}") from exc

        self._raise_for_status(response)
        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedResponse(f"failed to parse alerts response: {exc}") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("alerts", []), list):
            raise MalformedResponse("alerts response is not an object with an alerts list")

        alerts = [item for item in payload.get("alerts") or [] if isinstance(item, dict)]
        next_cursor = payload.get("to") or None
        self.logger.debug(
            f"feed={self.auth.state_store.feed_id} fetched alerts={len(alerts)} "
            f"cursor={cursor} next_cursor={next_cursor}"
        )
        return AlertPage(alerts=alerts, cursor=str(next_cursor) if next_cursor else None)

    def _raise_for_status(self, response: Any) -> None:
        status = response.status_code
        if status == 200:
            return
        detail = _api_error_detail(response)
        if status == 401:
            self.auth.invalidate()
            raise Unauthorized(
                f"authentication error (HTTP 401): {detail or 'token invalid or expired'}",
                status_code=status,
            )
        if status == 429:
            raise RateLimited("rate limit exceeded (HTTP 429): too many requests", status_code=status)
        if status >= 500:
            raise TransientError(
                f"server error (HTTP {status}): {detail or 'upstream internal error'}",
                status_code=status,
            )
        if status == 400:
            raise BadRequest(
                f"bad request (HTTP 400): {detail or 'invalid request parameters'}",
                status_code=status,
            )
        raise FeedError(f"unexpected HTTP status {status}", status_code=status)


def _api_error_detail(response: Any) -> str:
    try:
        body = response.json()
    except ValueError:
        return ""
    if not isinstance(body, dict):
        return ""
    errors = body.get("Error")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        return f"Code {errors[0].get('Code', '')}: {errors[0].get('message', '')}"
    return ""
