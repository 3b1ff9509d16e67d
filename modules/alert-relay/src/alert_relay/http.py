from __future__ import annotations

import requests

USER_AGENT = "alert-relay/0.1 (+local)"


def create_session(user_agent: str | None = None) -> requests.Session:
    session = requests.Session()
    session.headers.update({"User-Agent": user_agent or USER_AGENT})
    return session
