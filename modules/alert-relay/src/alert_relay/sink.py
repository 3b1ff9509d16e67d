from __future__ import annotations

import json
import re
import threading
from pathlib import Path
from typing import Protocol

import requests

from .http import create_session
from .models import NormalizedAlert

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


class AlertSink(Protocol):
    def post_alert(self, alert: NormalizedAlert, destination: str) -> None:
        """Deliver one alert; raise on failure."""
        ...


def destination_filename(destination: str) -> str:
    cleaned = _UNSAFE.sub("_", destination).strip("._")
    return f"{cleaned or 'default'}.jsonl"


class JsonlSink:
    def __init__(self, root: Path) -> None:
        self.alerts_dir = root / "alerts"
        self._lock = threading.Lock()

    def path_for(self, destination: str) -> Path:
        return self.alerts_dir / destination_filename(destination)

    def post_alert(self, alert: NormalizedAlert, destination: str) -> None:
        line = json.dumps(alert.to_dict(), ensure_ascii=True) + "\n"
        path = self.path_for(destination)
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(line)


class WebhookSink:
    def __init__(
        self,
        base_url: str,
        session: requests.Session | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or create_session()
        self.timeout = timeout

    def post_alert(self, alert: NormalizedAlert, destination: str) -> None:
        response = self.session.post(
            f"{self.base_url}/{destination}",
            json=alert.to_dict(),
            timeout=self.timeout,
        )
        response.raise_for_status()
