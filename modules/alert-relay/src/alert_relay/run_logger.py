from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any

from .timestamps import now_utc

LEVELS = {"debug": 10, "info": 20, "warning": 30, "error": 40, "critical": 50}


class RelayLogger:
    def __init__(self, root: Path, min_level: str = "info") -> None:
        self.log_path = root / "logs" / "relay.log"
        self.failures_path = root / "failures" / "feeds.jsonl"
        self.min_level = LEVELS[min_level]
        self._lock = threading.Lock()

    def log(self, message: str, level: str = "info") -> None:
        if LEVELS[level] < self.min_level:
            return
        line = f"{now_utc()} {level.upper()} {message}\n"
        with self._lock:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open("a", encoding="utf-8") as handle:
                handle.write(line)

    def debug(self, message: str) -> None:
        self.log(message, level="debug")

    def warning(self, message: str) -> None:
        self.log(message, level="warning")

    def error(self, message: str) -> None:
        self.log(message, level="error")

    def critical(self, message: str) -> None:
        self.log(message, level="critical")

    def failure(self, record: dict[str, Any]) -> None:
        record_with_time = {"occurred_at": now_utc(), **record}
        with self._lock:
            self.failures_path.parent.mkdir(parents=True, exist_ok=True)
            with self.failures_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record_with_time, ensure_ascii=True) + "\n")
