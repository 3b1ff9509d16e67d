from __future__ import annotations

import threading
import time
from typing import Callable

from .run_logger import RelayLogger
from .rwlock import RWLock

DEFAULT_RETENTION_SECONDS = 24 * 60 * 60
DEFAULT_SWEEP_SECONDS = 10 * 60


class Deduplicator:
    """Seen-alert cache shared by every feed.

    Keys are ``(namespace, alert_id)`` where the namespace is the feed type,
    so two instances of the same type suppress each other's repeats while
    different types never collide.
    """

    def __init__(
        self,
        logger: RelayLogger | None = None,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        sweep_seconds: float = DEFAULT_SWEEP_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.logger = logger
        self.retention_seconds = retention_seconds
        self.sweep_seconds = sweep_seconds
        self._clock = clock
        self._seen: dict[tuple[str, str], float] = {}
        self._lock = RWLock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def record_alert(self, namespace: str, alert_id: str) -> bool:
        """Return True and remember the alert if unseen, False if it is a duplicate."""
        key = (namespace, alert_id)
        with self._lock.write():
            if key in self._seen:
                return False
            self._seen[key] = self._clock()
            return True

    def is_seen(self, namespace: str, alert_id: str) -> bool:
        with self._lock.read():
            return (namespace, alert_id) in self._seen

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._seen)

    def sweep(self) -> int:
        cutoff = self._clock() - self.retention_seconds
        with self._lock.write():
            expired = [key for key, seen_at in self._seen.items() if seen_at < cutoff]
            for key in expired:
                del self._seen[key]
            remaining = len(self._seen)
        if expired and self.logger is not None:
            self.logger.debug(f"dedup sweep expired={len(expired)} remaining={remaining}")
        return len(expired)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._sweep_loop, name="dedup-sweep", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        thread = self._thread
        if thread is None:
            return
        self._stop_event.set()
        thread.join()
        self._thread = None

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self.sweep_seconds):
            self.sweep()
