from __future__ import annotations

import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Protocol

from .config import RelaySettings
from .errors import FeedError, RelayError
from .models import AlertPage
from .processor import AlertProcessor
from .run_logger import RelayLogger
from .scheduler import Job, JobMetadata, NextWaitInterval
from .state import StateStore
from .timestamps import utc_now

DisableCallback = Callable[[str], None]


class AlertFetcher(Protocol):
    def fetch_alerts(self, cursor: str | None = None) -> AlertPage:
        ...


class Scheduler(Protocol):
    def schedule(
        self, job_id: str, next_wait_interval: NextWaitInterval, callback: Callable[[], None]
    ) -> Job:
        ...

    def run_exclusive(self, job_id: str, callback: Callable[[], bool]) -> bool | None:
        ...


class PollerState(str, Enum):
    IDLE = "idle"
    CATCHING_UP = "catching_up"
    POLLING = "polling"
    DISABLED = "disabled"
    STOPPED = "stopped"


class Poller:
    """Per-feed polling lifecycle.

    Without a persisted cursor the poller first catches up on a short fixed
    cadence, skipping alerts older than the recency horizon, then hands off
    to the cluster scheduler for regular polling. Catch-up cycles hold the
    same cluster lease as regular ticks, so workers starting the same feed
    together page through it once between them. Every cycle error is
    absorbed here: it is journaled, counted, and once the count reaches
    ``max_consecutive_failures`` the poller disables itself and reports the
    feed id through ``on_disable``. The callback must not block; it runs on
    the polling thread.
    """

    def __init__(
        self,
        feed_id: str,
        feed_name: str,
        interval_seconds: float,
        client: AlertFetcher,
        processor: AlertProcessor,
        state: StateStore,
        scheduler: Scheduler,
        logger: RelayLogger,
        settings: RelaySettings | None = None,
        on_disable: DisableCallback | None = None,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.feed_id = feed_id
        self.feed_name = feed_name
        self.interval = timedelta(seconds=interval_seconds)
        self.client = client
        self.processor = processor
        self.state_store = state
        self.scheduler = scheduler
        self.logger = logger
        self.settings = settings or RelaySettings()
        self.on_disable = on_disable
        self._now = now
        self._lock = threading.Lock()
        self._tick_lock = threading.RLock()
        self._stop_event = threading.Event()
        self._caught_up = threading.Event()
        self._state = PollerState.IDLE
        self._job: Job | None = None
        self._catch_up_thread: threading.Thread | None = None

    @property
    def job_id(self) -> str:
        return f"feed_poll_{self.feed_id}"

    @property
    def state(self) -> PollerState:
        with self._lock:
            return self._state

    def start(self) -> None:
        with self._lock:
            if self._state in (PollerState.CATCHING_UP, PollerState.POLLING):
                raise RelayError("poller already running")
            if self._state is PollerState.DISABLED:
                raise RelayError("poller is disabled")
            self._stop_event.clear()
            self._caught_up.clear()
            if self.state_store.get_cursor() is None:
                self.logger.log(
                    f"feed={self.feed_id} name={self.feed_name} no cursor, starting catch-up"
                )
                self._state = PollerState.CATCHING_UP
                self._catch_up_thread = threading.Thread(
                    target=self._catch_up, name=f"catch-up-{self.feed_id}", daemon=True
                )
                self._catch_up_thread.start()
                return
            self._start_regular_job_locked()

    def stop(self) -> None:
        """Cancel polling and block until the catch-up loop and any tick have exited."""
        with self._lock:
            self._stop_event.set()
            thread = self._catch_up_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        with self._lock:
            job = self._job
            self._job = None
            self._catch_up_thread = None
        if job is not None:
            job.close()
        with self._tick_lock:
            with self._lock:
                previous = self._state
                self._state = PollerState.STOPPED
        if previous is not PollerState.STOPPED:
            self.logger.log(f"feed={self.feed_id} name={self.feed_name} poller stopped")

    def wait_for_catch_up(self, timeout: float | None = None) -> bool:
        return self._caught_up.wait(timeout)

    def next_wait_interval(self, now: datetime, metadata: JobMetadata) -> timedelta:
        """Time left until the next tick, measured from the last recorded run."""
        if metadata.last_finished is None:
            return timedelta(0)
        elapsed = now - metadata.last_finished
        if elapsed < self.interval:
            return self.interval - elapsed
        return timedelta(0)

    def run_once(self) -> None:
        with self._tick_lock:
            if self._stop_event.is_set() or self.state is not PollerState.POLLING:
                return
            self.logger.debug(f"feed={self.feed_id} poll cycle started")
            self._cycle(stage="poll")

    def _start_regular_job_locked(self) -> None:
        self._job = self.scheduler.schedule(self.job_id, self.next_wait_interval, self.run_once)
        self._state = PollerState.POLLING
        self.logger.log(
            f"feed={self.feed_id} name={self.feed_name} poller started "
            f"interval={int(self.interval.total_seconds())}s"
        )

    def _catch_up(self) -> None:
        self.logger.log(f"feed={self.feed_id} name={self.feed_name} catch-up started")
        while not self._stop_event.is_set():
            with self._tick_lock:
                if self._stop_event.is_set():
                    break
                done = self.scheduler.run_exclusive(self.job_id, self._catch_up_cycle)
            if done is None:
                self.logger.debug(f"feed={self.feed_id} catch-up lease held by another worker")
            elif done:
                break
            if self._stop_event.wait(self.settings.catch_up_interval_seconds):
                break

        with self._lock:
            if self._stop_event.is_set() or self._state is not PollerState.CATCHING_UP:
                self.logger.log(f"feed={self.feed_id} name={self.feed_name} catch-up canceled")
                return
            self.logger.log(f"feed={self.feed_id} name={self.feed_name} catch-up complete")
            self._start_regular_job_locked()
            self._caught_up.set()

    def _catch_up_cycle(self) -> bool:
        return self._cycle(stage="catch_up")

    def _cycle(self, stage: str) -> bool:
        """Run one fetch/process/persist cycle; True when catch-up may end."""
        now = self._now()
        try:
            self.state_store.save_last_poll(now)
            cursor = self.state_store.get_cursor()
            page = self.client.fetch_alerts(cursor)
            not_before = None
            if stage == "catch_up":
                not_before = now - timedelta(seconds=self.settings.recency_horizon_seconds)
            result = self.processor.process(page.alerts, not_before=not_before)
            if page.cursor:
                self.state_store.save_cursor(page.cursor)
            self._record_success()
        except Exception as exc:
            self._record_failure(exc, stage)
            return False

        self.logger.debug(
            f"feed={self.feed_id} stage={stage} total={result.total} "
            f"dispatched={result.dispatched} duplicates={result.duplicates} "
            f"suppressed={result.suppressed} cursor={page.cursor}"
        )
        return result.fresh > 0 or not page.alerts

    def _record_success(self) -> None:
        self.state_store.save_last_success(self._now())
        self.state_store.reset_failures()
        self.state_store.save_last_error("")

    def _record_failure(self, exc: Exception, stage: str) -> None:
        message = str(exc)
        category = exc.category if isinstance(exc, FeedError) else "internal"
        self.logger.error(
            f"feed={self.feed_id} name={self.feed_name} {stage} cycle failed "
            f"category={category} error={message}"
        )
        self.logger.failure(
            {
                "feed_id": self.feed_id,
                "feed_name": self.feed_name,
                "stage": stage,
                "error_code": category,
                "message": message,
                "http_status": getattr(exc, "status_code", None),
            }
        )
        try:
            self.state_store.save_last_error(message)
            failures = self.state_store.increment_failures()
        except Exception as store_exc:
            self.logger.error(f"feed={self.feed_id} failed to record failure error={store_exc}")
            return
        if failures >= self.settings.max_consecutive_failures:
            self._disable(failures, message)

    def _disable(self, failures: int, message: str) -> None:
        with self._lock:
            if self._state is PollerState.DISABLED:
                return
            self._state = PollerState.DISABLED
            self._stop_event.set()
        self.logger.critical(
            f"feed={self.feed_id} name={self.feed_name} disabled after "
            f"consecutive_failures={failures} last_error={message}"
        )
        self.logger.failure(
            {
                "feed_id": self.feed_id,
                "feed_name": self.feed_name,
                "stage": "disable",
                "consecutive_failures": failures,
                "message": message,
            }
        )
        if self.on_disable is None:
            self.logger.warning(f"feed={self.feed_id} no disable callback, poller halted locally")
            return
        self.on_disable(self.feed_id)
