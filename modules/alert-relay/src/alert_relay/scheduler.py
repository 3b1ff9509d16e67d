from __future__ import annotations

import os
import socket
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Protocol, TypeVar

from .run_logger import RelayLogger
from .store import Store
from .timestamps import parse_datetime, utc_now

LEASE_RETRY_SECONDS = 1.0

T = TypeVar("T")


@dataclass(frozen=True)
class JobMetadata:
    last_finished: datetime | None = None


NextWaitInterval = Callable[[datetime, JobMetadata], timedelta]


class Job(Protocol):
    def close(self) -> None:
        ...


class JobCoordinator(Protocol):
    heartbeat_seconds: float | None

    def metadata(self, job_id: str) -> JobMetadata:
        ...

    def acquire(self, job_id: str) -> bool:
        ...

    def renew(self, job_id: str) -> bool:
        ...

    def release(self, job_id: str) -> None:
        ...

    def mark_finished(self, job_id: str, finished_at: datetime) -> None:
        ...


class LocalCoordinator:
    """Single-process coordination: in-memory metadata and one lock per job."""

    heartbeat_seconds: float | None = None

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._job_locks: dict[str, threading.Lock] = {}
        self._finished: dict[str, datetime] = {}

    def _job_lock(self, job_id: str) -> threading.Lock:
        with self._lock:
            return self._job_locks.setdefault(job_id, threading.Lock())

    def metadata(self, job_id: str) -> JobMetadata:
        with self._lock:
            return JobMetadata(last_finished=self._finished.get(job_id))

    def acquire(self, job_id: str) -> bool:
        return self._job_lock(job_id).acquire(blocking=False)

    def renew(self, job_id: str) -> bool:
        return True

    def release(self, job_id: str) -> None:
        lock = self._job_lock(job_id)
        if lock.locked():
            lock.release()

    def mark_finished(self, job_id: str, finished_at: datetime) -> None:
        with self._lock:
            self._finished[job_id] = finished_at


class StoreCoordinator:
    """Cluster-wide coordination through lease rows in the shared SQLite store.

    Every process that opens the same database competes for the lease; the
    winner runs the tick and records ``last_finished`` for all of them.
    """

    def __init__(self, store: Store, owner: str, lease_seconds: float = 120.0) -> None:
        self.store = store
        self.owner = owner
        self.lease_seconds = lease_seconds
        self.heartbeat_seconds = max(lease_seconds / 3.0, 0.05)

    def metadata(self, job_id: str) -> JobMetadata:
        value = self.store.get_job_last_finished(job_id)
        return JobMetadata(last_finished=parse_datetime(value) if value else None)

    def acquire(self, job_id: str) -> bool:
        return self.store.try_acquire_lease(job_id, self.owner, self.lease_seconds)

    def renew(self, job_id: str) -> bool:
        return self.store.renew_lease(job_id, self.owner, self.lease_seconds)

    def release(self, job_id: str) -> None:
        self.store.release_lease(job_id, self.owner)

    def mark_finished(self, job_id: str, finished_at: datetime) -> None:
        self.store.set_job_last_finished(job_id, finished_at.isoformat())


def _lease_heartbeat_loop(
    stop_event: threading.Event, coordinator: JobCoordinator, job_id: str, interval: float
) -> None:
    while not stop_event.wait(interval):
        coordinator.renew(job_id)


def start_lease_heartbeat(
    coordinator: JobCoordinator, job_id: str
) -> tuple[threading.Event, threading.Thread] | None:
    if not coordinator.heartbeat_seconds:
        return None
    stop_event = threading.Event()
    thread = threading.Thread(
        target=_lease_heartbeat_loop,
        args=(stop_event, coordinator, job_id, coordinator.heartbeat_seconds),
        name=f"lease-{job_id}",
        daemon=True,
    )
    thread.start()
    return stop_event, thread


def stop_lease_heartbeat(heartbeat: tuple[threading.Event, threading.Thread] | None) -> None:
    if heartbeat is None:
        return
    stop_event, thread = heartbeat
    stop_event.set()
    thread.join()


class ScheduledJob:
    def __init__(
        self,
        job_id: str,
        next_wait_interval: NextWaitInterval,
        callback: Callable[[], None],
        coordinator: JobCoordinator,
        logger: RelayLogger | None = None,
        now: Callable[[], datetime] = utc_now,
        retry_seconds: float = LEASE_RETRY_SECONDS,
    ) -> None:
        self.job_id = job_id
        self._next_wait_interval = next_wait_interval
        self._callback = callback
        self._coordinator = coordinator
        self._logger = logger
        self._now = now
        self._retry_seconds = retry_seconds
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"job-{job_id}", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def close(self) -> None:
        """Stop scheduling and wait for an in-flight callback to return."""
        self._stop_event.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join()

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def _wait_seconds(self) -> float:
        metadata = self._coordinator.metadata(self.job_id)
        return self._next_wait_interval(self._now(), metadata).total_seconds()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            wait = self._wait_seconds()
            if wait > 0:
                self._stop_event.wait(wait)
                continue
            if not self._coordinator.acquire(self.job_id):
                self._stop_event.wait(self._retry_seconds)
                continue
            try:
                # Another process may have run this tick while we waited for the lease.
                if self._wait_seconds() <= 0 and not self._stop_event.is_set():
                    self._run_callback()
            finally:
                self._coordinator.release(self.job_id)

    def _run_callback(self) -> None:
        heartbeat = start_lease_heartbeat(self._coordinator, self.job_id)
        try:
            self._callback()
        except Exception as exc:
            if self._logger is not None:
                self._logger.error(f"job={self.job_id} callback failed error={exc}")
        finally:
            stop_lease_heartbeat(heartbeat)
            self._coordinator.mark_finished(self.job_id, self._now())


class JobScheduler:
    def __init__(
        self,
        coordinator: JobCoordinator,
        logger: RelayLogger | None = None,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.coordinator = coordinator
        self.logger = logger
        self._now = now

    def schedule(
        self,
        job_id: str,
        next_wait_interval: NextWaitInterval,
        callback: Callable[[], None],
    ) -> ScheduledJob:
        job = ScheduledJob(
            job_id,
            next_wait_interval,
            callback,
            self.coordinator,
            logger=self.logger,
            now=self._now,
        )
        job.start()
        return job

    def run_exclusive(self, job_id: str, callback: Callable[[], T]) -> T | None:
        """Run ``callback`` once under the job's lease; None when another worker holds it.

        The run counts as the job's latest execution for every worker.
        """
        if not self.coordinator.acquire(job_id):
            return None
        heartbeat = start_lease_heartbeat(self.coordinator, job_id)
        try:
            return callback()
        finally:
            stop_lease_heartbeat(heartbeat)
            self.coordinator.mark_finished(job_id, self._now())
            self.coordinator.release(job_id)


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


def local_scheduler(logger: RelayLogger | None = None) -> JobScheduler:
    return JobScheduler(LocalCoordinator(), logger=logger)


def cluster_scheduler(
    store: Store,
    owner: str | None = None,
    lease_seconds: float = 120.0,
    logger: RelayLogger | None = None,
) -> JobScheduler:
    coordinator = StoreCoordinator(store, owner or default_worker_id(), lease_seconds)
    return JobScheduler(coordinator, logger=logger)
