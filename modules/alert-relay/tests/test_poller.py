from __future__ import annotations

import threading
import time
from datetime import timedelta

import pytest

from alert_relay.config import RelaySettings
from alert_relay.errors import RelayError, TransientError
from alert_relay.models import AlertPage
from alert_relay.poller import PollerState
from alert_relay.scheduler import JobMetadata, cluster_scheduler
from alert_relay.store import Store
from poller_harness import FEED_ID, NOW, Harness, ScriptedClient, fresh_page, stale_page


# -- wait interval --


def test_wait_interval_reports_remaining_time(tmp_path):
    poller = Harness(tmp_path, ScriptedClient([fresh_page("c")])).poller
    last_run = NOW - timedelta(hours=1)
    interval = timedelta(seconds=30)
    delta = timedelta(seconds=7)

    wait = poller.next_wait_interval(last_run + interval - delta, JobMetadata(last_run))
    assert wait == delta

    assert poller.next_wait_interval(last_run + interval, JobMetadata(last_run)) == timedelta(0)
    assert poller.next_wait_interval(
        last_run + interval + timedelta(minutes=5), JobMetadata(last_run)
    ) == timedelta(0)
    assert poller.next_wait_interval(NOW, JobMetadata(None)) == timedelta(0)


# -- catch-up --


def test_catch_up_skips_stale_pages_then_switches_to_polling(tmp_path):
    client = ScriptedClient(
        [
            stale_page("c1", "s1", "s2"),
            stale_page("c2", "s3"),
            stale_page("c3", "s4"),
            fresh_page("c4", "f1"),
            fresh_page("c5", "f2"),
        ]
    )
    harness = Harness(tmp_path, client)

    harness.poller.start()
    assert harness.poller.wait_for_catch_up(5)

    assert harness.poller.state is PollerState.POLLING
    assert client.cursors == [None, "c1", "c2", "c3"]
    assert harness.sent == ["f1"]
    assert harness.state.get_cursor() == "c4"
    assert harness.job.job_id == f"feed_poll_{FEED_ID}"

    harness.job.tick()
    assert client.cursors[-1] == "c4"
    assert harness.sent == ["f1", "f2"]
    assert harness.state.get_cursor() == "c5"
    harness.poller.stop()


def test_empty_page_ends_catch_up(tmp_path):
    client = ScriptedClient([stale_page("c1", "s1"), AlertPage(alerts=[], cursor="c2")])
    harness = Harness(tmp_path, client)
    harness.poller.start()
    assert harness.poller.wait_for_catch_up(5)
    assert harness.state.get_cursor() == "c2"
    assert harness.sent == []
    harness.poller.stop()


def test_crash_mid_catch_up_resumes_from_last_persisted_page(tmp_path):
    client = ScriptedClient(
        [stale_page("c1", "s1"), stale_page("c2", "s2"), TransientError("lost")],
        gate_at=3,
    )
    first = Harness(tmp_path, client)
    first.poller.start()
    assert client.reached.wait(5)

    assert first.state.get_cursor() == "c2"
    stopper = threading.Thread(target=first.poller.stop)
    stopper.start()
    for _ in range(400):
        if first.poller._stop_event.is_set():
            break
        time.sleep(0.005)
    client.gate.set()
    stopper.join(5)
    assert not stopper.is_alive()
    assert first.scheduler.jobs == []
    assert first.state.get_cursor() == "c2"

    resumed_client = ScriptedClient([fresh_page("c3", "f1")])
    second = Harness(tmp_path, resumed_client, store=first.store)
    second.poller.start()

    assert second.poller.state is PollerState.POLLING
    second.job.tick()
    assert resumed_client.cursors == ["c2"]
    assert second.sent == ["f1"]
    assert second.state.get_cursor() == "c3"
    second.poller.stop()


class _SharedUpstream:
    """One upstream seen by several workers: a fresh first page, then nothing new."""

    def __init__(self):
        self._lock = threading.Lock()
        self.cursors: list[str | None] = []

    def fetch_alerts(self, cursor=None):
        with self._lock:
            self.cursors.append(cursor)
        if cursor is None:
            return fresh_page("c1", "f1")
        return AlertPage(alerts=[], cursor=cursor)


def test_workers_starting_same_feed_deliver_catch_up_once(tmp_path):
    upstream = _SharedUpstream()
    store = Store(root=tmp_path)
    settings = RelaySettings(catch_up_interval_seconds=0.02, max_consecutive_failures=3)
    workers = [
        Harness(
            tmp_path,
            upstream,
            settings=settings,
            store=store,
            scheduler=cluster_scheduler(store, owner=owner, lease_seconds=5),
        )
        for owner in ("worker-a", "worker-b")
    ]

    for worker in workers:
        worker.poller.start()
    try:
        for _ in range(400):
            if all(w.poller.state is PollerState.POLLING for w in workers):
                break
            time.sleep(0.005)
        assert all(w.poller.state is PollerState.POLLING for w in workers)
    finally:
        for worker in workers:
            worker.poller.stop()

    assert workers[0].sent + workers[1].sent == ["f1"]
    assert upstream.cursors.count(None) == 1
    assert workers[0].state.get_cursor() == "c1"


def test_stop_interrupts_catch_up_sleep(tmp_path):
    client = ScriptedClient([stale_page("c1", "s1")])
    harness = Harness(
        tmp_path, client, settings=RelaySettings(catch_up_interval_seconds=30)
    )
    harness.poller.start()
    for _ in range(400):
        if client.cursors:
            break
        time.sleep(0.005)

    started = time.monotonic()
    harness.poller.stop()

    assert time.monotonic() - started < 5
    assert harness.poller.state is PollerState.STOPPED
    assert harness.scheduler.jobs == []
    assert not harness.poller.wait_for_catch_up(0)


# -- lifecycle --


def test_start_twice_is_rejected(tmp_path):
    harness = Harness(tmp_path, ScriptedClient([fresh_page("c1")]))
    harness.state.save_cursor("c0")
    harness.poller.start()
    with pytest.raises(RelayError, match="already running"):
        harness.poller.start()
    harness.poller.stop()


def test_stop_waits_for_in_flight_tick(tmp_path):
    client = ScriptedClient([fresh_page("c1", "a1")], gate_at=1)
    harness = Harness(tmp_path, client)
    harness.state.save_cursor("c0")
    harness.poller.start()

    ticker = threading.Thread(target=harness.job.tick)
    ticker.start()
    assert client.reached.wait(5)
    stopper = threading.Thread(target=harness.poller.stop)
    stopper.start()
    stopper.join(0.1)
    assert stopper.is_alive()

    client.gate.set()
    stopper.join(5)
    ticker.join(5)
    assert not stopper.is_alive()
    assert harness.poller.state is PollerState.STOPPED
    assert harness.job.closed
    assert harness.sent == ["a1"]

    harness.job.tick()
    assert len(client.cursors) == 1


def test_stop_is_idempotent(tmp_path):
    harness = Harness(tmp_path, ScriptedClient([fresh_page("c1")]))
    harness.poller.stop()
    harness.poller.stop()
    assert harness.poller.state is PollerState.STOPPED
