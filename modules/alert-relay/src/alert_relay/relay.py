from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any, Callable

import requests

from .config import (
    ConfigDiff,
    ConfigSource,
    RelayConfig,
    RelaySettings,
    diff_feed_configs,
    validate_config,
)
from .dedup import Deduplicator
from .errors import PermissionDenied, RelayError
from .feed import FeedDependencies, create_feed, supported_feed_types
from .http import create_session
from .models import FeedConfig
from .poller import Scheduler
from .registry import FeedRegistry
from .run_logger import RelayLogger
from .rwlock import RWLock
from .sink import AlertSink
from .state import StateStore
from .store import Store


class AlertRelay:
    """Runs one feed instance per configured feed and keeps them in sync
    with the configuration source.

    The configuration is copy-on-write: a new ``RelayConfig`` replaces the
    old reference under the config lock and feeds are reconciled after the
    lock is released. Saving configuration re-enters ``apply_configuration``
    through the source's change notification, so nothing here saves while
    holding a lock, and auto-disable requests from pollers are queued onto
    a single worker instead of being handled on the polling thread.
    """

    def __init__(
        self,
        source: ConfigSource,
        store: Store,
        sink: AlertSink,
        scheduler: Scheduler,
        logger: RelayLogger,
        settings: RelaySettings | None = None,
        deduplicator: Deduplicator | None = None,
        session_factory: Callable[[], requests.Session] = create_session,
    ) -> None:
        self.source = source
        self.store = store
        self.logger = logger
        self.settings = settings or RelaySettings()
        self.deduplicator = deduplicator or Deduplicator(
            logger=logger,
            retention_seconds=self.settings.dedup_retention_seconds,
            sweep_seconds=self.settings.dedup_sweep_seconds,
        )
        self.registry = FeedRegistry()
        self.deps = FeedDependencies(
            store=store,
            deduplicator=self.deduplicator,
            sink=sink,
            scheduler=scheduler,
            logger=logger,
            settings=self.settings,
            session_factory=session_factory,
            on_disable=self._on_feed_disabled,
        )
        self._config = RelayConfig()
        self._config_lock = RWLock()
        self._apply_lock = threading.Lock()
        self._tasks: ThreadPoolExecutor | None = None
        self._active = False

    @property
    def config(self) -> RelayConfig:
        with self._config_lock.read():
            return self._config

    def activate(self) -> None:
        if self._active:
            return
        self._tasks = ThreadPoolExecutor(max_workers=1, thread_name_prefix="relay-task")
        self.deduplicator.start()
        try:
            self.apply_configuration(self.source.load())
        except RelayError:
            self._tasks.shutdown(wait=True)
            self._tasks = None
            self.deduplicator.stop()
            raise
        self.source.subscribe(self._on_config_change)
        self._active = True
        self.logger.log(f"relay activated feeds={len(self.registry)}")

    def deactivate(self) -> None:
        if not self._active:
            return
        self._active = False
        self.source.unsubscribe(self._on_config_change)
        tasks = self._tasks
        self._tasks = None
        if tasks is not None:
            tasks.shutdown(wait=True)
        try:
            self.registry.stop_all()
        finally:
            self.deduplicator.stop()
            self.logger.log("relay deactivated")

    def apply_configuration(self, config: RelayConfig) -> ConfigDiff:
        """Validate, swap and reconcile; an invalid config leaves everything untouched.

        Each feed is reconciled on its own: a feed that fails to stop or start
        is logged and journaled, and the remaining feeds are still brought in
        line with the new configuration.
        """
        with self._apply_lock:
            validate_config(config, supported_feed_types(), self.settings)
            with self._config_lock.write():
                previous = self._config
                self._config = config
            diff = diff_feed_configs(previous.feeds, config.feeds)
            if diff.is_empty():
                return diff
            self.logger.log(
                f"applying configuration add={len(diff.to_add)} "
                f"update={len(diff.to_update)} remove={len(diff.to_remove)}"
            )
            for feed_id in diff.to_remove:
                self._reconcile("remove", feed_id, partial(self._remove_feed, feed_id))
            for feed_id in diff.to_update:
                step = partial(
                    self._update_feed, previous.find_feed(feed_id), config.find_feed(feed_id)
                )
                self._reconcile("update", feed_id, step)
            for feed_id in diff.to_add:
                self._reconcile(
                    "add", feed_id, partial(self._create_and_start, config.find_feed(feed_id))
                )
            return diff

    def disable_feed(self, feed_id: str) -> None:
        updated = self.config.with_feed_enabled(feed_id, False)
        self.source.save(updated)
        self.logger.log(f"feed={feed_id} disabled in configuration")

    def feed_statuses(self, user_id: str) -> dict[str, dict[str, Any]]:
        if user_id not in self.config.admins:
            raise PermissionDenied("only administrators can view feed status")
        return {feed.id: feed.status().to_dict() for feed in self.registry.list()}

    def _reconcile(self, action: str, feed_id: str, step: Callable[[], None]) -> None:
        try:
            step()
        except Exception as exc:
            self.logger.error(f"feed={feed_id} {action} failed error={exc}")
            self.logger.failure(
                {"feed_id": feed_id, "stage": "reconcile", "action": action, "message": str(exc)}
            )

    def _remove_feed(self, feed_id: str) -> None:
        if feed_id in self.registry:
            self.registry.unregister(feed_id)
        StateStore(self.store, feed_id).clear_all()
        self.logger.log(f"feed={feed_id} removed")

    def _update_feed(self, old: FeedConfig | None, new: FeedConfig | None) -> None:
        assert new is not None
        if new.id in self.registry:
            self.registry.unregister(new.id)
        if old is not None and not old.enabled and new.enabled:
            StateStore(self.store, new.id).reset_failure_state()
            self.logger.log(f"feed={new.id} name={new.name} re-enabled, failure state reset")
        self._create_and_start(new)

    def _create_and_start(self, config: FeedConfig | None) -> None:
        assert config is not None
        feed = create_feed(config, self.deps)
        if not config.enabled:
            feed.clear_operational_state()
            self.registry.register(feed)
            self.logger.log(f"feed={config.id} name={config.name} registered disabled")
            return
        self.registry.register(feed)
        try:
            feed.start()
        except RelayError as exc:
            self.logger.error(f"feed={config.id} name={config.name} start failed error={exc}")

    def _on_config_change(self) -> None:
        try:
            self.apply_configuration(self.source.load())
        except RelayError as exc:
            self.logger.error(f"configuration change rejected error={exc}")

    def _on_feed_disabled(self, feed_id: str) -> None:
        tasks = self._tasks
        if tasks is None:
            self.logger.warning(f"feed={feed_id} disable not persisted, relay inactive")
            return
        try:
            tasks.submit(self._disable_task, feed_id)
        except RuntimeError as exc:
            self.logger.warning(f"feed={feed_id} disable not persisted error={exc}")

    def _disable_task(self, feed_id: str) -> None:
        try:
            self.disable_feed(feed_id)
        except Exception as exc:
            self.logger.error(f"feed={feed_id} failed to persist disable error={exc}")
            feed = self.registry.get(feed_id)
            if feed is not None:
                feed.stop()
