from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Protocol

import requests

from .adapters import AdapterFactory, DataminrAdapter, adapter_for_type, register_adapter
from .auth import AuthManager
from .client import APIClient
from .config import RelaySettings
from .dedup import Deduplicator
from .errors import RelayError, UnknownFeedType
from .http import create_session
from .models import FeedConfig, FeedStatus, NormalizedAlert
from .poller import DisableCallback, Poller, PollerState, Scheduler
from .processor import AlertProcessor
from .run_logger import RelayLogger
from .sink import AlertSink
from .state import StateStore
from .store import Store
from .timestamps import utc_now


@dataclass
class FeedDependencies:
    store: Store
    deduplicator: Deduplicator
    sink: AlertSink
    scheduler: Scheduler
    logger: RelayLogger
    settings: RelaySettings = field(default_factory=RelaySettings)
    session_factory: Callable[[], requests.Session] = create_session
    on_disable: DisableCallback | None = None


class Feed(Protocol):
    config: FeedConfig

    @property
    def id(self) -> str:
        ...

    @property
    def name(self) -> str:
        ...

    @property
    def type(self) -> str:
        ...

    def start(self) -> None:
        ...

    def stop(self) -> None:
        ...

    def status(self) -> FeedStatus:
        ...

    def clear_operational_state(self) -> None:
        ...

    def reset_failure_state(self) -> None:
        ...


FeedFactory = Callable[[FeedConfig, FeedDependencies], Feed]


def status_from_store(
    state: StateStore,
    enabled: bool,
    now: Callable[[], datetime] = utc_now,
) -> FeedStatus:
    token = state.get_auth_token()
    return FeedStatus(
        enabled=enabled,
        last_poll_time=state.get_last_poll(),
        last_success_time=state.get_last_success(),
        consecutive_failures=state.get_failures(),
        is_authenticated=token is not None and now() < token.expires_at,
        last_error=state.get_last_error(),
    )


class PullFeed:
    """A cursor-polled feed: auth, fetch, normalize, dedup, dispatch."""

    def __init__(self, config: FeedConfig, deps: FeedDependencies) -> None:
        self.config = config
        self.deps = deps
        settings = deps.settings
        self.state_store = StateStore(deps.store, config.id)
        self.session = deps.session_factory()
        self.auth = AuthManager(
            config.url,
            config.api_id,
            config.api_key,
            self.state_store,
            self.session,
            deps.logger,
            refresh_buffer_seconds=settings.auth_refresh_buffer_seconds,
            token_lifetime_seconds=settings.token_lifetime_seconds,
            timeout=settings.http_timeout_seconds,
        )
        self.client = APIClient(
            config.url,
            self.auth,
            self.session,
            deps.logger,
            timeout=settings.http_timeout_seconds,
        )
        self.processor = AlertProcessor(
            config.type,
            config.name,
            adapter_for_type(config.type),
            deps.deduplicator,
            self._dispatch,
            deps.logger,
        )
        self.poller = Poller(
            config.id,
            config.name,
            config.poll_interval_seconds,
            self.client,
            self.processor,
            self.state_store,
            deps.scheduler,
            deps.logger,
            settings=settings,
            on_disable=deps.on_disable,
        )

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def type(self) -> str:
        return self.config.type

    @property
    def running(self) -> bool:
        return self.poller.state in (PollerState.CATCHING_UP, PollerState.POLLING)

    def start(self) -> None:
        if not self.config.enabled:
            raise RelayError(f"feed {self.config.id} is disabled")
        self.poller.start()

    def stop(self) -> None:
        self.poller.stop()

    def status(self) -> FeedStatus:
        return status_from_store(self.state_store, self.config.enabled and self.running)

    def clear_operational_state(self) -> None:
        self.state_store.clear_operational_state()

    def reset_failure_state(self) -> None:
        self.state_store.reset_failure_state()

    def _dispatch(self, alert: NormalizedAlert) -> None:
        self.deps.sink.post_alert(alert, self.config.channel_id)


_FACTORIES: dict[str, FeedFactory] = {}


def register_feed_type(
    feed_type: str, factory: FeedFactory, adapter: AdapterFactory | None = None
) -> None:
    """Make ``feed_type`` valid in configuration; ``adapter`` normalizes its alerts."""
    _FACTORIES[feed_type] = factory
    if adapter is not None:
        register_adapter(feed_type, adapter)


def supported_feed_types() -> tuple[str, ...]:
    return tuple(sorted(_FACTORIES))


def create_feed(config: FeedConfig, deps: FeedDependencies) -> Feed:
    factory = _FACTORIES.get(config.type)
    if factory is None:
        raise UnknownFeedType(f"unsupported feed type: {config.type}")
    return factory(config, deps)


register_feed_type("dataminr", PullFeed, adapter=DataminrAdapter)
