from __future__ import annotations

import json
import threading
import uuid
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Iterable
from urllib.parse import urlparse

from .errors import ConfigurationInvalid, FeedNotFound
from .models import FeedConfig

REQUIRED_FIELDS = (
    ("id", "id"),
    ("name", "name"),
    ("type", "type"),
    ("url", "url"),
    ("api_id", "apiId"),
    ("api_key", "apiKey"),
    ("channel_id", "channelId"),
    ("poll_interval_seconds", "pollIntervalSeconds"),
)


@dataclass(frozen=True)
class RelaySettings:
    max_consecutive_failures: int = 5
    min_poll_interval_seconds: int = 10
    auth_refresh_buffer_seconds: float = 300.0
    token_lifetime_seconds: float = 3600.0
    dedup_retention_seconds: float = 24 * 60 * 60
    dedup_sweep_seconds: float = 10 * 60
    catch_up_interval_seconds: float = 5.0
    recency_horizon_seconds: float = 24 * 60 * 60
    http_timeout_seconds: float = 30.0
    job_lease_seconds: float = 120.0

    @classmethod
    def from_dict(cls, data: Any) -> "RelaySettings":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigurationInvalid("settings must be an object")
        values: dict[str, Any] = {}
        for setting in fields(cls):
            if setting.name not in data:
                continue
            value = data[setting.name]
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise ConfigurationInvalid(f"setting '{setting.name}' must be a positive number")
            values[setting.name] = value
        return cls(**values)


@dataclass(frozen=True)
class RelayConfig:
    feeds: tuple[FeedConfig, ...] = ()
    admins: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Any) -> "RelayConfig":
        if not isinstance(data, dict):
            raise ConfigurationInvalid("configuration must be a JSON object")
        raw_feeds = data.get("feeds") or []
        if not isinstance(raw_feeds, list):
            raise ConfigurationInvalid("'feeds' must be a list")
        raw_admins = data.get("admins") or []
        if not isinstance(raw_admins, list) or not all(isinstance(u, str) for u in raw_admins):
            raise ConfigurationInvalid("'admins' must be a list of user ids")
        feeds = tuple(
            FeedConfig.from_dict(item, position)
            for position, item in enumerate(raw_feeds, start=1)
        )
        return cls(feeds=feeds, admins=tuple(raw_admins))

    def to_dict(self) -> dict[str, Any]:
        return {
            "admins": list(self.admins),
            "feeds": [feed.to_dict() for feed in self.feeds],
        }

    def find_feed(self, feed_id: str) -> FeedConfig | None:
        for feed in self.feeds:
            if feed.id == feed_id:
                return feed
        return None

    def with_feed_enabled(self, feed_id: str, enabled: bool) -> "RelayConfig":
        if self.find_feed(feed_id) is None:
            raise FeedNotFound(f"feed with id {feed_id} not found in configuration")
        feeds = tuple(
            replace(feed, enabled=enabled) if feed.id == feed_id else feed
            for feed in self.feeds
        )
        return replace(self, feeds=feeds)


@dataclass(frozen=True)
class ConfigDiff:
    to_add: list[str] = field(default_factory=list)
    to_update: list[str] = field(default_factory=list)
    to_remove: list[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.to_add or self.to_update or self.to_remove)


def diff_feed_configs(
    old_configs: Iterable[FeedConfig], new_configs: Iterable[FeedConfig]
) -> ConfigDiff:
    old_by_id = {cfg.id: cfg for cfg in old_configs}
    new_by_id = {cfg.id: cfg for cfg in new_configs}
    diff = ConfigDiff()
    for feed_id, new_cfg in new_by_id.items():
        old_cfg = old_by_id.get(feed_id)
        if old_cfg is None:
            diff.to_add.append(feed_id)
        elif old_cfg != new_cfg:
            diff.to_update.append(feed_id)
    for feed_id in old_by_id:
        if feed_id not in new_by_id:
            diff.to_remove.append(feed_id)
    return diff


def validate_config(
    config: RelayConfig,
    supported_types: Iterable[str],
    settings: RelaySettings | None = None,
) -> None:
    settings = settings or RelaySettings()
    supported = set(supported_types)
    seen_ids: set[str] = set()
    seen_names: set[str] = set()
    for position, feed in enumerate(config.feeds, start=1):
        for attr, label in REQUIRED_FIELDS:
            if not getattr(feed, attr):
                raise ConfigurationInvalid(
                    f"feed configuration at position {position}: missing required field '{label}'"
                )
        _validate_uuid4(feed)
        if feed.id in seen_ids:
            raise ConfigurationInvalid(f"duplicate feed id found: {feed.id}")
        seen_ids.add(feed.id)
        if feed.name in seen_names:
            raise ConfigurationInvalid(f"duplicate feed name found: '{feed.name}'")
        seen_names.add(feed.name)
        if feed.type not in supported:
            raise ConfigurationInvalid(
                f"feed '{feed.name}': unsupported type '{feed.type}' "
                f"(supported: {', '.join(sorted(supported))})"
            )
        _validate_url(feed)
        if feed.poll_interval_seconds < settings.min_poll_interval_seconds:
            raise ConfigurationInvalid(
                f"feed '{feed.name}': poll interval must be at least "
                f"{settings.min_poll_interval_seconds} seconds (got {feed.poll_interval_seconds})"
            )


def _validate_uuid4(feed: FeedConfig) -> None:
    try:
        parsed = uuid.UUID(feed.id)
    except ValueError as exc:
        raise ConfigurationInvalid(f"feed '{feed.name}': invalid UUID format for id: {exc}") from exc
    if parsed.version != 4:
        raise ConfigurationInvalid(
            f"feed '{feed.name}': id must be a UUID v4 (got version {parsed.version})"
        )


def _validate_url(feed: FeedConfig) -> None:
    parsed = urlparse(feed.url)
    if parsed.scheme != "https":
        raise ConfigurationInvalid(f"feed '{feed.name}': url must use HTTPS (got {parsed.scheme!r})")
    if not parsed.netloc:
        raise ConfigurationInvalid(f"feed '{feed.name}': url must include a hostname")


def load_document(path: Path) -> dict[str, Any]:
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigurationInvalid(f"cannot read configuration {path}: {exc}") from exc
    if not isinstance(document, dict):
        raise ConfigurationInvalid(f"configuration {path} must be a JSON object")
    return document


Listener = Callable[[], None]


class ConfigSource:
    """Persisted configuration that notifies subscribers after every save.

    Subscribers run on the saving thread, so a save must never be issued
    while holding a lock that a subscriber also takes.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._listeners_lock = threading.Lock()

    def subscribe(self, listener: Listener) -> None:
        with self._listeners_lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def load(self) -> RelayConfig:
        raise NotImplementedError

    def save(self, config: RelayConfig) -> None:
        self._write(config)
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener()

    def _write(self, config: RelayConfig) -> None:
        raise NotImplementedError


class MemoryConfigSource(ConfigSource):
    def __init__(self, config: RelayConfig | None = None) -> None:
        super().__init__()
        self._config = config or RelayConfig()
        self._lock = threading.Lock()

    def load(self) -> RelayConfig:
        with self._lock:
            return self._config

    def _write(self, config: RelayConfig) -> None:
        with self._lock:
            self._config = config


class JsonFileConfigSource(ConfigSource):
    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = path
        self._lock = threading.Lock()

    def load(self) -> RelayConfig:
        with self._lock:
            if not self.path.exists():
                return RelayConfig()
            return RelayConfig.from_dict(load_document(self.path))

    def load_settings(self) -> RelaySettings:
        with self._lock:
            if not self.path.exists():
                return RelaySettings()
            return RelaySettings.from_dict(load_document(self.path).get("settings"))

    def _write(self, config: RelayConfig) -> None:
        with self._lock:
            document: dict[str, Any] = {}
            if self.path.exists():
                document = load_document(self.path)
            document.update(config.to_dict())
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(document, indent=2) + "\n", encoding="utf-8")
            tmp_path.replace(self.path)
