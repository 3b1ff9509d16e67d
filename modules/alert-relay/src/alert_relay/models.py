from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .errors import ConfigurationInvalid
from .timestamps import isoformat_or_none


@dataclass(frozen=True)
class FeedConfig:
    id: str
    name: str
    type: str
    enabled: bool
    url: str
    api_id: str
    api_key: str
    channel_id: str
    poll_interval_seconds: int

    @classmethod
    def from_dict(cls, data: Any, position: int = 1) -> "FeedConfig":
        """Build from the on-disk camelCase form; wrong value types raise ConfigurationInvalid."""
        where = f"feed configuration at position {position}"
        if not isinstance(data, dict):
            raise ConfigurationInvalid(f"{where}: expected an object, got {type(data).__name__}")
        return cls(
            id=_str_field(data, "id", where),
            name=_str_field(data, "name", where),
            type=_str_field(data, "type", where),
            enabled=_bool_field(data, "enabled", where),
            url=_str_field(data, "url", where),
            api_id=_str_field(data, "apiId", where),
            api_key=_str_field(data, "apiKey", where),
            channel_id=_str_field(data, "channelId", where),
            poll_interval_seconds=_seconds_field(data, "pollIntervalSeconds", where),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "enabled": self.enabled,
            "url": self.url,
            "apiId": self.api_id,
            "apiKey": self.api_key,
            "channelId": self.channel_id,
            "pollIntervalSeconds": self.poll_interval_seconds,
        }


def _str_field(data: dict[str, Any], key: str, where: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ConfigurationInvalid(f"{where}: '{key}' must be a string")
    return value


def _bool_field(data: dict[str, Any], key: str, where: str) -> bool:
    value = data.get(key, False)
    if not isinstance(value, bool):
        raise ConfigurationInvalid(f"{where}: '{key}' must be true or false")
    return value


def _seconds_field(data: dict[str, Any], key: str, where: str) -> int:
    value = data.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationInvalid(f"{where}: '{key}' must be a whole number of seconds")
    if isinstance(value, float) and not value.is_integer():
        raise ConfigurationInvalid(f"{where}: '{key}' must be a whole number of seconds")
    return int(value)


@dataclass(frozen=True)
class FeedStatus:
    enabled: bool
    last_poll_time: datetime | None = None
    last_success_time: datetime | None = None
    consecutive_failures: int = 0
    is_authenticated: bool = False
    last_error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "lastPollTime": isoformat_or_none(self.last_poll_time),
            "lastSuccessTime": isoformat_or_none(self.last_success_time),
            "consecutiveFailures": self.consecutive_failures,
            "isAuthenticated": self.is_authenticated,
            "lastError": self.last_error,
        }


@dataclass(frozen=True)
class AuthToken:
    value: str
    expires_at: datetime


@dataclass(frozen=True)
class AlertPage:
    alerts: list[dict[str, Any]]
    cursor: str | None = None


@dataclass(frozen=True)
class Location:
    address: str = ""
    latitude: float = 0.0
    longitude: float = 0.0
    confidence_radius_meters: float = 0.0


@dataclass(frozen=True)
class NormalizedAlert:
    feed_name: str
    alert_id: str
    headline: str
    alert_type: str
    event_time: datetime | None = None
    location: Location | None = None
    alert_url: str | None = None
    sub_headline: str | None = None
    topics: list[str] = field(default_factory=list)
    alert_lists: list[str] = field(default_factory=list)
    linked_alerts: list[str] = field(default_factory=list)
    source_text: str | None = None
    translated_text: str | None = None
    public_source_url: str | None = None
    media_urls: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        location = None
        if self.location is not None:
            location = {
                "address": self.location.address,
                "latitude": self.location.latitude,
                "longitude": self.location.longitude,
                "confidenceRadius": self.location.confidence_radius_meters,
            }
        return {
            "feedName": self.feed_name,
            "alertId": self.alert_id,
            "headline": self.headline,
            "alertType": self.alert_type,
            "eventTime": isoformat_or_none(self.event_time),
            "location": location,
            "alertUrl": self.alert_url,
            "subHeadline": self.sub_headline,
            "topics": list(self.topics),
            "alertLists": list(self.alert_lists),
            "linkedAlerts": list(self.linked_alerts),
            "sourceText": self.source_text,
            "translatedText": self.translated_text,
            "publicSourceUrl": self.public_source_url,
            "mediaUrls": list(self.media_urls),
        }
