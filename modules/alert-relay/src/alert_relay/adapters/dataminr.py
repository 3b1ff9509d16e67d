from __future__ import annotations

from datetime import datetime
from typing import Any

from ..errors import AdapterError
from ..models import Location, NormalizedAlert
from ..timestamps import from_epoch_ms

MILES_TO_METERS = 1609.34
# Year 9999 in epoch milliseconds; later values cannot become a datetime.
MAX_EPOCH_MS = 253402300799999


class DataminrAdapter:
    def normalize(self, raw: dict[str, Any], feed_name: str) -> NormalizedAlert:
        if not isinstance(raw, dict):
            raise AdapterError(f"alert payload is {type(raw).__name__}, expected object")
        alert_id = raw.get("alertId")
        if not alert_id or not isinstance(alert_id, (str, int)) or isinstance(alert_id, bool):
            raise AdapterError("alert payload missing alertId")
        try:
            return self._normalize(raw, str(alert_id), feed_name)
        except (TypeError, ValueError, OverflowError, OSError) as exc:
            raise AdapterError(f"alert {alert_id} malformed: {exc}") from exc

    def _normalize(self, raw: dict[str, Any], alert_id: str, feed_name: str) -> NormalizedAlert:
        alert_type = _mapping(raw.get("alertType"))
        public_post = _mapping(raw.get("publicPost"))
        return NormalizedAlert(
            feed_name=feed_name,
            alert_id=alert_id,
            headline=_text(raw.get("headline")),
            alert_type=_text(alert_type.get("name")),
            event_time=_event_time(raw.get("eventTime")),
            location=_parse_location(raw.get("estimatedEventLocation")),
            alert_url=_text(raw.get("firstAlertURL")) or None,
            sub_headline=_sub_headline(raw.get("subHeadline")),
            topics=_names(raw.get("alertTopics")),
            alert_lists=_names(raw.get("alertLists")),
            linked_alerts=_linked(raw.get("linkedAlerts")),
            source_text=_text(public_post.get("text")) or None,
            translated_text=_text(public_post.get("translatedText")) or None,
            public_source_url=_text(public_post.get("link")) or None,
            media_urls=_media(public_post.get("media")),
        )


def _mapping(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if _is_number(value):
        return str(value)
    raise TypeError(f"expected text, got {type(value).__name__}")


def _event_time(value: Any) -> datetime | None:
    if value is None:
        return None
    if not _is_number(value):
        raise TypeError(f"eventTime must be epoch milliseconds, got {type(value).__name__}")
    if value <= 0:
        return None
    if value > MAX_EPOCH_MS:
        raise ValueError(f"eventTime {value} out of range")
    return from_epoch_ms(value)


def _parse_location(value: Any) -> Location | None:
    # [address, latitude, longitude, confidence radius in miles, mgrs]
    if not isinstance(value, list) or len(value) < 4:
        return None
    address = value[0] if isinstance(value[0], str) else ""
    return Location(
        address=address,
        latitude=_number(value[1]),
        longitude=_number(value[2]),
        confidence_radius_meters=_number(value[3]) * MILES_TO_METERS,
    )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _number(value: Any) -> float:
    return float(value) if _is_number(value) else 0.0


def _sub_headline(value: Any) -> str | None:
    if not isinstance(value, dict):
        return None
    body = _text(value.get("subHeadlines"))
    title = _text(value.get("title"))
    if title:
        return f"**{title}**\n{body}"
    return body or None


def _names(values: Any) -> list[str]:
    if not isinstance(values, list):
        return []
    return [_text(item["name"]) for item in values if isinstance(item, dict) and item.get("name")]


def _linked(values: Any) -> list[str]:
    if not isinstance(values, list):
        return []
    linked = []
    for item in values:
        if not isinstance(item, dict):
            continue
        count = item.get("count")
        if count is None:
            continue
        if not isinstance(count, int) or isinstance(count, bool):
            raise TypeError(f"linkedAlerts count must be an integer, got {type(count).__name__}")
        if count > 0:
            linked.append(f"{count} linked alerts (parent: {item.get('parentId', '')})")
    return linked


def _media(values: Any) -> list[str]:
    if values is None:
        return []
    if not isinstance(values, list):
        raise TypeError(f"publicPost media must be a list, got {type(values).__name__}")
    return [_text(url) for url in values]
