from __future__ import annotations

from typing import Callable

from .base import AdapterError, AlertAdapter
from .dataminr import DataminrAdapter

AdapterFactory = Callable[[], AlertAdapter]

_ADAPTERS: dict[str, AdapterFactory] = {
    "dataminr": DataminrAdapter,
}


def register_adapter(feed_type: str, factory: AdapterFactory) -> None:
    _ADAPTERS[feed_type] = factory


def adapter_for_type(feed_type: str) -> AlertAdapter:
    factory = _ADAPTERS.get(feed_type)
    if factory is None:
        raise AdapterError(f"Unsupported feed type: {feed_type}")
    return factory()

__all__ = [
    "AdapterError",
    "AdapterFactory",
    "AlertAdapter",
    "DataminrAdapter",
    "adapter_for_type",
    "register_adapter",
]
