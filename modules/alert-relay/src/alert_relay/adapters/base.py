from __future__ import annotations

from typing import Any, Protocol

from ..errors import AdapterError
from ..models import NormalizedAlert


class AlertAdapter(Protocol):
    def normalize(self, raw: dict[str, Any], feed_name: str) -> NormalizedAlert:
        ...


__all__ = ["AdapterError", "AlertAdapter"]
