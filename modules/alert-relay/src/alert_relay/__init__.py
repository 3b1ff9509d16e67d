"""Multi-feed alert relay."""

from .config import RelayConfig, RelaySettings
from .relay import AlertRelay
from .store import Store

__all__ = ["AlertRelay", "RelayConfig", "RelaySettings", "Store"]
