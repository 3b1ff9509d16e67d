from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable

from .adapters import AdapterError, AlertAdapter
from .dedup import Deduplicator
from .models import NormalizedAlert
from .run_logger import RelayLogger

AlertHandler = Callable[[NormalizedAlert], None]


@dataclass
class ProcessResult:
    total: int = 0
    dispatched: int = 0
    duplicates: int = 0
    suppressed: int = 0
    fresh: int = 0
    failed: int = 0


class AlertProcessor:
    def __init__(
        self,
        feed_type: str,
        feed_name: str,
        adapter: AlertAdapter,
        deduplicator: Deduplicator,
        handler: AlertHandler,
        logger: RelayLogger,
    ) -> None:
        self.feed_type = feed_type
        self.feed_name = feed_name
        self.adapter = adapter
        self.deduplicator = deduplicator
        self.handler = handler
        self.logger = logger

    def process(
        self,
        raw_alerts: Iterable[dict[str, Any]],
        not_before: datetime | None = None,
    ) -> ProcessResult:
        """Normalize, dedup and dispatch a batch.

        With ``not_before`` set, alerts whose event time is older are counted
        as suppressed and never reach the deduplicator or the handler.
        Per-alert failures are logged and the batch continues.
        """
        result = ProcessResult()
        for raw in raw_alerts:
            result.total += 1
            try:
                alert = self.adapter.normalize(raw, self.feed_name)
            except AdapterError as exc:
                result.failed += 1
                self.logger.warning(f"feed_name={self.feed_name} skipped alert error={exc}")
                continue

            if not_before is not None:
                if alert.event_time is None or alert.event_time < not_before:
                    result.suppressed += 1
                    continue
                result.fresh += 1

            if not self.deduplicator.record_alert(self.feed_type, alert.alert_id):
                result.duplicates += 1
                continue

            try:
                self.handler(alert)
            except Exception as exc:
                result.failed += 1
                self.logger.error(
                    f"feed_name={self.feed_name} alert_id={alert.alert_id} dispatch failed error={exc}"
                )
                continue
            result.dispatched += 1
        return result
