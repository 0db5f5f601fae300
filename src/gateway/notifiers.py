# src/gateway/notifiers.py — v1
"""Bundled notification sinks: log records and a JSONL event file."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from scrapegate.core.models import NotificationEvent
from scrapegate.gateway.base_notifier import BaseNotificationSink

if TYPE_CHECKING:
    from scrapegate.config.settings import Settings

logger = logging.getLogger(__name__)


class LoggingNotificationSink(BaseNotificationSink):
    """Emit events as log records (attached under ``data`` for JSON logs)."""

    async def notify(self, event: NotificationEvent) -> None:
        level = logging.INFO if event.kind == "run_terminal" else logging.WARNING
        logger.log(
            level,
            "Event %s for '%s': %s",
            event.kind, event.source_key, event.detail or event.status,
            extra={"data": event.model_dump(mode="json")},
        )


class JsonlNotificationSink(BaseNotificationSink):
    """Append events to a JSON-lines file for downstream alerting."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path).expanduser()
        self._path.parent.mkdir(parents=True, exist_ok=True)

    async def notify(self, event: NotificationEvent) -> None:
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(event.model_dump_json() + "\n")


class CompositeNotificationSink(BaseNotificationSink):
    """Fan an event out to several sinks. The first failure propagates."""

    def __init__(self, sinks: list[BaseNotificationSink]) -> None:
        self._sinks = list(sinks)

    async def notify(self, event: NotificationEvent) -> None:
        for sink in self._sinks:
            await sink.notify(event)


def create_notification_sink(settings: Settings | None = None) -> BaseNotificationSink:
    """Logging sink, plus a JSONL file sink when NOTIFY_LOG_FILE is set."""
    sinks: list[BaseNotificationSink] = [LoggingNotificationSink()]
    if settings is not None and settings.notify_log_file is not None:
        sinks.append(JsonlNotificationSink(settings.notify_log_file))
    if len(sinks) == 1:
        return sinks[0]
    return CompositeNotificationSink(sinks)
