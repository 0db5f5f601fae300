# src/gateway/base_notifier.py — v1
"""Notification sink interface: terminal run events and kill-switch transitions.

Delivery is fire-and-forget. notify_safely() is the only call site the core
uses, and a sink failure is logged, never propagated into a run.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from scrapegate.core.models import NotificationEvent

logger = logging.getLogger(__name__)


class BaseNotificationSink(ABC):
    """Unified interface for notification backends."""

    @abstractmethod
    async def notify(self, event: NotificationEvent) -> None:
        """Deliver one event."""


async def notify_safely(sink: BaseNotificationSink | None, event: NotificationEvent) -> bool:
    """Deliver an event; any sink failure is logged and swallowed.

    Returns True if the sink accepted the event.
    """
    if sink is None:
        return False
    try:
        await sink.notify(event)
    except Exception as exc:  # sink boundary
        logger.warning(
            "Notification sink %s failed for %s/%s: %s",
            type(sink).__name__, event.kind, event.source_key, exc,
        )
        return False
    return True
