# src/locking/base_lock_store.py — v1
"""Abstract lock store interface.

Backends implement an atomic compare-and-set on a per-source lock row. An
existing row whose expiry has passed counts as free.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from scrapegate.core.models import Lock


class BaseLockStore(ABC):
    """Unified interface for lock storage backends."""

    @abstractmethod
    async def try_acquire(self, lock: Lock, now: datetime) -> bool:
        """Insert ``lock`` unless an unexpired row exists for its source key."""

    @abstractmethod
    async def release(self, source_key: str, holder_id: str) -> bool:
        """Delete the row only if ``holder_id`` holds it. Returns True if deleted."""

    @abstractmethod
    async def renew(
        self, source_key: str, holder_id: str, expires_at: datetime, now: datetime
    ) -> bool:
        """Extend an unexpired lease owned by ``holder_id``."""

    @abstractmethod
    async def get(self, source_key: str) -> Lock | None:
        """Return the current row (expired or not), or None."""

    @abstractmethod
    async def delete_expired(self, now: datetime) -> int:
        """Remove expired rows (storage hygiene only). Returns rows removed."""
