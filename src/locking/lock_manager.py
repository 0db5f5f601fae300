# src/locking/lock_manager.py — v1
"""Per-source mutual exclusion with self-expiring leases.

acquire() never waits: a held lock means "skip this scheduled attempt",
which is a normal outcome and is logged as such, not as a failure.
Expiry is the only correctness backstop for crashed holders; the sweep
exists for storage hygiene.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable

from scrapegate.core.models import Lock, utcnow
from scrapegate.locking.base_lock_store import BaseLockStore

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(minutes=30)


def generate_holder_id(prefix: str = "runner") -> str:
    """Generate a unique holder id: {prefix}_{uuid4_short}."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class LockManager:
    """Acquire, renew and release per-source leases on a lock store.

    Args:
        store: Lock storage backend.
        default_ttl: Lease length when the caller passes none.
        clock: Timezone-aware UTC clock (injected in tests).
    """

    def __init__(
        self,
        store: BaseLockStore,
        default_ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._default_ttl = default_ttl
        self._clock = clock

    @property
    def default_ttl(self) -> timedelta:
        return self._default_ttl

    async def acquire(
        self, source_key: str, holder_id: str, ttl: timedelta | None = None
    ) -> Lock | None:
        """Try to take the source's lease. Returns the Lock, or None if held."""
        now = self._clock()
        lease = ttl or self._default_ttl
        if lease <= timedelta(0):
            raise ValueError("Lock ttl must be positive")
        lock = Lock(
            source_key=source_key,
            holder_id=holder_id,
            acquired_at=now,
            expires_at=now + lease,
        )
        if await self._store.try_acquire(lock, now):
            logger.info(
                "Lock acquired on '%s' by %s until %s",
                source_key, holder_id, lock.expires_at.isoformat(),
            )
            return lock

        current = await self._store.get(source_key)
        logger.info(
            "Lock on '%s' held by %s until %s, skipping attempt by %s",
            source_key,
            current.holder_id if current else "?",
            current.expires_at.isoformat() if current else "?",
            holder_id,
        )
        return None

    async def release(self, source_key: str, holder_id: str) -> bool:
        """Release the lease if ``holder_id`` still holds it. Idempotent."""
        released = await self._store.release(source_key, holder_id)
        if released:
            logger.info("Lock released on '%s' by %s", source_key, holder_id)
        else:
            logger.info(
                "Release of '%s' by %s was a no-op (not the current holder)",
                source_key, holder_id,
            )
        return released

    async def renew(
        self, source_key: str, holder_id: str, ttl: timedelta | None = None
    ) -> bool:
        """Extend the caller's unexpired lease. False if it was lost."""
        now = self._clock()
        renewed = await self._store.renew(
            source_key, holder_id, now + (ttl or self._default_ttl), now
        )
        if not renewed:
            logger.warning("Lease on '%s' lost by %s", source_key, holder_id)
        return renewed

    async def current(self, source_key: str) -> Lock | None:
        """Return the unexpired lock on a source, if any."""
        lock = await self._store.get(source_key)
        if lock is None or lock.is_expired(self._clock()):
            return None
        return lock

    async def sweep_expired(self) -> int:
        """Delete expired rows. Correctness never depends on this."""
        removed = await self._store.delete_expired(self._clock())
        if removed:
            logger.info("Swept %d expired lock(s)", removed)
        return removed
