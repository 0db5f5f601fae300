# src/locking/memory_lock_store.py — v1
"""In-process lock store (LOCK_BACKEND=memory).

Guards the table with a threading lock so it is safe for worker threads as
well as for tasks on one event loop. Single process only.
"""

from __future__ import annotations

import threading
from datetime import datetime

from scrapegate.core.models import Lock
from scrapegate.locking.base_lock_store import BaseLockStore


class MemoryLockStore(BaseLockStore):
    """Dict-backed lock table."""

    def __init__(self) -> None:
        self._rows: dict[str, Lock] = {}
        self._mutex = threading.Lock()

    async def try_acquire(self, lock: Lock, now: datetime) -> bool:
        with self._mutex:
            current = self._rows.get(lock.source_key)
            if current is not None and not current.is_expired(now):
                return False
            self._rows[lock.source_key] = lock
            return True

    async def release(self, source_key: str, holder_id: str) -> bool:
        with self._mutex:
            current = self._rows.get(source_key)
            if current is None or current.holder_id != holder_id:
                return False
            del self._rows[source_key]
            return True

    async def renew(
        self, source_key: str, holder_id: str, expires_at: datetime, now: datetime
    ) -> bool:
        with self._mutex:
            current = self._rows.get(source_key)
            if current is None or current.holder_id != holder_id or current.is_expired(now):
                return False
            self._rows[source_key] = current.model_copy(update={"expires_at": expires_at})
            return True

    async def get(self, source_key: str) -> Lock | None:
        with self._mutex:
            return self._rows.get(source_key)

    async def delete_expired(self, now: datetime) -> int:
        with self._mutex:
            expired = [k for k, v in self._rows.items() if v.is_expired(now)]
            for key in expired:
                del self._rows[key]
            return len(expired)
