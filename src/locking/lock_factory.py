# src/locking/lock_factory.py — v1
"""Factory for lock store instantiation."""

from __future__ import annotations

from scrapegate.config.settings import Settings
from scrapegate.locking.base_lock_store import BaseLockStore


def create_lock_store(settings: Settings | None = None) -> BaseLockStore:
    """Instantiate the configured lock backend.

    Args:
        settings: Application settings. Defaults to the in-memory backend.

    Returns:
        Configured BaseLockStore implementation.
    """
    backend = "memory" if settings is None else settings.lock_backend

    if backend == "memory":
        from scrapegate.locking.memory_lock_store import MemoryLockStore
        return MemoryLockStore()

    if backend == "sqlite":
        from scrapegate.locking.sqlite_lock_store import SqliteLockStore
        db_path = "output/scrapegate.db" if settings is None else settings.store_path
        return SqliteLockStore(db_path=db_path)

    if backend == "redis":
        from scrapegate.locking.redis_lock_store import RedisLockStore
        if settings is None or not settings.lock_redis_url:
            raise ValueError(
                "LOCK_REDIS_URL must be set when LOCK_BACKEND=redis"
            )
        return RedisLockStore(redis_url=settings.lock_redis_url)

    raise ValueError(f"Unsupported lock backend: {backend!r}")
