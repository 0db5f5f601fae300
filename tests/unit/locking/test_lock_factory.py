# tests/unit/locking/test_lock_factory.py — v1
"""Tests for locking/lock_factory.py."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from scrapegate.config.settings import Settings
from scrapegate.locking.lock_factory import create_lock_store
from scrapegate.locking.memory_lock_store import MemoryLockStore
from scrapegate.locking.sqlite_lock_store import SqliteLockStore


class TestCreateLockStore:
    def test_default_is_memory(self):
        assert isinstance(create_lock_store(), MemoryLockStore)

    def test_memory(self):
        settings = Settings(_env_file=None, lock_backend="memory")
        assert isinstance(create_lock_store(settings), MemoryLockStore)

    def test_sqlite(self, tmp_path):
        settings = Settings(_env_file=None, lock_backend="sqlite", store_path=tmp_path / "s.db")
        store = create_lock_store(settings)
        try:
            assert isinstance(store, SqliteLockStore)
            assert (tmp_path / "s.db").exists()
        finally:
            store.close()

    def test_redis(self):
        settings = Settings(
            _env_file=None, lock_backend="redis", lock_redis_url="redis://localhost:6379/1"
        )
        with patch("redis.Redis.from_url", return_value=MagicMock()) as from_url:
            store = create_lock_store(settings)
        assert type(store).__name__ == "RedisLockStore"
        from_url.assert_called_once()

    def test_redis_without_url(self):
        settings = Settings(_env_file=None, lock_backend="memory")
        settings.lock_backend = "redis"
        with pytest.raises(ValueError, match="LOCK_REDIS_URL"):
            create_lock_store(settings)

    def test_sqlite_shares_store_path_with_gateway(self, tmp_path):
        settings = Settings(
            _env_file=None,
            lock_backend="sqlite",
            store_backend="sqlite",
            store_path=tmp_path / "shared.db",
        )
        store = create_lock_store(settings)
        try:
            assert isinstance(store, SqliteLockStore)
            assert sorted(p.name for p in tmp_path.iterdir() if p.suffix == ".db") == ["shared.db"]
        finally:
            store.close()
