# tests/unit/api/test_facade.py — v1
"""Tests for api/facade.py — engine wiring and operator controls."""

from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import T0, FakeAdapter, FrozenClock, RecordingSink
from scrapegate.api.facade import (
    build_engine,
    disable_source,
    enable_source,
    run_source,
    set_safe_mode,
    source_status,
    sweep_locks,
)
from scrapegate.config.settings import Settings
from scrapegate.core.errors import UnknownSourceError
from scrapegate.core.models import Run, RunStatus, SkippedAttempt, SourceConfig
from scrapegate.gateway.adapter_registry import AdapterRegistry
from scrapegate.gateway.local_blob_store import LocalBlobStore
from scrapegate.gateway.memory_persistence import MemoryPersistenceGateway
from scrapegate.gateway.notifiers import LoggingNotificationSink
from scrapegate.locking.lock_manager import LockManager
from scrapegate.locking.memory_lock_store import MemoryLockStore


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None, store_backend="memory", lock_backend="memory",
        blob_root=tmp_path / "blobs",
    )


@pytest.fixture
def registry() -> AdapterRegistry:
    registry = AdapterRegistry()
    registry.register(FakeAdapter())
    return registry


@pytest.fixture
def engine(settings, registry):
    return build_engine(settings, registry=registry, notifier=RecordingSink())


async def _add_source(engine, key: str = "acme") -> SourceConfig:
    return await engine.gateway.save_source_config(SourceConfig(source_key=key, adapter="fake"))


class TestBuildEngine:
    def test_creates_backends_from_settings(self, settings):
        engine = build_engine(settings)
        assert isinstance(engine.gateway, MemoryPersistenceGateway)
        assert isinstance(engine.lock_store, MemoryLockStore)
        assert isinstance(engine.blob_store, LocalBlobStore)
        assert isinstance(engine.notifier, LoggingNotificationSink)
        assert engine.locks.default_ttl == timedelta(minutes=30)
        assert engine.registry.adapter_names == []

    def test_overrides_win(self, settings):
        gateway = MemoryPersistenceGateway()
        sink = RecordingSink()
        engine = build_engine(settings, gateway=gateway, notifier=sink)
        assert engine.gateway is gateway
        assert engine.notifier is sink

    def test_sqlite_backends_close(self, tmp_path):
        settings = Settings(
            _env_file=None, store_path=tmp_path / "sg.db", blob_root=tmp_path / "blobs"
        )
        engine = build_engine(settings)
        engine.close()
        assert (tmp_path / "sg.db").exists()


class TestRunSource:
    @pytest.mark.asyncio
    async def test_runs_to_completion(self, engine):
        await _add_source(engine)
        outcome = await run_source(engine, "acme", holder_id="runner_a")
        assert isinstance(outcome, Run)
        assert outcome.status is RunStatus.SUCCESS
        assert outcome.holder_id == "runner_a"

    @pytest.mark.asyncio
    async def test_unknown_source_is_skipped(self, engine):
        outcome = await run_source(engine, "nope")
        assert isinstance(outcome, SkippedAttempt)
        assert outcome.reason == "unknown_source"


class TestSourceStatus:
    @pytest.mark.asyncio
    async def test_after_run(self, engine):
        await _add_source(engine)
        await run_source(engine, "acme")
        status = await source_status(engine, "acme")
        assert status.state == "enabled"
        assert status.lock is None
        assert [r.status for r in status.recent_runs] == [RunStatus.SUCCESS]
        assert status.aggregates["active_jobs"] == 10

    @pytest.mark.asyncio
    async def test_shows_current_lease(self, engine):
        await _add_source(engine)
        await engine.locks.acquire("acme", "runner_b")
        status = await source_status(engine, "acme")
        assert status.lock.holder_id == "runner_b"

    @pytest.mark.asyncio
    async def test_unknown_source(self, engine):
        with pytest.raises(UnknownSourceError):
            await source_status(engine, "nope")


class TestOperatorControls:
    @pytest.mark.asyncio
    async def test_disable_then_enable(self, engine):
        await _add_source(engine)
        config = await disable_source(engine, "acme", "vendor outage")
        assert config.manually_disabled
        assert (await source_status(engine, "acme")).state == "manually_disabled"
        assert (await run_source(engine, "acme")).reason == "disabled"

        config = await enable_source(engine, "acme")
        assert config.enabled
        assert isinstance(await run_source(engine, "acme"), Run)

    @pytest.mark.asyncio
    async def test_safe_mode(self, engine):
        await _add_source(engine)
        await set_safe_mode(engine, "acme", True)
        assert (await source_status(engine, "acme")).state == "safe_mode"
        run = await run_source(engine, "acme")
        assert run.status is RunStatus.PARTIAL_SUCCESS

    @pytest.mark.asyncio
    async def test_sweep_locks(self, engine):
        past = LockManager(engine.lock_store, timedelta(minutes=30), clock=FrozenClock(T0))
        await past.acquire("acme", "runner_a")
        await engine.locks.acquire("globex", "runner_a")
        assert await sweep_locks(engine) == 1
        assert await engine.locks.current("globex") is not None
