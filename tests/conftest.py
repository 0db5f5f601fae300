# tests/conftest.py — v1
"""Shared test fixtures for all unit tests.

Provides a scriptable fake source adapter, controllable clocks, a recording
notification sink and a fully wired in-memory run state machine.
No network, no external services — Redis is mocked where used.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from scrapegate.checkpoint.checkpoint_store import CheckpointStore
from scrapegate.classification.retry import RequestOptions
from scrapegate.config.settings import Settings
from scrapegate.core.models import (
    HttpStats,
    JobItem,
    NotificationEvent,
    SourceConfig,
    SymptomBundle,
)
from scrapegate.gateway.adapter_registry import AdapterRegistry
from scrapegate.gateway.base_adapter import (
    AdapterResult,
    BaseSourceAdapter,
    ItemValidationError,
)
from scrapegate.gateway.base_notifier import BaseNotificationSink
from scrapegate.gateway.local_blob_store import LocalBlobStore
from scrapegate.gateway.memory_persistence import MemoryPersistenceGateway
from scrapegate.killswitch.controller import KillSwitchController
from scrapegate.locking.lock_manager import LockManager
from scrapegate.locking.memory_lock_store import MemoryLockStore
from scrapegate.logging.context import clear_context
from scrapegate.pipeline.state_machine import RunStateMachine
from scrapegate.tracking.http_stats import record_response

T0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


# === HELPERS ===


class SimulatedCrash(BaseException):
    """Stands in for process death: escapes every ``except Exception``."""


class FrozenClock:
    """Timezone-aware UTC clock that only moves when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeMonotonic:
    """Monotonic seconds counter for budget and duration tests."""

    def __init__(self) -> None:
        self.value = 0.0

    def __call__(self) -> float:
        return self.value


def make_stats(*statuses: int, size_bytes: int = 1000, latency_ms: float = 50.0) -> HttpStats:
    stats = HttpStats()
    for status in statuses:
        record_response(stats, status, latency_ms=latency_ms, size_bytes=size_bytes)
    return stats


def make_page(
    records: list[dict[str, Any]],
    statuses: tuple[int, ...] = (200,),
    next_cursor: str | None = None,
    symptoms: SymptomBundle | None = None,
) -> AdapterResult:
    return AdapterResult(
        records=records,
        stats=make_stats(*statuses),
        symptoms=symptoms,
        next_cursor=next_cursor,
    )


def job_records(start: int, count: int) -> list[dict[str, Any]]:
    return [{"id": f"job-{i:04d}", "title": f"Engineer {i}"} for i in range(start, start + count)]


class FakeAdapter(BaseSourceAdapter):
    """Scriptable adapter.

    ``pages`` is consumed one entry per fetch_list_page call; an entry that
    is an exception instance is raised instead of returned. The last entry
    repeats once the script runs out.
    """

    def __init__(
        self,
        name: str = "fake",
        pages: list[AdapterResult | BaseException] | None = None,
        detail_crash_on: str | None = None,
        empty_details: set[str] | None = None,
        config_errors: list[str] | None = None,
    ) -> None:
        self._name = name
        self.pages = pages if pages is not None else [make_page(job_records(0, 10))]
        self.list_calls = 0
        self.cursors: list[str | None] = []
        self.options: list[RequestOptions] = []
        self.detail_calls: list[str] = []
        self.detail_crash_on = detail_crash_on
        self.empty_details = empty_details or set()
        self.config_errors = config_errors or []

    @property
    def name(self) -> str:
        return self._name

    async def fetch_list_page(self, config, cursor, options):
        step = self.pages[min(self.list_calls, len(self.pages) - 1)]
        self.list_calls += 1
        self.cursors.append(cursor)
        self.options.append(options)
        if isinstance(step, BaseException):
            raise step
        return step.model_copy(deep=True)

    def parse_item(self, config, record):
        if record.get("invalid"):
            raise ItemValidationError(f"record {record.get('id')} has no title")
        if "id" not in record:
            raise KeyError("id")
        return JobItem(job_id=str(record["id"]), title=record.get("title", ""))

    async def fetch_detail(self, config, item, options):
        self.detail_calls.append(item.job_id)
        if item.job_id == self.detail_crash_on:
            raise SimulatedCrash(item.job_id)
        if item.job_id in self.empty_details:
            return AdapterResult(
                stats=make_stats(200),
                symptoms=SymptomBundle(http_status=200, body_length=0),
            )
        return AdapterResult(stats=make_stats(200), detail_text=f"<p>{item.title}</p>")

    def validate_config(self, config):
        return list(self.config_errors)


class RecordingSink(BaseNotificationSink):
    def __init__(self) -> None:
        self.events: list[NotificationEvent] = []

    async def notify(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def kinds(self) -> list[str]:
        return [e.kind for e in self.events]


@dataclass
class Harness:
    """Wired in-memory engine with controllable time."""

    settings: Settings
    gateway: MemoryPersistenceGateway
    lock_store: MemoryLockStore
    locks: LockManager
    blob_store: LocalBlobStore
    checkpoints: CheckpointStore
    killswitch: KillSwitchController
    registry: AdapterRegistry
    notifier: RecordingSink
    clock: FrozenClock
    monotonic: FakeMonotonic
    machine: RunStateMachine
    sleeps: list[float] = field(default_factory=list)

    async def add_source(self, source_key: str = "acme", **overrides: Any) -> SourceConfig:
        config = SourceConfig(source_key=source_key, adapter=overrides.pop("adapter", "fake"), **overrides)
        return await self.gateway.save_source_config(config)


def build_harness(tmp_path, **settings_overrides: Any) -> Harness:
    settings = Settings(
        _env_file=None,
        store_backend="memory",
        lock_backend="memory",
        blob_root=tmp_path / "blobs",
        **settings_overrides,
    )
    clock = FrozenClock()
    monotonic = FakeMonotonic()
    sleeps: list[float] = []

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    gateway = MemoryPersistenceGateway()
    lock_store = MemoryLockStore()
    locks = LockManager(lock_store, timedelta(minutes=settings.lock_ttl_minutes), clock=clock)
    blob_store = LocalBlobStore(tmp_path / "blobs")
    checkpoints = CheckpointStore(gateway, blob_store, max_bytes=settings.checkpoint_max_bytes)
    notifier = RecordingSink()
    killswitch = KillSwitchController.from_settings(settings, gateway, notifier, clock=clock)
    registry = AdapterRegistry()
    machine = RunStateMachine(
        gateway=gateway,
        locks=locks,
        checkpoints=checkpoints,
        killswitch=killswitch,
        registry=registry,
        settings=settings,
        blob_store=blob_store,
        notifier=notifier,
        clock=clock,
        monotonic=monotonic,
        sleep=fake_sleep,
    )
    return Harness(
        settings=settings,
        gateway=gateway,
        lock_store=lock_store,
        locks=locks,
        blob_store=blob_store,
        checkpoints=checkpoints,
        killswitch=killswitch,
        registry=registry,
        notifier=notifier,
        clock=clock,
        monotonic=monotonic,
        machine=machine,
        sleeps=sleeps,
    )


# === FIXTURES ===


@pytest.fixture(autouse=True)
def _reset_log_context():
    clear_context()
    yield
    clear_context()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def harness(tmp_path) -> Harness:
    return build_harness(tmp_path)


@pytest.fixture
def fake_adapter(harness: Harness) -> FakeAdapter:
    """FakeAdapter named 'fake' registered on the harness registry."""
    adapter = FakeAdapter()
    harness.registry.register(adapter)
    return adapter
