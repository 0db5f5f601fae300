# src/api/facade.py — v1
"""Public API facade: wire the engine from settings and drive it.

Usage:
    from scrapegate.api.facade import build_engine, run_source
    engine = build_engine(settings, registry=registry)
    outcome = await run_source(engine, "acme")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from scrapegate.api.models import SourceStatus
from scrapegate.checkpoint.checkpoint_store import CheckpointStore
from scrapegate.config.settings import Settings
from scrapegate.core.errors import UnknownSourceError
from scrapegate.gateway.adapter_registry import AdapterRegistry
from scrapegate.gateway.notifiers import create_notification_sink
from scrapegate.gateway.persistence_factory import create_blob_store, create_persistence_gateway
from scrapegate.killswitch.controller import KillSwitchController
from scrapegate.locking.lock_factory import create_lock_store
from scrapegate.locking.lock_manager import LockManager
from scrapegate.pipeline.state_machine import RunStateMachine

if TYPE_CHECKING:
    from scrapegate.core.models import Run, SkippedAttempt, SourceConfig
    from scrapegate.gateway.base_blob_store import BaseBlobStore
    from scrapegate.gateway.base_notifier import BaseNotificationSink
    from scrapegate.gateway.base_persistence import BasePersistenceGateway
    from scrapegate.locking.base_lock_store import BaseLockStore

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    """All long-lived collaborators of the run state machine."""

    settings: Settings
    gateway: BasePersistenceGateway
    lock_store: BaseLockStore
    locks: LockManager
    blob_store: BaseBlobStore | None
    checkpoints: CheckpointStore
    notifier: BaseNotificationSink
    killswitch: KillSwitchController
    registry: AdapterRegistry
    machine: RunStateMachine

    def close(self) -> None:
        """Close backend connections that hold OS resources."""
        for backend in (self.gateway, self.lock_store):
            close = getattr(backend, "close", None)
            if callable(close):
                close()


def build_engine(
    settings: Settings | None = None,
    registry: AdapterRegistry | None = None,
    gateway: BasePersistenceGateway | None = None,
    lock_store: BaseLockStore | None = None,
    blob_store: BaseBlobStore | None = None,
    notifier: BaseNotificationSink | None = None,
) -> Engine:
    """Build an Engine; any collaborator not passed is created from settings.

    Args:
        settings: Global settings. Loaded from .env if None.
        registry: Adapter registry. Empty if None.
        gateway: Persistence gateway override.
        lock_store: Lock store override.
        blob_store: Blob store override.
        notifier: Notification sink override.
    """
    settings = settings or Settings()
    registry = registry or AdapterRegistry()
    gateway = gateway or create_persistence_gateway(settings)
    lock_store = lock_store or create_lock_store(settings)
    blob_store = blob_store or create_blob_store(settings)
    notifier = notifier or create_notification_sink(settings)

    locks = LockManager(lock_store, default_ttl=timedelta(minutes=settings.lock_ttl_minutes))
    checkpoints = CheckpointStore(gateway, blob_store, max_bytes=settings.checkpoint_max_bytes)
    killswitch = KillSwitchController.from_settings(settings, gateway, notifier)
    machine = RunStateMachine(
        gateway=gateway,
        locks=locks,
        checkpoints=checkpoints,
        killswitch=killswitch,
        registry=registry,
        settings=settings,
        blob_store=blob_store,
        notifier=notifier,
    )
    logger.debug(
        "Engine built: store=%s locks=%s adapters=%s",
        settings.store_backend, settings.lock_backend, registry.adapter_names,
    )
    return Engine(
        settings=settings,
        gateway=gateway,
        lock_store=lock_store,
        locks=locks,
        blob_store=blob_store,
        checkpoints=checkpoints,
        notifier=notifier,
        killswitch=killswitch,
        registry=registry,
        machine=machine,
    )


async def run_source(
    engine: Engine, source_key: str, holder_id: str | None = None
) -> Run | SkippedAttempt:
    """Execute one scheduled attempt for a source."""
    return await engine.machine.execute(source_key, holder_id=holder_id)


async def source_status(engine: Engine, source_key: str, recent: int = 5) -> SourceStatus:
    """Health record, current lease, recent runs and aggregates of a source.

    Raises:
        UnknownSourceError: No configuration stored for ``source_key``.
    """
    config = await engine.gateway.get_source_config(source_key)
    if config is None:
        raise UnknownSourceError(f"Unknown source '{source_key}'")
    return SourceStatus(
        config=config,
        lock=await engine.locks.current(source_key),
        recent_runs=await engine.gateway.list_runs(source_key, limit=recent),
        aggregates=await engine.gateway.get_aggregates(source_key),
    )


async def disable_source(engine: Engine, source_key: str, reason: str = "") -> SourceConfig:
    return await engine.killswitch.manual_disable(source_key, reason)


async def enable_source(engine: Engine, source_key: str) -> SourceConfig:
    return await engine.killswitch.manual_enable(source_key)


async def set_safe_mode(engine: Engine, source_key: str, enabled: bool) -> SourceConfig:
    return await engine.killswitch.set_safe_mode(source_key, enabled)


async def sweep_locks(engine: Engine) -> int:
    """Delete expired lock rows. Returns the number removed."""
    return await engine.locks.sweep_expired()
