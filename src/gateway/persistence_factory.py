# src/gateway/persistence_factory.py — v1
"""Factory for persistence gateway and blob store instantiation."""

from __future__ import annotations

from scrapegate.config.settings import Settings
from scrapegate.gateway.base_blob_store import BaseBlobStore
from scrapegate.gateway.base_persistence import BasePersistenceGateway


def create_persistence_gateway(settings: Settings | None = None) -> BasePersistenceGateway:
    """Instantiate the configured persistence backend.

    Args:
        settings: Application settings. Defaults to the in-memory backend.
    """
    backend = "memory" if settings is None else settings.store_backend

    if backend == "memory":
        from scrapegate.gateway.memory_persistence import MemoryPersistenceGateway
        return MemoryPersistenceGateway()

    if backend == "sqlite":
        from scrapegate.gateway.sqlite_persistence import SqlitePersistenceGateway
        db_path = "output/scrapegate.db" if settings is None else settings.store_path
        return SqlitePersistenceGateway(db_path=db_path)

    raise ValueError(f"Unsupported store backend: {backend!r}")


def create_blob_store(settings: Settings | None = None) -> BaseBlobStore:
    """Instantiate the local filesystem blob store."""
    from scrapegate.gateway.local_blob_store import LocalBlobStore

    root = "output/blobs" if settings is None else str(settings.blob_root)
    return LocalBlobStore(root=root)
