# src/gateway/base_blob_store.py — v1
"""Abstract blob store interface.

Holds job detail texts (fetch_details stage) and checkpoint state too large
to embed in a run record.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class BaseBlobStore(ABC):
    """Unified interface for blob storage backends."""

    @abstractmethod
    async def put_object(self, key: str, text: str) -> str:
        """Store text under ``key`` (overwriting). Returns a reference."""

    @abstractmethod
    async def get_object(self, ref: str) -> str:
        """Read text by reference."""

    @abstractmethod
    async def delete_object(self, ref: str) -> None:
        """Remove an object. Missing objects are ignored."""

    async def store_detail(self, source_key: str, job_id: str, text: str) -> str:
        """Store a job detail page. Keyed by job, so replays overwrite."""
        return await self.put_object(f"details/{source_key}/{job_id}.txt", text)
