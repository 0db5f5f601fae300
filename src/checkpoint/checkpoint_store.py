# src/checkpoint/checkpoint_store.py — v1
"""Sequence-numbered run progress markers with blob spill.

A checkpoint is embedded in the run record and overwritten on each put().
Writes for one run are serialized through a per-run asyncio.Lock and carry
a strictly increasing sequence number; the persistence gateway rejects any
write that does not advance it.

Payloads whose JSON exceeds ``max_bytes`` move the raw listing and the
processed items to the blob store and keep only references inline.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from pydantic import TypeAdapter

from scrapegate.core.models import Checkpoint, CheckpointPayload, JobItem, Stage
from scrapegate.gateway.base_blob_store import BaseBlobStore
from scrapegate.gateway.base_persistence import BasePersistenceGateway

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 100_000

_ITEMS = TypeAdapter(list[JobItem])


class CheckpointStore:
    """Put/get run checkpoints through the persistence gateway.

    Args:
        gateway: Persistence gateway holding run records.
        blob_store: Spill target for oversized payloads. Without one,
            payloads are always stored inline.
        max_bytes: Inline payload ceiling before spilling.
    """

    def __init__(
        self,
        gateway: BasePersistenceGateway,
        blob_store: BaseBlobStore | None = None,
        max_bytes: int = DEFAULT_MAX_BYTES,
    ) -> None:
        self._gateway = gateway
        self._blob_store = blob_store
        self._max_bytes = max_bytes
        self._locks: dict[str, asyncio.Lock] = {}
        self._sequences: dict[str, int] = {}

    def _lock_for(self, run_id: str) -> asyncio.Lock:
        lock = self._locks.get(run_id)
        if lock is None:
            lock = self._locks[run_id] = asyncio.Lock()
        return lock

    async def put(
        self,
        run_id: str,
        stage: Stage,
        payload: CheckpointPayload,
        holder_id: str | None = None,
    ) -> Checkpoint:
        """Overwrite the run's checkpoint with the next sequence number.

        ``holder_id`` makes the write conditional on that holder still owning
        the run.

        Raises:
            LeaseLostError: Another holder took the run over.
            CheckpointOrderError: A concurrent writer advanced the sequence.
            PersistenceError: Gateway write failed.
            BlobStoreError: Spill write failed.
        """
        async with self._lock_for(run_id):
            sequence = self._sequences.get(run_id)
            if sequence is None:
                stored = await self._gateway.read_checkpoint(run_id)
                sequence = stored.sequence if stored else 0
            sequence += 1

            payload = await self._spill_if_large(run_id, sequence, payload)
            checkpoint = Checkpoint(
                run_id=run_id, stage=stage, sequence=sequence, payload=payload
            )
            await self._gateway.write_checkpoint(run_id, checkpoint, holder_id)
            self._sequences[run_id] = sequence
            logger.debug(
                "Checkpoint #%d written for run %s at %s", sequence, run_id, stage.value
            )
            return checkpoint

    async def get(self, run_id: str) -> Checkpoint | None:
        """Latest checkpoint of a run, or None."""
        return await self._gateway.read_checkpoint(run_id)

    def forget(self, run_id: str) -> None:
        """Drop per-run bookkeeping once a run is terminal."""
        self._locks.pop(run_id, None)
        self._sequences.pop(run_id, None)

    async def load_listing(self, payload: CheckpointPayload) -> list[dict[str, Any]] | None:
        """Raw listing records of a payload, reading the spill if needed."""
        if payload.listing is not None:
            return payload.listing
        if payload.listing_ref is None:
            return None
        return json.loads(await self._read_blob(payload.listing_ref))

    async def load_items(self, payload: CheckpointPayload) -> list[JobItem] | None:
        """Processed items of a payload, reading the spill if needed."""
        if payload.items is not None:
            return payload.items
        if payload.items_ref is None:
            return None
        return _ITEMS.validate_json(await self._read_blob(payload.items_ref))

    async def _read_blob(self, ref: str) -> str:
        if self._blob_store is None:
            raise ValueError(f"Checkpoint references blob {ref!r} but no blob store is set")
        return await self._blob_store.get_object(ref)

    async def _spill_if_large(
        self, run_id: str, sequence: int, payload: CheckpointPayload
    ) -> CheckpointPayload:
        if self._blob_store is None:
            return payload
        size = len(payload.model_dump_json().encode("utf-8"))
        if size <= self._max_bytes:
            return payload

        update: dict[str, Any] = {}
        if payload.listing is not None:
            update["listing_ref"] = await self._blob_store.put_object(
                f"checkpoints/{run_id}/{sequence}-listing.json",
                json.dumps(payload.listing),
            )
            update["listing"] = None
        if payload.items is not None:
            update["items_ref"] = await self._blob_store.put_object(
                f"checkpoints/{run_id}/{sequence}-items.json",
                _ITEMS.dump_json(payload.items).decode("utf-8"),
            )
            update["items"] = None
        logger.info(
            "Checkpoint payload for run %s is %d bytes, spilled %s to blob store",
            run_id, size, ", ".join(k for k in update if k.endswith("_ref")) or "nothing",
        )
        return payload.model_copy(update=update)
