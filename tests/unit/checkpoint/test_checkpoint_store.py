# tests/unit/checkpoint/test_checkpoint_store.py — v1
"""Tests for checkpoint/checkpoint_store.py."""

from __future__ import annotations

import asyncio

import pytest

from scrapegate.checkpoint.checkpoint_store import CheckpointStore
from scrapegate.core.errors import CheckpointOrderError
from scrapegate.core.models import CheckpointPayload, JobItem, Run, Stage
from scrapegate.gateway.local_blob_store import LocalBlobStore
from scrapegate.gateway.memory_persistence import MemoryPersistenceGateway


@pytest.fixture
def gateway() -> MemoryPersistenceGateway:
    return MemoryPersistenceGateway()


async def _open_run(gateway) -> Run:
    run = Run(source_key="acme", holder_id="h")
    await gateway.save_run(run)
    return run


def _payload(n: int) -> CheckpointPayload:
    return CheckpointPayload(
        completed_stages=[Stage.FETCH_LIST],
        listing=[{"id": str(i), "title": "x" * 50} for i in range(n)],
        items=[JobItem(job_id=str(i), title="x" * 50) for i in range(n)],
    )


class TestPut:
    @pytest.mark.asyncio
    async def test_sequences_increase(self, gateway):
        run = await _open_run(gateway)
        store = CheckpointStore(gateway)
        first = await store.put(run.run_id, Stage.FETCH_LIST, _payload(1))
        second = await store.put(run.run_id, Stage.PARSE_LIST, _payload(1))
        assert (first.sequence, second.sequence) == (1, 2)
        latest = await store.get(run.run_id)
        assert latest.sequence == 2 and latest.stage is Stage.PARSE_LIST

    @pytest.mark.asyncio
    async def test_new_store_continues_from_stored_sequence(self, gateway):
        run = await _open_run(gateway)
        await CheckpointStore(gateway).put(run.run_id, Stage.FETCH_LIST, _payload(1))
        resumed = CheckpointStore(gateway)
        checkpoint = await resumed.put(run.run_id, Stage.PARSE_LIST, _payload(1))
        assert checkpoint.sequence == 2

    @pytest.mark.asyncio
    async def test_concurrent_puts_are_serialized(self, gateway):
        run = await _open_run(gateway)
        store = CheckpointStore(gateway)
        results = await asyncio.gather(
            *(store.put(run.run_id, Stage.FETCH_LIST, _payload(1)) for _ in range(5))
        )
        assert sorted(c.sequence for c in results) == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_forget_rereads_sequence(self, gateway):
        run = await _open_run(gateway)
        store = CheckpointStore(gateway)
        await store.put(run.run_id, Stage.FETCH_LIST, _payload(1))
        store.forget(run.run_id)
        assert (await store.put(run.run_id, Stage.PARSE_LIST, _payload(1))).sequence == 2

    @pytest.mark.asyncio
    async def test_foreign_writer_is_rejected(self, gateway):
        run = await _open_run(gateway)
        ours = CheckpointStore(gateway)
        theirs = CheckpointStore(gateway)
        await ours.put(run.run_id, Stage.FETCH_LIST, _payload(1))
        await theirs.put(run.run_id, Stage.FETCH_LIST, _payload(1))
        with pytest.raises(CheckpointOrderError):
            await ours.put(run.run_id, Stage.PARSE_LIST, _payload(1))


class TestSpill:
    @pytest.mark.asyncio
    async def test_small_payload_stays_inline(self, gateway, tmp_path):
        run = await _open_run(gateway)
        store = CheckpointStore(gateway, LocalBlobStore(tmp_path), max_bytes=100_000)
        checkpoint = await store.put(run.run_id, Stage.PARSE_LIST, _payload(3))
        assert checkpoint.payload.listing is not None
        assert checkpoint.payload.listing_ref is None

    @pytest.mark.asyncio
    async def test_large_payload_spills_and_loads_back(self, gateway, tmp_path):
        run = await _open_run(gateway)
        store = CheckpointStore(gateway, LocalBlobStore(tmp_path), max_bytes=1_000)
        await store.put(run.run_id, Stage.PARSE_LIST, _payload(40))

        stored = (await store.get(run.run_id)).payload
        assert stored.listing is None and stored.items is None
        assert stored.listing_ref == f"checkpoints/{run.run_id}/1-listing.json"
        assert stored.items_ref == f"checkpoints/{run.run_id}/1-items.json"

        listing = await store.load_listing(stored)
        items = await store.load_items(stored)
        assert len(listing) == 40 and listing[0]["id"] == "0"
        assert [i.job_id for i in items][:3] == ["0", "1", "2"]

    @pytest.mark.asyncio
    async def test_without_blob_store_never_spills(self, gateway):
        run = await _open_run(gateway)
        store = CheckpointStore(gateway, max_bytes=10)
        checkpoint = await store.put(run.run_id, Stage.PARSE_LIST, _payload(40))
        assert checkpoint.payload.listing is not None

    @pytest.mark.asyncio
    async def test_ref_without_blob_store_fails_loudly(self, gateway):
        store = CheckpointStore(gateway)
        with pytest.raises(ValueError, match="no blob store"):
            await store.load_items(CheckpointPayload(items_ref="checkpoints/x/1-items.json"))

    @pytest.mark.asyncio
    async def test_empty_payload_loads_none(self, gateway):
        store = CheckpointStore(gateway)
        assert await store.load_listing(CheckpointPayload()) is None
        assert await store.load_items(CheckpointPayload()) is None
