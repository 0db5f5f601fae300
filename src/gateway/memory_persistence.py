# src/gateway/memory_persistence.py — v1
"""In-process persistence gateway (STORE_BACKEND=memory).

Reference backend for tests and single-process dry runs. Every read and
write copies models so callers never share mutable state with the store.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime

from scrapegate.core.errors import (
    CheckpointOrderError,
    LeaseLostError,
    PersistenceError,
    RunImmutableError,
    StaleSourceConfigError,
)
from scrapegate.core.models import (
    Checkpoint,
    JobItem,
    Run,
    RunStatus,
    SourceConfig,
    UpsertResult,
    utcnow,
)
from scrapegate.gateway.base_persistence import BasePersistenceGateway


@dataclass
class _JobRow:
    item: JobItem
    active: bool
    first_seen_run_id: str
    last_seen_at: datetime
    inactive_run_id: str | None = None
    inactive_since: datetime | None = None


class MemoryPersistenceGateway(BasePersistenceGateway):
    """Dict-backed persistence gateway."""

    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._jobs: dict[tuple[str, str], _JobRow] = {}
        self._configs: dict[str, SourceConfig] = {}
        self._runs: dict[str, Run] = {}
        self._aggregates: dict[str, dict[str, object]] = {}

    # --- Jobs ---

    async def upsert_jobs(
        self, source_key: str, items: list[JobItem], run_id: str
    ) -> UpsertResult:
        now = utcnow()
        seen: set[str] = set()
        new = updated = 0
        with self._mutex:
            for item in items:
                if item.job_id in seen:
                    continue
                seen.add(item.job_id)
                key = (source_key, item.job_id)
                row = self._jobs.get(key)
                if row is None:
                    self._jobs[key] = _JobRow(
                        item=item.model_copy(deep=True),
                        active=True,
                        first_seen_run_id=run_id,
                        last_seen_at=now,
                    )
                    new += 1
                    continue
                row.item = item.model_copy(deep=True)
                row.active = True
                row.inactive_run_id = None
                row.inactive_since = None
                row.last_seen_at = now
                if row.first_seen_run_id == run_id:
                    new += 1
                else:
                    updated += 1
        return UpsertResult(new=new, updated=updated)

    async def mark_inactive(
        self, source_key: str, seen_ids: set[str], as_of: datetime, run_id: str
    ) -> int:
        with self._mutex:
            for (src, job_id), row in self._jobs.items():
                if src != source_key or job_id in seen_ids or not row.active:
                    continue
                row.active = False
                row.inactive_run_id = run_id
                row.inactive_since = as_of
            return sum(
                1 for (src, _), row in self._jobs.items()
                if src == source_key and row.inactive_run_id == run_id
            )

    async def update_aggregates(self, source_key: str, run: Run) -> None:
        with self._mutex:
            rows = [r for (src, _), r in self._jobs.items() if src == source_key]
            self._aggregates[source_key] = {
                "active_jobs": sum(1 for r in rows if r.active),
                "total_jobs": len(rows),
                "last_full_run_id": run.run_id,
                "last_full_run_at": utcnow(),
                "last_confidence_score": run.confidence_score,
            }

    async def list_jobs(self, source_key: str, active_only: bool = False) -> list[JobItem]:
        with self._mutex:
            return [
                row.item.model_copy(deep=True)
                for (src, _), row in sorted(self._jobs.items())
                if src == source_key and (row.active or not active_only)
            ]

    async def get_aggregates(self, source_key: str) -> dict[str, object] | None:
        with self._mutex:
            data = self._aggregates.get(source_key)
            return dict(data) if data is not None else None

    # --- Source configuration ---

    async def get_source_config(self, source_key: str) -> SourceConfig | None:
        with self._mutex:
            config = self._configs.get(source_key)
            return config.model_copy(deep=True) if config else None

    async def list_source_configs(self) -> list[SourceConfig]:
        with self._mutex:
            return [c.model_copy(deep=True) for _, c in sorted(self._configs.items())]

    async def save_source_config(
        self, config: SourceConfig, expected_version: int | None = None
    ) -> SourceConfig:
        with self._mutex:
            current = self._configs.get(config.source_key)
            current_version = current.version if current else None
            if expected_version is not None and current_version != expected_version:
                raise StaleSourceConfigError(
                    config.source_key, expected_version, current_version
                )
            stored = config.model_copy(
                deep=True, update={"version": (current_version or 0) + 1}
            )
            self._configs[config.source_key] = stored
            return stored.model_copy(deep=True)

    # --- Runs ---

    async def save_run(self, run: Run, previous_holder: str | None = None) -> None:
        with self._mutex:
            current = self._runs.get(run.run_id)
            owner = previous_holder or run.holder_id
            if current is not None and current.holder_id != owner:
                raise LeaseLostError(run.run_id, owner, current.holder_id)
            if current is not None and current.is_terminal:
                raise RunImmutableError(f"Run {run.run_id} is terminal ({current.status.value})")
            stored = run.model_copy(deep=True)
            if current is not None and _newer_checkpoint(current, run):
                # Checkpoints only move forward
                stored.checkpoint = current.checkpoint
            self._runs[run.run_id] = stored

    async def get_run(self, run_id: str) -> Run | None:
        with self._mutex:
            run = self._runs.get(run_id)
            return run.model_copy(deep=True) if run else None

    async def list_runs(self, source_key: str, limit: int = 20) -> list[Run]:
        with self._mutex:
            runs = [r for r in self._runs.values() if r.source_key == source_key]
        runs.sort(key=lambda r: r.started_at, reverse=True)
        return [r.model_copy(deep=True) for r in runs[:limit]]

    async def find_open_runs(self, source_key: str) -> list[Run]:
        with self._mutex:
            runs = [
                r for r in self._runs.values()
                if r.source_key == source_key and r.status is RunStatus.RUNNING
            ]
        runs.sort(key=lambda r: r.started_at)
        return [r.model_copy(deep=True) for r in runs]

    # --- Checkpoints ---

    async def write_checkpoint(
        self, run_id: str, checkpoint: Checkpoint, holder_id: str | None = None
    ) -> None:
        with self._mutex:
            run = self._runs.get(run_id)
            if run is None:
                raise PersistenceError(f"Run {run_id} does not exist")
            if holder_id is not None and run.holder_id != holder_id:
                raise LeaseLostError(run_id, holder_id, run.holder_id)
            if run.is_terminal:
                raise RunImmutableError(f"Run {run_id} is terminal ({run.status.value})")
            if run.checkpoint is not None and checkpoint.sequence <= run.checkpoint.sequence:
                raise CheckpointOrderError(
                    f"Checkpoint sequence {checkpoint.sequence} <= "
                    f"{run.checkpoint.sequence} for run {run_id}"
                )
            run.checkpoint = checkpoint.model_copy(deep=True)
            run.stage = checkpoint.stage

    async def read_checkpoint(self, run_id: str) -> Checkpoint | None:
        with self._mutex:
            run = self._runs.get(run_id)
            if run is None or run.checkpoint is None:
                return None
            return run.checkpoint.model_copy(deep=True)


def _newer_checkpoint(stored: Run, incoming: Run) -> bool:
    if stored.checkpoint is None:
        return False
    if incoming.checkpoint is None:
        return True
    return stored.checkpoint.sequence > incoming.checkpoint.sequence
