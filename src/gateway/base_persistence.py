# src/gateway/base_persistence.py — v1
"""Persistence gateway interface.

Job writes are idempotent: upserts are keyed by (source_key, job_id) and
new/inactive totals are attributed to the run that first caused them, so a
replayed finalize never double counts. Run records are immutable once
terminal. SourceConfig writes are versioned compare-and-set.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from scrapegate.core.models import Checkpoint, JobItem, Run, SourceConfig, UpsertResult


class BasePersistenceGateway(ABC):
    """Unified interface for persistence backends."""

    # --- Jobs ---

    @abstractmethod
    async def upsert_jobs(
        self, source_key: str, items: list[JobItem], run_id: str
    ) -> UpsertResult:
        """Insert or update jobs; ``new`` counts jobs first seen by ``run_id``."""

    @abstractmethod
    async def mark_inactive(
        self, source_key: str, seen_ids: set[str], as_of: datetime, run_id: str
    ) -> int:
        """Deactivate active jobs not in ``seen_ids``; returns jobs deactivated by ``run_id``."""

    @abstractmethod
    async def update_aggregates(self, source_key: str, run: Run) -> None:
        """Refresh per-source aggregate counters after a full-tier run."""

    @abstractmethod
    async def list_jobs(self, source_key: str, active_only: bool = False) -> list[JobItem]:
        """Return stored jobs for a source."""

    @abstractmethod
    async def get_aggregates(self, source_key: str) -> dict[str, object] | None:
        """Return aggregate counters for a source, if any."""

    # --- Source configuration ---

    @abstractmethod
    async def get_source_config(self, source_key: str) -> SourceConfig | None:
        """Read a source configuration."""

    @abstractmethod
    async def list_source_configs(self) -> list[SourceConfig]:
        """Read all source configurations."""

    @abstractmethod
    async def save_source_config(
        self, config: SourceConfig, expected_version: int | None = None
    ) -> SourceConfig:
        """Write ``config`` if the stored version equals ``expected_version``.

        ``expected_version`` None means create-or-overwrite. Returns the
        stored config with its bumped version.

        Raises:
            StaleSourceConfigError: Stored version differs.
        """

    # --- Runs ---

    @abstractmethod
    async def save_run(self, run: Run, previous_holder: str | None = None) -> None:
        """Create or update a run record.

        An existing record is only overwritten by its holder: the stored
        ``holder_id`` must equal ``previous_holder`` when given (takeover),
        otherwise ``run.holder_id``.

        Raises:
            LeaseLostError: The stored record belongs to another holder.
            RunImmutableError: The stored record is already terminal.
        """

    @abstractmethod
    async def get_run(self, run_id: str) -> Run | None:
        """Read a run record."""

    @abstractmethod
    async def list_runs(self, source_key: str, limit: int = 20) -> list[Run]:
        """Most recent runs for a source, newest first."""

    @abstractmethod
    async def find_open_runs(self, source_key: str) -> list[Run]:
        """Runs for a source still in ``running`` status, oldest first."""

    # --- Checkpoints ---

    @abstractmethod
    async def write_checkpoint(
        self, run_id: str, checkpoint: Checkpoint, holder_id: str | None = None
    ) -> None:
        """Overwrite the run's embedded checkpoint.

        With ``holder_id`` the write only lands while that holder owns the run.

        Raises:
            LeaseLostError: The run belongs to another holder.
            CheckpointOrderError: Sequence not greater than the stored one.
            RunImmutableError: Run already terminal.
        """

    @abstractmethod
    async def read_checkpoint(self, run_id: str) -> Checkpoint | None:
        """Read the run's embedded checkpoint."""
