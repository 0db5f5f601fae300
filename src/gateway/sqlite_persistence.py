# src/gateway/sqlite_persistence.py — v1
"""SQLite-based persistence gateway (STORE_BACKEND=sqlite).

Uses stdlib sqlite3, no external dependency. Models are stored as JSON
documents next to the indexed columns the gateway queries on. Multi-row
operations run inside one transaction.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

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

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    source_key TEXT NOT NULL,
    job_id TEXT NOT NULL,
    data TEXT NOT NULL,
    active INTEGER NOT NULL DEFAULT 1,
    first_seen_run_id TEXT NOT NULL,
    last_seen_at TEXT NOT NULL,
    inactive_run_id TEXT,
    inactive_since TEXT,
    PRIMARY KEY (source_key, job_id)
);
CREATE INDEX IF NOT EXISTS idx_jobs_active ON jobs(source_key, active);

CREATE TABLE IF NOT EXISTS source_configs (
    source_key TEXT PRIMARY KEY,
    version INTEGER NOT NULL,
    data TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS runs (
    run_id TEXT PRIMARY KEY,
    source_key TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_runs_source ON runs(source_key, started_at);

CREATE TABLE IF NOT EXISTS source_aggregates (
    source_key TEXT PRIMARY KEY,
    data TEXT NOT NULL
);
"""


class SqlitePersistenceGateway(BasePersistenceGateway):
    """SQLite-backed persistence gateway."""

    def __init__(self, db_path: Path | str) -> None:
        if str(db_path) != ":memory:":
            path = Path(db_path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            db_path = str(path)
        self._conn = sqlite3.connect(
            str(db_path), timeout=10.0, check_same_thread=False, isolation_level=None
        )
        self._mutex = threading.Lock()
        if str(db_path) != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        """Serialized write transaction; sqlite errors become PersistenceError."""
        with self._mutex:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
                try:
                    yield self._conn
                except BaseException:
                    self._conn.execute("ROLLBACK")
                    raise
                self._conn.execute("COMMIT")
            except sqlite3.Error as e:
                raise PersistenceError(f"SQLite error: {e}") from e

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        with self._mutex:
            try:
                yield self._conn
            except sqlite3.Error as e:
                raise PersistenceError(f"SQLite error: {e}") from e

    # --- Jobs ---

    async def upsert_jobs(
        self, source_key: str, items: list[JobItem], run_id: str
    ) -> UpsertResult:
        now = utcnow().isoformat()
        unique: dict[str, JobItem] = {}
        for item in items:
            unique.setdefault(item.job_id, item)

        new = updated = 0
        with self._tx() as conn:
            for job_id, item in unique.items():
                row = conn.execute(
                    "SELECT first_seen_run_id FROM jobs WHERE source_key = ? AND job_id = ?",
                    (source_key, job_id),
                ).fetchone()
                if row is None:
                    conn.execute(
                        """INSERT INTO jobs
                           (source_key, job_id, data, active, first_seen_run_id, last_seen_at)
                           VALUES (?, ?, ?, 1, ?, ?)""",
                        (source_key, job_id, item.model_dump_json(), run_id, now),
                    )
                    new += 1
                    continue
                conn.execute(
                    """UPDATE jobs SET data = ?, active = 1, last_seen_at = ?,
                           inactive_run_id = NULL, inactive_since = NULL
                       WHERE source_key = ? AND job_id = ?""",
                    (item.model_dump_json(), now, source_key, job_id),
                )
                if row[0] == run_id:
                    new += 1
                else:
                    updated += 1
        return UpsertResult(new=new, updated=updated)

    async def mark_inactive(
        self, source_key: str, seen_ids: set[str], as_of: datetime, run_id: str
    ) -> int:
        with self._tx() as conn:
            active = conn.execute(
                "SELECT job_id FROM jobs WHERE source_key = ? AND active = 1",
                (source_key,),
            ).fetchall()
            stale = [(r[0],) for r in active if r[0] not in seen_ids]
            conn.executemany(
                """UPDATE jobs SET active = 0, inactive_run_id = ?, inactive_since = ?
                    WHERE source_key = ? AND job_id = ?""",
                [(run_id, as_of.isoformat(), source_key, job_id) for (job_id,) in stale],
            )
            count = conn.execute(
                "SELECT COUNT(*) FROM jobs WHERE source_key = ? AND inactive_run_id = ?",
                (source_key, run_id),
            ).fetchone()[0]
        return int(count)

    async def update_aggregates(self, source_key: str, run: Run) -> None:
        with self._tx() as conn:
            active, total = conn.execute(
                """SELECT COALESCE(SUM(active), 0), COUNT(*)
                   FROM jobs WHERE source_key = ?""",
                (source_key,),
            ).fetchone()
            data = {
                "active_jobs": int(active),
                "total_jobs": int(total),
                "last_full_run_id": run.run_id,
                "last_full_run_at": utcnow().isoformat(),
                "last_confidence_score": run.confidence_score,
            }
            conn.execute(
                "INSERT OR REPLACE INTO source_aggregates (source_key, data) VALUES (?, ?)",
                (source_key, json.dumps(data)),
            )

    async def list_jobs(self, source_key: str, active_only: bool = False) -> list[JobItem]:
        query = "SELECT data FROM jobs WHERE source_key = ?"
        if active_only:
            query += " AND active = 1"
        with self._read() as conn:
            rows = conn.execute(query + " ORDER BY job_id", (source_key,)).fetchall()
        return [JobItem.model_validate_json(r[0]) for r in rows]

    async def get_aggregates(self, source_key: str) -> dict[str, object] | None:
        with self._read() as conn:
            row = conn.execute(
                "SELECT data FROM source_aggregates WHERE source_key = ?", (source_key,)
            ).fetchone()
        return json.loads(row[0]) if row else None

    # --- Source configuration ---

    async def get_source_config(self, source_key: str) -> SourceConfig | None:
        with self._read() as conn:
            row = conn.execute(
                "SELECT data FROM source_configs WHERE source_key = ?", (source_key,)
            ).fetchone()
        return SourceConfig.model_validate_json(row[0]) if row else None

    async def list_source_configs(self) -> list[SourceConfig]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT data FROM source_configs ORDER BY source_key"
            ).fetchall()
        return [SourceConfig.model_validate_json(r[0]) for r in rows]

    async def save_source_config(
        self, config: SourceConfig, expected_version: int | None = None
    ) -> SourceConfig:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT version FROM source_configs WHERE source_key = ?",
                (config.source_key,),
            ).fetchone()
            current_version = row[0] if row else None
            if expected_version is not None and current_version != expected_version:
                raise StaleSourceConfigError(
                    config.source_key, expected_version, current_version
                )
            stored = config.model_copy(update={"version": (current_version or 0) + 1})
            conn.execute(
                "INSERT OR REPLACE INTO source_configs (source_key, version, data) VALUES (?, ?, ?)",
                (stored.source_key, stored.version, stored.model_dump_json()),
            )
        return stored

    # --- Runs ---

    async def save_run(self, run: Run, previous_holder: str | None = None) -> None:
        with self._tx() as conn:
            current = _load_run(conn, run.run_id)
            owner = previous_holder or run.holder_id
            if current is not None and current.holder_id != owner:
                raise LeaseLostError(run.run_id, owner, current.holder_id)
            if current is not None and current.is_terminal:
                raise RunImmutableError(
                    f"Run {run.run_id} is terminal ({current.status.value})"
                )
            stored = run
            if (
                current is not None
                and current.checkpoint is not None
                and (run.checkpoint is None or current.checkpoint.sequence > run.checkpoint.sequence)
            ):
                # Checkpoints only move forward
                stored = run.model_copy(update={"checkpoint": current.checkpoint})
            conn.execute(
                """INSERT OR REPLACE INTO runs
                   (run_id, source_key, status, started_at, finished_at, data)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    stored.run_id,
                    stored.source_key,
                    stored.status.value,
                    stored.started_at.isoformat(),
                    stored.finished_at.isoformat() if stored.finished_at else None,
                    stored.model_dump_json(),
                ),
            )

    async def get_run(self, run_id: str) -> Run | None:
        with self._read() as conn:
            return _load_run(conn, run_id)

    async def list_runs(self, source_key: str, limit: int = 20) -> list[Run]:
        with self._read() as conn:
            rows = conn.execute(
                """SELECT data FROM runs WHERE source_key = ?
                   ORDER BY started_at DESC LIMIT ?""",
                (source_key, limit),
            ).fetchall()
        return [Run.model_validate_json(r[0]) for r in rows]

    async def find_open_runs(self, source_key: str) -> list[Run]:
        with self._read() as conn:
            rows = conn.execute(
                """SELECT data FROM runs WHERE source_key = ? AND status = ?
                   ORDER BY started_at""",
                (source_key, RunStatus.RUNNING.value),
            ).fetchall()
        return [Run.model_validate_json(r[0]) for r in rows]

    # --- Checkpoints ---

    async def write_checkpoint(
        self, run_id: str, checkpoint: Checkpoint, holder_id: str | None = None
    ) -> None:
        with self._tx() as conn:
            run = _load_run(conn, run_id)
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
            run.checkpoint = checkpoint
            run.stage = checkpoint.stage
            conn.execute(
                "UPDATE runs SET data = ? WHERE run_id = ?",
                (run.model_dump_json(), run_id),
            )

    async def read_checkpoint(self, run_id: str) -> Checkpoint | None:
        run = await self.get_run(run_id)
        return run.checkpoint if run else None

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()


def _load_run(conn: sqlite3.Connection, run_id: str) -> Run | None:
    row = conn.execute("SELECT data FROM runs WHERE run_id = ?", (run_id,)).fetchone()
    return Run.model_validate_json(row[0]) if row else None
