# src/locking/sqlite_lock_store.py — v1
"""SQLite-based lock store (LOCK_BACKEND=sqlite).

Uses stdlib sqlite3. Acquire is a single conditional upsert, so the
compare-and-set is atomic across processes sharing the database file.
Timestamps are stored as epoch seconds.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path

from scrapegate.core.models import Lock
from scrapegate.locking.base_lock_store import BaseLockStore

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS source_locks (
    source_key TEXT PRIMARY KEY,
    holder_id TEXT NOT NULL,
    acquired_at REAL NOT NULL,
    expires_at REAL NOT NULL CHECK (expires_at > acquired_at)
);
"""

_ACQUIRE = """
INSERT INTO source_locks (source_key, holder_id, acquired_at, expires_at)
VALUES (?, ?, ?, ?)
ON CONFLICT(source_key) DO UPDATE SET
    holder_id = excluded.holder_id,
    acquired_at = excluded.acquired_at,
    expires_at = excluded.expires_at
WHERE source_locks.expires_at <= ?
"""


def _ts(value: datetime) -> float:
    return value.timestamp()


def _dt(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class SqliteLockStore(BaseLockStore):
    """SQLite-backed lock table."""

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

    async def try_acquire(self, lock: Lock, now: datetime) -> bool:
        with self._mutex:
            cursor = self._conn.execute(
                _ACQUIRE,
                (
                    lock.source_key,
                    lock.holder_id,
                    _ts(lock.acquired_at),
                    _ts(lock.expires_at),
                    _ts(now),
                ),
            )
            return cursor.rowcount == 1

    async def release(self, source_key: str, holder_id: str) -> bool:
        with self._mutex:
            cursor = self._conn.execute(
                "DELETE FROM source_locks WHERE source_key = ? AND holder_id = ?",
                (source_key, holder_id),
            )
            return cursor.rowcount == 1

    async def renew(
        self, source_key: str, holder_id: str, expires_at: datetime, now: datetime
    ) -> bool:
        with self._mutex:
            cursor = self._conn.execute(
                """UPDATE source_locks SET expires_at = ?
                   WHERE source_key = ? AND holder_id = ? AND expires_at > ?""",
                (_ts(expires_at), source_key, holder_id, _ts(now)),
            )
            return cursor.rowcount == 1

    async def get(self, source_key: str) -> Lock | None:
        with self._mutex:
            row = self._conn.execute(
                """SELECT source_key, holder_id, acquired_at, expires_at
                   FROM source_locks WHERE source_key = ?""",
                (source_key,),
            ).fetchone()
        if row is None:
            return None
        return Lock(
            source_key=row[0],
            holder_id=row[1],
            acquired_at=_dt(row[2]),
            expires_at=_dt(row[3]),
        )

    async def delete_expired(self, now: datetime) -> int:
        with self._mutex:
            cursor = self._conn.execute(
                "DELETE FROM source_locks WHERE expires_at <= ?", (_ts(now),)
            )
            return cursor.rowcount

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
