# src/locking/redis_lock_store.py — v1
"""Redis-based lock store (LOCK_BACKEND=redis).

Requires 'redis' package: pip install redis.
Suitable for multi-host deployments. Acquire is ``SET NX PX`` so Redis
itself expires stale leases; release and renew are compare-and-act Lua
scripts keyed on the holder id.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime

from scrapegate.core.models import Lock
from scrapegate.locking.base_lock_store import BaseLockStore

logger = logging.getLogger(__name__)

_KEY_PREFIX = "scrapegate:lock:"

_RELEASE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then return 0 end
if cjson.decode(raw)['holder_id'] ~= ARGV[1] then return 0 end
return redis.call('DEL', KEYS[1])
"""

_RENEW_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then return 0 end
local row = cjson.decode(raw)
if row['holder_id'] ~= ARGV[1] then return 0 end
row['expires_at'] = ARGV[2]
redis.call('SET', KEYS[1], cjson.encode(row), 'PX', tonumber(ARGV[3]))
return 1
"""


def _ttl_ms(expires_at: datetime, now: datetime) -> int:
    return max(int((expires_at - now).total_seconds() * 1000), 1)


class RedisLockStore(BaseLockStore):
    """Redis-backed lock table."""

    def __init__(self, redis_url: str) -> None:
        try:
            import redis
        except ImportError as e:
            raise ImportError(
                "redis package required: pip install redis"
            ) from e

        self._client = redis.Redis.from_url(redis_url, decode_responses=True)
        self._release = self._client.register_script(_RELEASE_SCRIPT)
        self._renew = self._client.register_script(_RENEW_SCRIPT)

    async def try_acquire(self, lock: Lock, now: datetime) -> bool:
        value = json.dumps({
            "holder_id": lock.holder_id,
            "acquired_at": lock.acquired_at.isoformat(),
            "expires_at": lock.expires_at.isoformat(),
        })
        acquired = self._client.set(
            f"{_KEY_PREFIX}{lock.source_key}",
            value,
            nx=True,
            px=_ttl_ms(lock.expires_at, now),
        )
        return bool(acquired)

    async def release(self, source_key: str, holder_id: str) -> bool:
        return bool(self._release(keys=[f"{_KEY_PREFIX}{source_key}"], args=[holder_id]))

    async def renew(
        self, source_key: str, holder_id: str, expires_at: datetime, now: datetime
    ) -> bool:
        return bool(self._renew(
            keys=[f"{_KEY_PREFIX}{source_key}"],
            args=[holder_id, expires_at.isoformat(), _ttl_ms(expires_at, now)],
        ))

    async def get(self, source_key: str) -> Lock | None:
        raw = self._client.get(f"{_KEY_PREFIX}{source_key}")
        if raw is None:
            return None
        data = json.loads(raw)
        return Lock(source_key=source_key, **data)

    async def delete_expired(self, now: datetime) -> int:
        # Redis expires keys itself
        return 0
