"""Redis lock that keeps at most one catalog sync in flight."""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

import redis.asyncio as redis

from catalog_mirror.config import settings

logger = logging.getLogger(__name__)

LOCK_KEY = "catalog:sync:lock"
HEARTBEAT_KEY = "catalog:sync:heartbeat"
PENDING_KEY = "catalog:sync:pending"

# KEYS[1]=lock, KEYS[2]=heartbeat; ARGV[1]=run_id, ARGV[2]=token
# Returns 0 = no lock, 1 = released, 2 = held by someone else
_RELEASE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
    return 0
end
local ok, data = pcall(cjson.decode, raw)
if not ok then
    return 2
end
if data.run_id == ARGV[1] and data.token == ARGV[2] then
    redis.call('DEL', KEYS[1], KEYS[2])
    return 1
end
return 2
"""

# ARGV[3]=ttl seconds, ARGV[4]=heartbeat timestamp
# Returns 0 = no lock, 1 = refreshed, 2 = held by someone else
_REFRESH_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
    return 0
end
local ok, data = pcall(cjson.decode, raw)
if not ok then
    return 0
end
if data.run_id == ARGV[1] and data.token == ARGV[2] then
    redis.call('EXPIRE', KEYS[1], ARGV[3])
    redis.call('SET', KEYS[2], ARGV[4], 'EX', ARGV[3])
    return 1
end
return 2
"""

# Atomically read-and-clear the pending flag
_CONSUME_PENDING_SCRIPT = """
if redis.call('GET', KEYS[1]) then
    redis.call('DEL', KEYS[1])
    return 1
end
return 0
"""


@dataclass(frozen=True)
class LockHandle:
    """Proof of lock ownership for one sync run."""

    run_id: str
    token: str


class SyncLockManager:
    """
    Distributed single-flight lock for catalog sync runs.

    - SET NX EX acquisition with a per-run token
    - Token-checked release and TTL refresh (Lua, atomic)
    - Heartbeat key recording the last refresh
    - Pending flag so a manual trigger during a run is not lost
    """

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url or settings.redis_url
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def acquire(self, run_id: str, ttl_seconds: Optional[int] = None) -> Optional[LockHandle]:
        """
        Try to take the sync lock.

        Returns:
            LockHandle if acquired, None if another run holds it
        """
        client = await self._get_redis()
        ttl = ttl_seconds or settings.sync_lock_ttl_seconds
        token = uuid4().hex
        value = json.dumps({
            "run_id": run_id,
            "token": token,
            "started_at": datetime.utcnow().isoformat(),
        })

        if not await client.set(LOCK_KEY, value, nx=True, ex=ttl):
            logger.debug(f"Sync lock busy, run {run_id[:16]} not started")
            return None

        await client.set(HEARTBEAT_KEY, str(time.time()), ex=ttl)
        logger.info(f"Acquired sync lock for run_id: {run_id[:16]}")
        return LockHandle(run_id=run_id, token=token)

    async def release(self, handle: LockHandle) -> bool:
        """Release the lock if this handle still owns it."""
        client = await self._get_redis()
        result = await client.eval(
            _RELEASE_SCRIPT, 2, LOCK_KEY, HEARTBEAT_KEY, handle.run_id, handle.token
        )
        if result == 2:
            logger.warning(f"Sync lock now held by another run; not releasing for {handle.run_id[:16]}")
            return False
        if result == 1:
            logger.info(f"Released sync lock for run_id: {handle.run_id[:16]}")
        return True

    async def refresh(self, handle: LockHandle, ttl_seconds: Optional[int] = None) -> bool:
        """Extend the lock TTL and stamp the heartbeat. False if ownership was lost."""
        client = await self._get_redis()
        ttl = ttl_seconds or settings.sync_lock_ttl_seconds
        result = await client.eval(
            _REFRESH_SCRIPT,
            2,
            LOCK_KEY,
            HEARTBEAT_KEY,
            handle.run_id,
            handle.token,
            str(ttl),
            str(time.time()),
        )
        return result == 1

    async def force_unlock(self) -> None:
        """Drop the lock regardless of owner (operator recovery)."""
        client = await self._get_redis()
        await client.delete(LOCK_KEY, HEARTBEAT_KEY)
        logger.warning("Force-cleared sync lock and heartbeat keys")

    async def request_run_after_current(self) -> bool:
        """Flag that another sync should run once the current one finishes."""
        client = await self._get_redis()
        return bool(
            await client.set(PENDING_KEY, "1", nx=True, ex=settings.sync_lock_ttl_seconds)
        )

    async def consume_pending(self) -> bool:
        """Read and clear the pending flag."""
        client = await self._get_redis()
        return await client.eval(_CONSUME_PENDING_SCRIPT, 1, PENDING_KEY) == 1

    async def get_lock_info(self) -> Optional[dict[str, Any]]:
        """Current holder (run_id, started_at, ttl_seconds), or None."""
        client = await self._get_redis()
        value = await client.get(LOCK_KEY)
        if not value:
            return None
        ttl = await client.ttl(LOCK_KEY)
        try:
            data = json.loads(value)
        except json.JSONDecodeError:
            logger.error(f"Invalid sync lock value: {value!r}")
            return {"raw_value": value, "ttl_seconds": ttl if ttl > 0 else None}
        return {
            "run_id": data.get("run_id"),
            "started_at": data.get("started_at"),
            "ttl_seconds": ttl if ttl > 0 else None,
        }

    async def get_heartbeat_age(self) -> Optional[float]:
        """Seconds since the last heartbeat, or None if there is none."""
        client = await self._get_redis()
        value = await client.get(HEARTBEAT_KEY)
        if not value:
            return None
        try:
            return max(0.0, time.time() - float(value))
        except ValueError:
            return None


async def keep_lock_alive(
    manager: SyncLockManager,
    handle: LockHandle,
    interval: Optional[int] = None,
) -> None:
    """Background task: refresh the lock every ``interval`` seconds until cancelled."""
    interval = interval or settings.sync_lock_heartbeat_interval_seconds
    failures = 0
    while True:
        await asyncio.sleep(interval)
        try:
            refreshed = await manager.refresh(handle)
        except redis.RedisError as e:
            logger.warning(f"Sync lock heartbeat error: {e}")
            refreshed = False

        if refreshed:
            failures = 0
            continue

        failures += 1
        logger.warning(
            f"Heartbeat failed for run_id: {handle.run_id[:16]} (consecutive failures: {failures})"
        )
        if failures >= 3:
            logger.error(f"Heartbeat stopping for run_id: {handle.run_id[:16]}")
            return


sync_lock_manager = SyncLockManager()
