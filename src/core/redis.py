"""Redis client and job bookkeeping for the background queue."""
import asyncio
import json
import logging
import time
import weakref
from typing import Any

from src.config.settings import settings

logger = logging.getLogger(__name__)

# In-memory fallback for development when Redis is not available
_memory_lists: dict[str, list[str]] = {}
_memory_sorted_sets: dict[str, dict[str, float]] = {}
_use_memory_fallback = False

# Connections belong to the event loop that opened them
_clients: weakref.WeakKeyDictionary = weakref.WeakKeyDictionary()


async def get_redis():
    """Get the Redis client for the running event loop, or None for the memory fallback."""
    global _use_memory_fallback

    if _use_memory_fallback:
        return None

    loop = asyncio.get_running_loop()
    client = _clients.get(loop)
    if client is not None:
        return client

    try:
        import redis.asyncio as redis

        pool = redis.ConnectionPool.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
        client = redis.Redis(connection_pool=pool)
        await client.ping()
    except Exception as e:
        logger.warning(f"Redis not available, using in-memory fallback: {e}")
        _use_memory_fallback = True
        return None

    _clients[loop] = client
    return client


async def close_redis() -> None:
    """Close the running event loop's Redis client and its connection pool."""
    client = _clients.pop(asyncio.get_running_loop(), None)
    if client is None:
        return
    await client.aclose()
    await client.connection_pool.disconnect()


def clear_memory_fallback() -> None:
    """Drop everything held by the in-memory fallback."""
    _memory_lists.clear()
    _memory_sorted_sets.clear()


class JobHistory:
    """Waiting/active/completed/failed job records for one queue.

    Completed and failed records are trimmed on every write so only the most
    recent ones are kept.
    """

    PREFIX = "queue:"

    def __init__(self, queue_name: str, keep_completed: int = 100, keep_failed: int = 50):
        self.queue_name = queue_name
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed

    def _key(self, state: str) -> str:
        return f"{self.PREFIX}{self.queue_name}:{state}"

    async def mark_waiting(self, job_id: str, enqueued_at: float | None = None) -> None:
        """Record a job as enqueued."""
        score = enqueued_at if enqueued_at is not None else time.time()
        client = await get_redis()
        if client:
            await client.zadd(self._key("waiting"), {job_id: score})
        else:
            _memory_sorted_sets.setdefault(self._key("waiting"), {})[job_id] = score

    async def mark_active(self, job_id: str) -> None:
        """Move a job from waiting to active."""
        now = time.time()
        client = await get_redis()
        if client:
            await client.zrem(self._key("waiting"), job_id)
            await client.zadd(self._key("active"), {job_id: now})
        else:
            _memory_sorted_sets.get(self._key("waiting"), {}).pop(job_id, None)
            _memory_sorted_sets.setdefault(self._key("active"), {})[job_id] = now

    async def mark_completed(self, job_id: str, message_type: str, message: str) -> None:
        await self._finish("completed", self.keep_completed, job_id, message_type, message)

    async def mark_failed(self, job_id: str, message_type: str, error: str) -> None:
        await self._finish("failed", self.keep_failed, job_id, message_type, error)

    async def _finish(self, state: str, keep: int, job_id: str, message_type: str, message: str) -> None:
        record = json.dumps(
            {
                "job_id": job_id,
                "message_type": message_type,
                "message": message,
                "finished_at": time.time(),
            }
        )
        client = await get_redis()
        if client:
            await client.zrem(self._key("waiting"), job_id)
            await client.zrem(self._key("active"), job_id)
            await client.lpush(self._key(state), record)
            await client.ltrim(self._key(state), 0, keep - 1)
        else:
            _memory_sorted_sets.get(self._key("waiting"), {}).pop(job_id, None)
            _memory_sorted_sets.get(self._key("active"), {}).pop(job_id, None)
            records = _memory_lists.setdefault(self._key(state), [])
            records.insert(0, record)
            del records[keep:]

    async def counts(self) -> dict[str, int]:
        """Number of retained records per state."""
        client = await get_redis()
        if client:
            return {
                "waiting": await client.zcard(self._key("waiting")),
                "active": await client.zcard(self._key("active")),
                "completed": await client.llen(self._key("completed")),
                "failed": await client.llen(self._key("failed")),
            }
        return {
            "waiting": len(_memory_sorted_sets.get(self._key("waiting"), {})),
            "active": len(_memory_sorted_sets.get(self._key("active"), {})),
            "completed": len(_memory_lists.get(self._key("completed"), [])),
            "failed": len(_memory_lists.get(self._key("failed"), [])),
        }

    async def oldest_waiting_since(self) -> float | None:
        """Enqueue time of the oldest waiting job."""
        client = await get_redis()
        if client:
            oldest = await client.zrange(self._key("waiting"), 0, 0, withscores=True)
            return oldest[0][1] if oldest else None
        waiting = _memory_sorted_sets.get(self._key("waiting"), {})
        return min(waiting.values()) if waiting else None

    async def finished_records(self, state: str) -> list[dict[str, Any]]:
        """Retained records of a finished state, newest first."""
        client = await get_redis()
        if client:
            raw = await client.lrange(self._key(state), 0, -1)
        else:
            raw = list(_memory_lists.get(self._key(state), []))
        return [json.loads(item) for item in raw]

    async def cleanup(
        self,
        keep_completed: int | None = None,
        keep_failed: int | None = None,
        stale_after_seconds: int = 86400,
    ) -> dict[str, int]:
        """Trim finished records and drop waiting/active entries nobody picked up.

        Returns how many records were removed per state.
        """
        keep = {
            "completed": keep_completed if keep_completed is not None else self.keep_completed,
            "failed": keep_failed if keep_failed is not None else self.keep_failed,
        }
        cutoff = time.time() - stale_after_seconds
        removed: dict[str, int] = {}
        client = await get_redis()

        for state, limit in keep.items():
            if client:
                before = await client.llen(self._key(state))
                await client.ltrim(self._key(state), 0, limit - 1)
            else:
                records = _memory_lists.get(self._key(state), [])
                before = len(records)
                del records[limit:]
            removed[state] = max(before - limit, 0)

        for state in ("waiting", "active"):
            if client:
                removed[state] = await client.zremrangebyscore(self._key(state), "-inf", cutoff)
            else:
                entries = _memory_sorted_sets.get(self._key(state), {})
                stale = [job_id for job_id, score in entries.items() if score < cutoff]
                for job_id in stale:
                    del entries[job_id]
                removed[state] = len(stale)

        return removed
