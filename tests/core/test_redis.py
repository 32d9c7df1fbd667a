"""Tests for Redis job history bookkeeping."""
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.core.redis import JobHistory, _memory_lists, _memory_sorted_sets, close_redis, get_redis


@pytest.fixture
def history() -> JobHistory:
    return JobHistory("history-test", keep_completed=3, keep_failed=2)


class TestJobHistoryTransitions:
    """Tests for job state transitions (memory fallback)."""

    @pytest.mark.asyncio
    async def test_mark_waiting(self, history):
        """Should record the job with its enqueue time."""
        await history.mark_waiting("job-1", 1000.0)

        assert _memory_sorted_sets["queue:history-test:waiting"] == {"job-1": 1000.0}
        assert await history.oldest_waiting_since() == 1000.0

    @pytest.mark.asyncio
    async def test_mark_active_moves_job(self, history):
        """Should move the job out of waiting."""
        await history.mark_waiting("job-1")

        await history.mark_active("job-1")

        counts = await history.counts()
        assert counts["waiting"] == 0
        assert counts["active"] == 1

    @pytest.mark.asyncio
    async def test_mark_completed_keeps_newest_first(self, history):
        """Finished records should be newest first and trimmed to the limit."""
        # Arrange
        for index in range(5):
            await history.mark_waiting(f"job-{index}")
            await history.mark_active(f"job-{index}")

        # Act
        for index in range(5):
            await history.mark_completed(f"job-{index}", "TEST", f"done {index}")

        # Assert
        records = await history.finished_records("completed")
        assert [record["job_id"] for record in records] == ["job-4", "job-3", "job-2"]
        assert records[0]["message_type"] == "TEST"
        assert "finished_at" in records[0]
        assert (await history.counts())["active"] == 0

    @pytest.mark.asyncio
    async def test_mark_failed_stores_error(self, history):
        await history.mark_failed("job-1", "WORKOUT_PHASE_CREATE", "Plan not found")

        records = await history.finished_records("failed")
        assert records == [
            {
                "job_id": "job-1",
                "message_type": "WORKOUT_PHASE_CREATE",
                "message": "Plan not found",
                "finished_at": records[0]["finished_at"],
            }
        ]

    @pytest.mark.asyncio
    async def test_oldest_waiting_empty(self, history):
        assert await history.oldest_waiting_since() is None


class TestJobHistoryCleanup:
    """Tests for JobHistory.cleanup."""

    @pytest.mark.asyncio
    async def test_cleanup_trims_finished_records(self, history):
        """Should trim to the given limits and report removals."""
        for index in range(3):
            await history.mark_completed(f"job-{index}", "TEST", "ok")

        removed = await history.cleanup(keep_completed=1, keep_failed=1)

        assert removed["completed"] == 2
        assert removed["failed"] == 0
        assert len(_memory_lists["queue:history-test:completed"]) == 1

    @pytest.mark.asyncio
    async def test_cleanup_drops_stale_waiting(self, history):
        """Entries older than the cutoff should be removed."""
        await history.mark_waiting("stale", time.time() - 7200)
        await history.mark_waiting("fresh")
        await history.mark_active("fresh")

        removed = await history.cleanup(stale_after_seconds=3600)

        assert removed["waiting"] == 1
        assert removed["active"] == 0
        assert (await history.counts())["active"] == 1


class TestJobHistoryWithRedis:
    """Tests for JobHistory when Redis is available."""

    @pytest.mark.asyncio
    async def test_mark_completed_uses_redis(self, history):
        """Should remove the job from pending sets and push a trimmed record."""
        # Arrange
        client = AsyncMock()

        # Act
        with patch("src.core.redis.get_redis", return_value=client):
            await history.mark_completed("job-1", "TEST", "ok")

        # Assert
        client.zrem.assert_any_await("queue:history-test:waiting", "job-1")
        client.zrem.assert_any_await("queue:history-test:active", "job-1")
        client.lpush.assert_awaited_once()
        client.ltrim.assert_awaited_once_with("queue:history-test:completed", 0, 2)
        assert _memory_lists == {}

    @pytest.mark.asyncio
    async def test_counts_use_redis(self, history):
        client = AsyncMock()
        client.zcard.side_effect = [4, 1]
        client.llen.side_effect = [10, 2]

        with patch("src.core.redis.get_redis", return_value=client):
            counts = await history.counts()

        assert counts == {"waiting": 4, "active": 1, "completed": 10, "failed": 2}


class TestRedisClient:
    """Tests for the per-event-loop Redis client."""

    @pytest.fixture
    def redis_client(self):
        client = AsyncMock()
        client.connection_pool = MagicMock()
        client.connection_pool.disconnect = AsyncMock()
        with patch("src.core.redis._use_memory_fallback", False), patch(
            "redis.asyncio.ConnectionPool.from_url"
        ), patch("redis.asyncio.Redis", return_value=client) as redis_cls:
            yield client, redis_cls

    @pytest.mark.asyncio
    async def test_client_is_reused_within_a_loop(self, redis_client):
        """Repeated bookkeeping calls should share one connection pool."""
        client, redis_cls = redis_client

        first = await get_redis()
        second = await get_redis()
        await close_redis()

        assert first is second is client
        redis_cls.assert_called_once()
        client.ping.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_releases_connections(self, redis_client):
        """Closing should drop the cached client so the next call reconnects."""
        client, redis_cls = redis_client
        await get_redis()

        await close_redis()
        await get_redis()
        await close_redis()

        client.aclose.assert_awaited()
        client.connection_pool.disconnect.assert_awaited()
        assert redis_cls.call_count == 2

    @pytest.mark.asyncio
    async def test_close_without_client_is_noop(self):
        await close_redis()
