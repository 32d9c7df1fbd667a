"""Tests for queue stats and health evaluation."""
import time

import pytest

from src.domains.queue.monitoring import (
    QueueHealthStatus,
    QueueMonitor,
    QueueStats,
    evaluate_queue_health,
)


class TestEvaluateQueueHealth:
    """Tests for evaluate_queue_health."""

    def test_idle_queue_is_healthy(self):
        health = evaluate_queue_health(QueueStats(), processing_rate=0)

        assert health.status == QueueHealthStatus.HEALTHY
        assert health.alerts == []

    def test_high_error_rate_is_critical(self):
        """More than half of finished jobs failing should be critical."""
        health = evaluate_queue_health(QueueStats(completed=4, failed=6), processing_rate=10)

        assert health.status == QueueHealthStatus.CRITICAL
        assert health.metrics.error_rate == 60.0

    def test_elevated_error_rate_is_warning(self):
        health = evaluate_queue_health(QueueStats(completed=8, failed=2), processing_rate=10)

        assert health.status == QueueHealthStatus.WARNING

    def test_error_rate_at_threshold_is_healthy(self):
        """Thresholds are exclusive."""
        health = evaluate_queue_health(QueueStats(completed=9, failed=1), processing_rate=10)

        assert health.status == QueueHealthStatus.HEALTHY

    def test_backlog_thresholds(self):
        """Queue length should drive warning and critical."""
        warning = evaluate_queue_health(QueueStats(waiting=101), processing_rate=5)
        critical = evaluate_queue_health(QueueStats(waiting=900, active=101), processing_rate=5)

        assert warning.status == QueueHealthStatus.WARNING
        assert critical.status == QueueHealthStatus.CRITICAL
        assert critical.metrics.queue_length == 1001

    def test_waiting_without_processing_is_warning(self):
        """Jobs waiting while nothing finishes should raise a warning."""
        health = evaluate_queue_health(QueueStats(waiting=3), processing_rate=0)

        assert health.status == QueueHealthStatus.WARNING
        assert health.alerts == ["No jobs processed in the last minute"]

    def test_old_waiting_job_is_warning(self):
        health = evaluate_queue_health(QueueStats(waiting=1, oldest_waiting_age_seconds=301), processing_rate=2)

        assert health.status == QueueHealthStatus.WARNING

    def test_warning_does_not_downgrade_critical(self):
        """A later warning rule should keep a critical status."""
        health = evaluate_queue_health(QueueStats(waiting=5, completed=1, failed=9), processing_rate=0)

        assert health.status == QueueHealthStatus.CRITICAL
        assert len(health.alerts) == 2


class TestQueueMonitor:
    """Tests for QueueMonitor against the job history."""

    @pytest.mark.asyncio
    async def test_stats_reflect_history(self, job_history):
        # Arrange
        await job_history.mark_waiting("job-1", time.time() - 10)
        await job_history.mark_waiting("job-2")
        await job_history.mark_active("job-2")
        await job_history.mark_waiting("job-3")
        await job_history.mark_completed("job-3", "TEST", "ok")
        monitor = QueueMonitor(job_history)

        # Act
        stats = await monitor.get_stats()

        # Assert
        assert (stats.waiting, stats.active, stats.completed, stats.failed) == (1, 1, 1, 0)
        assert stats.oldest_waiting_age_seconds >= 10

    @pytest.mark.asyncio
    async def test_processing_rate_counts_recent_jobs(self, job_history):
        await job_history.mark_completed("job-1", "TEST", "ok")
        await job_history.mark_failed("job-2", "TEST", "boom")

        rate = await QueueMonitor(job_history).get_processing_rate()

        assert rate == 2.0

    @pytest.mark.asyncio
    async def test_health_uses_history(self, job_history):
        """A stalled waiting job should surface as a warning."""
        await job_history.mark_waiting("job-1", time.time() - 600)

        health = await QueueMonitor(job_history).get_queue_health()

        assert health.status == QueueHealthStatus.WARNING
        assert health.stats.waiting == 1
