"""Tests for the workout queue Celery tasks and queue maintenance."""
import asyncio
import time
from unittest.mock import ANY, AsyncMock, MagicMock, patch

import pytest
from celery.exceptions import Retry

from src.core.scheduler import QueueMaintenanceScheduler, cleanup_job_history
from src.domains.queue.messages import QueueJobResult
from src.domains.queue.processors import RetryableJobError
from src.domains.workouts.exceptions import SyncErrorCode
from src.tasks.workout_queue import get_job_history, process_queue_message, run_async

PAYLOAD = {"messageType": "WORKOUT_SESSION_DELETE", "data": {}}


@pytest.fixture
def worker_db():
    """Skip the real database in task tests."""
    engine = MagicMock()
    engine.dispose = AsyncMock()
    with patch("src.tasks.workout_queue.create_worker_session_factory", return_value=(engine, MagicMock())):
        yield engine


@pytest.fixture
def sentry():
    with patch("src.tasks.workout_queue.capture_exception") as capture_exception, patch(
        "src.tasks.workout_queue.capture_message"
    ) as capture_message:
        yield capture_exception, capture_message


def run_task(payload, job_id="job-1", retries=0):
    """Run the task body with a given delivery context."""
    process_queue_message.push_request(id=job_id, retries=retries)
    try:
        return process_queue_message.run(payload)
    finally:
        process_queue_message.pop_request()


class TestProcessQueueMessage:
    """Tests for the process_queue_message task."""

    def test_success_is_recorded(self, worker_db, sentry):
        """Should return the job result and mark the job completed."""
        # Arrange
        result = QueueJobResult(success=True, message="Session deleted", data={"planId": "p1"})

        # Act
        with patch("src.tasks.workout_queue.handle_queue_payload", new=AsyncMock(return_value=result)):
            output = run_task(PAYLOAD)

        # Assert
        assert output["success"] is True
        assert output["data"] == {"planId": "p1"}
        counts = run_async(get_job_history().counts())
        assert counts["completed"] == 1
        assert counts["active"] == 0
        worker_db.dispose.assert_awaited_once()

    def test_terminal_failure_is_not_retried(self, worker_db, sentry):
        """Terminal failures should be recorded and reported as warnings."""
        result = QueueJobResult(
            success=False,
            message="Workout operation failed",
            error="Plan was modified by another request",
            error_code=SyncErrorCode.CONFLICT,
        )
        _, capture_message = sentry

        with patch("src.tasks.workout_queue.handle_queue_payload", new=AsyncMock(return_value=result)):
            output = run_task(PAYLOAD)

        assert output["success"] is False
        assert output["errorCode"] == SyncErrorCode.CONFLICT.value
        records = run_async(get_job_history().finished_records("failed"))
        assert records[0]["message"] == "Plan was modified by another request"
        capture_message.assert_called_once_with(ANY, level="warning", extra=ANY)

    def test_retryable_failure_schedules_retry(self, worker_db, sentry):
        """Retryable failures should back off exponentially."""
        error = RetryableJobError(SyncErrorCode.PLAN_NOT_FOUND, "Plan not found")

        with patch("src.tasks.workout_queue.handle_queue_payload", new=AsyncMock(side_effect=error)), patch.object(
            process_queue_message, "retry", return_value=Retry("retry")
        ) as retry:
            with pytest.raises(Retry):
                run_task(PAYLOAD, retries=1)

        retry.assert_called_once_with(exc=error, countdown=4.0)
        counts = run_async(get_job_history().counts())
        assert counts["waiting"] == 1
        assert counts["failed"] == 0

    def test_retries_exhausted_marks_failed(self, worker_db, sentry):
        """The last attempt should fail the job and report it exactly once."""
        error = RetryableJobError(SyncErrorCode.TRANSIENT, "Failed to apply workout plan changes")
        capture_exception, capture_message = sentry

        with patch("src.tasks.workout_queue.handle_queue_payload", new=AsyncMock(side_effect=error)), patch.object(
            process_queue_message, "retry"
        ) as retry:
            output = run_task(PAYLOAD, retries=process_queue_message.max_retries)

        retry.assert_not_called()
        assert output["success"] is False
        assert output["errorCode"] == SyncErrorCode.TRANSIENT.value
        assert output["error"] == "Failed to apply workout plan changes"
        records = run_async(get_job_history().finished_records("failed"))
        assert records[0]["message"] == "Failed to apply workout plan changes"
        capture_exception.assert_called_once_with(error, extra=ANY, tags={"message_type": "WORKOUT_SESSION_DELETE"})
        capture_message.assert_not_called()

    def test_unexpected_error_is_final(self, worker_db, sentry):
        """Crashes should not be retried and are left to the Celery integration to report."""
        capture_exception, _ = sentry

        with patch(
            "src.tasks.workout_queue.handle_queue_payload", new=AsyncMock(side_effect=RuntimeError("boom"))
        ), patch.object(process_queue_message, "retry") as retry:
            with pytest.raises(RuntimeError):
                run_task(PAYLOAD)

        retry.assert_not_called()
        capture_exception.assert_not_called()
        counts = run_async(get_job_history().counts())
        assert counts["failed"] == 1


class TestCleanupJobHistory:
    """Tests for job history cleanup."""

    @pytest.mark.asyncio
    async def test_normal_cleanup_drops_stale_entries(self, job_history):
        await job_history.mark_waiting("stale", time.time() - 2 * 86400)
        await job_history.mark_waiting("fresh")

        removed = await cleanup_job_history(job_history)

        assert removed["waiting"] == 1
        assert (await job_history.counts())["waiting"] == 1

    @pytest.mark.asyncio
    async def test_aggressive_cleanup_when_backlog_remains(self, job_history):
        """Too many remaining records should trigger the shorter cutoff."""
        # Arrange
        thirteen_hours_ago = time.time() - 13 * 3600
        for index in range(600):
            await job_history.mark_waiting(f"job-{index}", thirteen_hours_ago)

        # Act
        removed = await cleanup_job_history(job_history)

        # Assert
        assert removed["waiting"] == 600
        assert (await job_history.counts())["waiting"] == 0


class TestQueueMaintenanceScheduler:
    """Tests for QueueMaintenanceScheduler."""

    @pytest.mark.asyncio
    async def test_start_runs_cleanup_and_stops(self, job_history, queue_config):
        # Arrange
        await job_history.mark_waiting("stale", time.time() - 2 * 86400)
        scheduler = QueueMaintenanceScheduler(job_history, queue_config)

        # Act
        await scheduler.start()
        await asyncio.sleep(0.05)
        running = scheduler.is_running
        await scheduler.stop()

        # Assert
        assert running is True
        assert scheduler.is_running is False
        assert (await job_history.counts())["waiting"] == 0
