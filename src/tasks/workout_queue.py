"""Workout operations queue tasks.

The worker consumes queue messages, applies them through the plan
synchronizer and records each job's outcome in the job history.
"""
import asyncio
import logging
import time
from typing import Any

from src.config.database import create_worker_session_factory
from src.core.celery_app import celery_app, queue_config
from src.core.observability import capture_exception, capture_message
from src.core.redis import JobHistory, close_redis
from src.core.scheduler import cleanup_job_history as run_history_cleanup
from src.domains.queue.messages import QueueJobResult
from src.domains.queue.processors import RetryableJobError, handle_queue_payload

logger = logging.getLogger(__name__)


def run_async(coro):
    """Run async function in sync context."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.run_until_complete(close_redis())
        loop.close()


def get_job_history() -> JobHistory:
    return JobHistory(
        queue_config.name,
        keep_completed=queue_config.keep_completed,
        keep_failed=queue_config.keep_failed,
    )


@celery_app.task(bind=True, max_retries=queue_config.max_retries)
def process_queue_message(self, payload: dict[str, Any]):
    """Process one queued workout message.

    Retryable failures are re-delivered with exponential backoff until the
    attempts are used up; everything else is final.
    """
    job_id = self.request.id
    message_type = payload.get("messageType", "UNKNOWN")
    history = get_job_history()

    try:
        return run_async(_process_queue_message_async(job_id, message_type, payload, history))
    except RetryableJobError as e:
        retries = self.request.retries
        if retries >= self.max_retries:
            # Out of attempts: a terminal failure like any other
            logger.error("Job %s (%s) failed after %d attempts: %s", job_id, message_type, retries + 1, e)
            run_async(history.mark_failed(job_id, message_type, e.message))
            capture_exception(e, extra={"job_id": job_id, "payload": payload}, tags={"message_type": message_type})
            result = QueueJobResult(
                success=False,
                message=f"Failed after {retries + 1} attempts",
                error=e.message,
                error_code=e.code,
            )
            return result.model_dump(mode="json", by_alias=True)

        countdown = queue_config.backoff_delay(retries)
        logger.warning("Job %s (%s) will retry in %.0fs: %s", job_id, message_type, countdown, e)
        run_async(history.mark_waiting(job_id, time.time() + countdown))
        raise self.retry(exc=e, countdown=countdown)
    except Exception as e:
        # The Celery integration reports the re-raised error
        logger.error("Job %s (%s) crashed: %s", job_id, message_type, e)
        run_async(history.mark_failed(job_id, message_type, str(e)))
        raise


async def _process_queue_message_async(
    job_id: str,
    message_type: str,
    payload: dict[str, Any],
    history: JobHistory,
) -> dict[str, Any]:
    await history.mark_active(job_id)

    engine, session_factory = create_worker_session_factory()
    try:
        result = await handle_queue_payload(payload, session_factory)
    finally:
        await engine.dispose()

    if result.success:
        await history.mark_completed(job_id, message_type, result.message)
        logger.info("Job %s (%s) completed: %s", job_id, message_type, result.message)
    else:
        await history.mark_failed(job_id, message_type, result.error or result.message)
        logger.warning("Job %s (%s) failed: %s", job_id, message_type, result.error)
        capture_message(
            f"Queue job {message_type} failed: {result.error}",
            level="warning",
            extra={"job_id": job_id, "error_code": result.error_code},
        )

    return result.model_dump(mode="json", by_alias=True)


@celery_app.task
def cleanup_job_history():
    """Trim finished job records (runs every cleanup interval via beat)."""
    logger.info("Starting job history cleanup task")
    return run_async(run_history_cleanup(get_job_history()))
