"""Background scheduler for queue maintenance (job history cleanup)."""
import asyncio
import logging

from src.config.settings import QueueConfig
from src.core.redis import JobHistory

logger = logging.getLogger(__name__)

AGGRESSIVE_CLEANUP_THRESHOLD = 500
AGGRESSIVE_KEEP_COMPLETED = 50
AGGRESSIVE_KEEP_FAILED = 25
AGGRESSIVE_STALE_AFTER_SECONDS = 12 * 60 * 60


async def cleanup_job_history(history: JobHistory) -> dict[str, int]:
    """Trim job history, escalating when too many records remain.

    Returns the number of records removed per state.
    """
    removed = await history.cleanup()
    remaining = sum((await history.counts()).values())
    logger.info("Job history cleanup removed %s, %d records remain", removed, remaining)

    if remaining > AGGRESSIVE_CLEANUP_THRESHOLD:
        logger.warning("Still %d job records, performing aggressive cleanup", remaining)
        extra = await history.cleanup(
            keep_completed=AGGRESSIVE_KEEP_COMPLETED,
            keep_failed=AGGRESSIVE_KEEP_FAILED,
            stale_after_seconds=AGGRESSIVE_STALE_AFTER_SECONDS,
        )
        for state, count in extra.items():
            removed[state] = removed.get(state, 0) + count

    return removed


class QueueMaintenanceScheduler:
    """Runs periodic queue maintenance using asyncio."""

    def __init__(self, history: JobHistory, config: QueueConfig):
        self.history = history
        self.config = config
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self):
        """Start the cleanup loop."""
        if self.is_running:
            logger.warning("QueueMaintenanceScheduler is already running")
            return
        self._stop_event = asyncio.Event()
        self._tasks = [asyncio.create_task(self._cleanup_loop())]
        logger.info(
            "QueueMaintenanceScheduler started (cleanup every %ds)",
            self.config.cleanup_interval_seconds,
        )

    async def stop(self):
        """Gracefully stop the cleanup loop."""
        self._stop_event.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("QueueMaintenanceScheduler stopped")

    async def _cleanup_loop(self):
        """Clean up immediately, then on every interval."""
        while not self._stop_event.is_set():
            try:
                await cleanup_job_history(self.history)
            except Exception as e:
                logger.error("Queue cleanup loop error: %s", e)
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self.config.cleanup_interval_seconds,
                )
                break
            except asyncio.TimeoutError:
                pass
