"""Queue statistics and health evaluation."""
import enum
import time

from pydantic import Field

from src.core.redis import JobHistory
from src.core.schemas import CamelModel

CRITICAL_ERROR_RATE = 50.0  # percent
WARNING_ERROR_RATE = 10.0
CRITICAL_QUEUE_LENGTH = 1000
WARNING_QUEUE_LENGTH = 100
STALLED_WAIT_SECONDS = 5 * 60
PROCESSING_WINDOW_SECONDS = 60


class QueueHealthStatus(str, enum.Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class QueueStats(CamelModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    oldest_waiting_age_seconds: float | None = None

    @property
    def queue_length(self) -> int:
        return self.waiting + self.active

    @property
    def error_rate(self) -> float:
        finished = self.completed + self.failed
        return self.failed / finished * 100 if finished else 0.0


class QueueHealthMetrics(CamelModel):
    queue_length: int
    processing_rate: float
    error_rate: float
    oldest_waiting_age_seconds: float | None = None


class QueueHealth(CamelModel):
    status: QueueHealthStatus
    alerts: list[str] = Field(default_factory=list)
    metrics: QueueHealthMetrics
    stats: QueueStats


def evaluate_queue_health(stats: QueueStats, processing_rate: float) -> QueueHealth:
    """Classify queue health from a stats snapshot.

    ``processing_rate`` is the number of jobs finished in the last minute.
    """
    alerts: list[str] = []
    status = QueueHealthStatus.HEALTHY
    error_rate = stats.error_rate
    queue_length = stats.queue_length

    if error_rate > CRITICAL_ERROR_RATE:
        status = QueueHealthStatus.CRITICAL
        alerts.append(f"High error rate: {error_rate:.0f}%")
    elif error_rate > WARNING_ERROR_RATE:
        status = QueueHealthStatus.WARNING
        alerts.append(f"Elevated error rate: {error_rate:.0f}%")

    if queue_length > CRITICAL_QUEUE_LENGTH:
        status = QueueHealthStatus.CRITICAL
        alerts.append(f"Queue backlog critical: {queue_length} jobs")
    elif queue_length > WARNING_QUEUE_LENGTH:
        if status != QueueHealthStatus.CRITICAL:
            status = QueueHealthStatus.WARNING
        alerts.append(f"Queue backlog growing: {queue_length} jobs")

    if processing_rate == 0 and stats.waiting > 0:
        if status != QueueHealthStatus.CRITICAL:
            status = QueueHealthStatus.WARNING
        alerts.append("No jobs processed in the last minute")

    if stats.oldest_waiting_age_seconds is not None and stats.oldest_waiting_age_seconds > STALLED_WAIT_SECONDS:
        if status != QueueHealthStatus.CRITICAL:
            status = QueueHealthStatus.WARNING
        alerts.append(f"Oldest job waiting {int(stats.oldest_waiting_age_seconds)}s")

    return QueueHealth(
        status=status,
        alerts=alerts,
        metrics=QueueHealthMetrics(
            queue_length=queue_length,
            processing_rate=processing_rate,
            error_rate=error_rate,
            oldest_waiting_age_seconds=stats.oldest_waiting_age_seconds,
        ),
        stats=stats,
    )


class QueueMonitor:
    """Reads job history to report stats and health."""

    def __init__(self, history: JobHistory):
        self.history = history

    async def get_stats(self) -> QueueStats:
        counts = await self.history.counts()
        oldest = await self.history.oldest_waiting_since()
        return QueueStats(
            **counts,
            oldest_waiting_age_seconds=max(time.time() - oldest, 0.0) if oldest is not None else None,
        )

    async def get_processing_rate(self) -> float:
        """Jobs finished within the last minute."""
        since = time.time() - PROCESSING_WINDOW_SECONDS
        finished = 0
        for state in ("completed", "failed"):
            records = await self.history.finished_records(state)
            finished += sum(1 for record in records if record.get("finished_at", 0) >= since)
        return float(finished)

    async def get_queue_health(self) -> QueueHealth:
        stats = await self.get_stats()
        return evaluate_queue_health(stats, await self.get_processing_rate())
