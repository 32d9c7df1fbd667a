"""Celery application for the workout operations queue.

Usage:
    # Start worker with beat scheduler (for development):
    celery -A src.core.celery_app worker -B -l info

    # Production (separate worker and beat):
    celery -A src.core.celery_app worker -l info -Q workout-operations
    celery -A src.core.celery_app beat -l info
"""
from datetime import timedelta

from celery import Celery
from celery.signals import worker_init

# Load environment variables
from dotenv import load_dotenv

load_dotenv()

from src.config.settings import QueueConfig, settings  # noqa: E402
from src.core.observability import init_observability  # noqa: E402

CLEANUP_TASK_NAME = "src.tasks.workout_queue.cleanup_job_history"


def create_celery_app(config: QueueConfig) -> Celery:
    """Build a Celery app bound to one queue configuration."""
    app = Celery(
        "coachplan",
        broker=config.broker_url,
        backend=config.broker_url,
        include=["src.tasks.workout_queue"],
    )

    app.conf.update(
        # Task settings
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        enable_utc=True,
        task_default_queue=config.name,

        # Task execution settings
        task_acks_late=True,  # Acknowledge after task completes
        task_reject_on_worker_lost=True,  # Reject task if worker dies
        task_time_limit=300,  # 5 minutes max per task
        task_soft_time_limit=240,

        # Worker settings
        worker_prefetch_multiplier=1,
        worker_concurrency=config.concurrency,

        # Result backend settings
        result_expires=3600,
    )

    app.conf.beat_schedule = {
        "cleanup-job-history": {
            "task": CLEANUP_TASK_NAME,
            "schedule": timedelta(seconds=config.cleanup_interval_seconds),
            "options": {"queue": config.name},
        },
    }
    return app


queue_config = settings.queue_config
celery_app = create_celery_app(queue_config)


@worker_init.connect
def _init_worker_observability(**kwargs):
    init_observability()

