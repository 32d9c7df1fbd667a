"""Queue endpoints: enqueue messages and inspect queue health."""
import logging
from typing import Annotated

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status

from src.domains.queue.client import QueueClient
from src.domains.queue.messages import EnqueuedJob, QueueMessage
from src.domains.queue.monitoring import QueueHealth, QueueMonitor, QueueStats

logger = logging.getLogger(__name__)

router = APIRouter()


def get_queue_client(request: Request) -> QueueClient:
    """Queue client created at startup."""
    client = getattr(request.app.state, "queue_client", None)
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Queue is not available",
        )
    return client


@router.post("/messages", response_model=EnqueuedJob, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_message(
    message: Annotated[QueueMessage, Body(discriminator="message_type")],
    client: Annotated[QueueClient, Depends(get_queue_client)],
    priority: int | None = None,
    delay_seconds: float | None = None,
) -> EnqueuedJob:
    """Enqueue a message for the worker."""
    try:
        return await client.enqueue(message, priority=priority, delay_seconds=delay_seconds)
    except Exception as e:
        logger.error("Failed to enqueue %s: %s", message.message_type, e)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to enqueue message",
        )


@router.get("/stats", response_model=QueueStats)
async def get_queue_stats(
    client: Annotated[QueueClient, Depends(get_queue_client)],
) -> QueueStats:
    """Job counts per state."""
    return await QueueMonitor(client.history).get_stats()


@router.get("/health", response_model=QueueHealth)
async def get_queue_health(
    client: Annotated[QueueClient, Depends(get_queue_client)],
) -> QueueHealth:
    """Queue health with the issues that drove it."""
    return await QueueMonitor(client.history).get_queue_health()
