"""Queue client used by the API to hand workout mutations to the worker."""
import logging
import time
import uuid
from datetime import datetime
from typing import Any

from celery import Celery

from src.config.settings import QueueConfig
from src.core.redis import JobHistory
from src.domains.queue.messages import (
    EnqueuedJob,
    ExerciseDeleteData,
    ExerciseDeleteMessage,
    ExerciseSaveData,
    ExerciseSaveMessage,
    MessageType,
    PhaseActivateData,
    PhaseActivateMessage,
    PhaseCreateData,
    PhaseCreateMessage,
    PhaseDeleteData,
    PhaseDeleteMessage,
    PhaseDuplicateData,
    PhaseDuplicateMessage,
    PhaseUpdateData,
    PhaseUpdateMessage,
    PlanCreateData,
    PlanCreateMessage,
    QueueMessageBase,
    SessionCreateData,
    SessionCreateMessage,
    SessionDeleteData,
    SessionDeleteMessage,
    SessionDuplicateData,
    SessionDuplicateMessage,
    SessionUpdateData,
    SessionUpdateMessage,
    serialize_queue_message,
)
from src.domains.workouts.schemas import (
    ExerciseItem,
    PhaseChanges,
    PhaseItem,
    SessionChanges,
    SessionItem,
)

logger = logging.getLogger(__name__)

PROCESS_TASK_NAME = "src.tasks.workout_queue.process_queue_message"
PLANNER_SOURCE = "workout-planner"
PLAN_CREATE_PRIORITY = 8


class QueueClient:
    """Enqueues typed messages on the Celery broker.

    Created by the process entrypoint and injected where needed.
    """

    def __init__(self, celery_app: Celery, config: QueueConfig, history: JobHistory | None = None):
        self.celery_app = celery_app
        self.config = config
        self.history = history or JobHistory(
            config.name,
            keep_completed=config.keep_completed,
            keep_failed=config.keep_failed,
        )

    async def enqueue(
        self,
        message: QueueMessageBase,
        priority: int | None = None,
        delay_seconds: float | None = None,
    ) -> EnqueuedJob:
        """Serialize and enqueue a message; returns the job id."""
        job_id = str(uuid.uuid4())
        payload = serialize_queue_message(message)
        options: dict[str, Any] = {"task_id": job_id, "queue": self.config.name}
        if priority is not None:
            options["priority"] = priority
        if delay_seconds:
            options["countdown"] = delay_seconds

        await self.history.mark_waiting(job_id, time.time() + (delay_seconds or 0))
        try:
            self.celery_app.send_task(PROCESS_TASK_NAME, args=[payload], **options)
        except Exception as e:
            await self.history.mark_failed(job_id, payload["messageType"], f"Enqueue failed: {e}")
            raise

        logger.info("Enqueued %s job %s", payload["messageType"], job_id)
        return EnqueuedJob(job_id=job_id, message_type=MessageType(payload["messageType"]))

    def close(self) -> None:
        """Release broker connections."""
        self.celery_app.close()

    # Planner helpers

    @staticmethod
    def _planner_metadata(**extra: Any) -> dict[str, Any]:
        return {"source": PLANNER_SOURCE, **extra}

    async def queue_plan_create(
        self,
        plan_id: uuid.UUID,
        client_id: str,
        trainer_id: str,
        plan_name: str = "Workout Plan",
        user_id: str | None = None,
    ) -> EnqueuedJob:
        message = PlanCreateMessage(
            user_id=user_id,
            metadata=self._planner_metadata(),
            data=PlanCreateData(
                plan_id=plan_id,
                client_id=client_id,
                trainer_id=trainer_id,
                plan_name=plan_name,
            ),
        )
        return await self.enqueue(message, priority=PLAN_CREATE_PRIORITY)

    async def queue_phase_create(
        self,
        plan_id: uuid.UUID,
        phase: PhaseItem,
        client_id: str | None = None,
        last_known_updated_at: datetime | None = None,
        user_id: str | None = None,
    ) -> EnqueuedJob:
        data = PhaseCreateData(plan_id=plan_id, client_id=client_id, phase=phase)
        if last_known_updated_at is not None:
            data.last_known_updated_at = last_known_updated_at
        message = PhaseCreateMessage(user_id=user_id, metadata=self._planner_metadata(), data=data)
        return await self.enqueue(message)

    async def queue_phase_update(
        self,
        plan_id: uuid.UUID,
        phase_id: uuid.UUID,
        updates: PhaseChanges,
        last_known_updated_at: datetime | None = None,
        user_id: str | None = None,
    ) -> EnqueuedJob:
        data = PhaseUpdateData(plan_id=plan_id, phase_id=phase_id, updates=updates)
        if last_known_updated_at is not None:
            data.last_known_updated_at = last_known_updated_at
        message = PhaseUpdateMessage(user_id=user_id, metadata=self._planner_metadata(), data=data)
        return await self.enqueue(message)

    async def queue_phase_delete(
        self,
        plan_id: uuid.UUID,
        phase_id: uuid.UUID,
        last_known_updated_at: datetime | None = None,
        user_id: str | None = None,
    ) -> EnqueuedJob:
        data = PhaseDeleteData(plan_id=plan_id, phase_id=phase_id)
        if last_known_updated_at is not None:
            data.last_known_updated_at = last_known_updated_at
        message = PhaseDeleteMessage(user_id=user_id, metadata=self._planner_metadata(), data=data)
        return await self.enqueue(message)

    async def queue_phase_duplicate(
        self,
        plan_id: uuid.UUID,
        original_phase_id: uuid.UUID,
        new_phase: PhaseItem,
        last_known_updated_at: datetime | None = None,
        user_id: str | None = None,
    ) -> EnqueuedJob:
        data = PhaseDuplicateData(plan_id=plan_id, original_phase_id=original_phase_id, new_phase=new_phase)
        if last_known_updated_at is not None:
            data.last_known_updated_at = last_known_updated_at
        message = PhaseDuplicateMessage(user_id=user_id, metadata=self._planner_metadata(), data=data)
        return await self.enqueue(message)

    async def queue_phase_activate(
        self,
        plan_id: uuid.UUID,
        phase_id: uuid.UUID,
        is_active: bool = True,
        last_known_updated_at: datetime | None = None,
        user_id: str | None = None,
    ) -> EnqueuedJob:
        data = PhaseActivateData(plan_id=plan_id, phase_id=phase_id, is_active=is_active)
        if last_known_updated_at is not None:
            data.last_known_updated_at = last_known_updated_at
        message = PhaseActivateMessage(user_id=user_id, metadata=self._planner_metadata(), data=data)
        return await self.enqueue(message)

    async def queue_session_create(
        self,
        plan_id: uuid.UUID,
        phase_id: uuid.UUID,
        session: SessionItem,
        last_known_updated_at: datetime | None = None,
        user_id: str | None = None,
    ) -> EnqueuedJob:
        data = SessionCreateData(plan_id=plan_id, phase_id=phase_id, session=session)
        if last_known_updated_at is not None:
            data.last_known_updated_at = last_known_updated_at
        message = SessionCreateMessage(user_id=user_id, metadata=self._planner_metadata(), data=data)
        return await self.enqueue(message)

    async def queue_session_update(
        self,
        plan_id: uuid.UUID,
        session_id: uuid.UUID,
        updates: SessionChanges,
        last_known_updated_at: datetime | None = None,
        user_id: str | None = None,
    ) -> EnqueuedJob:
        data = SessionUpdateData(plan_id=plan_id, session_id=session_id, updates=updates)
        if last_known_updated_at is not None:
            data.last_known_updated_at = last_known_updated_at
        message = SessionUpdateMessage(user_id=user_id, metadata=self._planner_metadata(), data=data)
        return await self.enqueue(message)

    async def queue_session_delete(
        self,
        plan_id: uuid.UUID,
        session_id: uuid.UUID,
        last_known_updated_at: datetime | None = None,
        user_id: str | None = None,
    ) -> EnqueuedJob:
        data = SessionDeleteData(plan_id=plan_id, session_id=session_id)
        if last_known_updated_at is not None:
            data.last_known_updated_at = last_known_updated_at
        message = SessionDeleteMessage(user_id=user_id, metadata=self._planner_metadata(), data=data)
        return await self.enqueue(message)

    async def queue_session_duplicate(
        self,
        plan_id: uuid.UUID,
        phase_id: uuid.UUID,
        original_session_id: uuid.UUID,
        new_session: SessionItem,
        last_known_updated_at: datetime | None = None,
        user_id: str | None = None,
    ) -> EnqueuedJob:
        data = SessionDuplicateData(
            plan_id=plan_id,
            phase_id=phase_id,
            original_session_id=original_session_id,
            new_session=new_session,
        )
        if last_known_updated_at is not None:
            data.last_known_updated_at = last_known_updated_at
        message = SessionDuplicateMessage(user_id=user_id, metadata=self._planner_metadata(), data=data)
        return await self.enqueue(message)

    async def queue_exercise_save(
        self,
        plan_id: uuid.UUID,
        session_id: uuid.UUID,
        exercise: ExerciseItem,
        is_new: bool,
        last_known_updated_at: datetime | None = None,
        user_id: str | None = None,
    ) -> EnqueuedJob:
        data = ExerciseSaveData(plan_id=plan_id, session_id=session_id, exercise=exercise, is_new=is_new)
        if last_known_updated_at is not None:
            data.last_known_updated_at = last_known_updated_at
        message = ExerciseSaveMessage(user_id=user_id, metadata=self._planner_metadata(), data=data)
        return await self.enqueue(message)

    async def queue_exercise_delete(
        self,
        plan_id: uuid.UUID,
        session_id: uuid.UUID,
        plan_exercise_id: uuid.UUID,
        last_known_updated_at: datetime | None = None,
        user_id: str | None = None,
    ) -> EnqueuedJob:
        data = ExerciseDeleteData(plan_id=plan_id, session_id=session_id, plan_exercise_id=plan_exercise_id)
        if last_known_updated_at is not None:
            data.last_known_updated_at = last_known_updated_at
        message = ExerciseDeleteMessage(user_id=user_id, metadata=self._planner_metadata(), data=data)
        return await self.enqueue(message)
