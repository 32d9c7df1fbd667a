"""Worker-side processing of queued messages.

Workout messages are re-expressed as plan change-sets and applied through
``PlanSyncService``. A message carrying ``lastKnownUpdatedAt`` is applied with
the version check; one without it is applied unchecked, so concurrent jobs for
the same plan may interleave.
"""
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.domains.queue.messages import (
    DataSyncMessage,
    EmailMessage,
    ExerciseDeleteMessage,
    ExerciseSaveMessage,
    MessageType,
    NotificationMessage,
    PhaseActivateMessage,
    PhaseCreateMessage,
    PhaseDeleteMessage,
    PhaseDuplicateMessage,
    PhaseUpdateMessage,
    PlanCreateMessage,
    PlanFullSaveMessage,
    QueueJobResult,
    QueueMessage,
    SessionCreateMessage,
    SessionDeleteMessage,
    SessionDuplicateMessage,
    SessionUpdateMessage,
    TestMessage,
    UserActionMessage,
    parse_queue_message,
)
from src.domains.workouts.diff import flatten_plan_tree, flatten_session
from src.domains.workouts.exceptions import SyncErrorCode
from src.domains.workouts.schemas import (
    ConcurrencyMode,
    ExerciseChanges,
    ExerciseDiff,
    ExerciseRow,
    ExerciseUpdate,
    PhaseDiff,
    PhaseUpdate,
    PlanChanges,
    PlanCreate,
    PlanSyncResult,
    SessionDiff,
    SessionUpdate,
)
from src.domains.workouts.sync_service import PlanSyncService, format_version_stamp

logger = logging.getLogger(__name__)

DEPRECATED_FULL_SAVE_MESSAGE = (
    "Full plan updates are deprecated. Use individual phase operations for better efficiency."
)

# Retried on every message kind
ALWAYS_RETRYABLE = frozenset({SyncErrorCode.TRANSIENT})

# Creations may arrive before the plan or parent they depend on
DEPENDENT_CREATE_RETRYABLE = frozenset({SyncErrorCode.PLAN_NOT_FOUND, SyncErrorCode.CONFLICT})
CHILD_CREATE_RETRYABLE = frozenset({SyncErrorCode.PLAN_NOT_FOUND, SyncErrorCode.NOT_FOUND})


class RetryableJobError(Exception):
    """Raised so the queue re-delivers the message after backoff."""

    def __init__(self, code: SyncErrorCode, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def concurrency_mode(last_known_updated_at: datetime | None) -> ConcurrencyMode:
    if last_known_updated_at is None:
        return ConcurrencyMode.UNCHECKED
    return ConcurrencyMode.CHECKED


class QueueMessageProcessor:
    """Dispatches a typed message to its processor."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.plans = PlanSyncService(db)
        self._handlers: dict[MessageType, Callable[[Any], Awaitable[QueueJobResult]]] = {
            MessageType.WORKOUT_PLAN_CREATE: self._plan_create,
            MessageType.WORKOUT_PHASE_CREATE: self._phase_create,
            MessageType.WORKOUT_PHASE_UPDATE: self._phase_update,
            MessageType.WORKOUT_PHASE_DELETE: self._phase_delete,
            MessageType.WORKOUT_PHASE_DUPLICATE: self._phase_duplicate,
            MessageType.WORKOUT_PHASE_ACTIVATE: self._phase_activate,
            MessageType.WORKOUT_SESSION_CREATE: self._session_create,
            MessageType.WORKOUT_SESSION_UPDATE: self._session_update,
            MessageType.WORKOUT_SESSION_DELETE: self._session_delete,
            MessageType.WORKOUT_SESSION_DUPLICATE: self._session_duplicate,
            MessageType.WORKOUT_EXERCISE_SAVE: self._exercise_save,
            MessageType.WORKOUT_EXERCISE_DELETE: self._exercise_delete,
            MessageType.WORKOUT_PLAN_FULL_SAVE: self._plan_full_save,
            MessageType.USER_ACTION: self._user_action,
            MessageType.NOTIFICATION: self._notification,
            MessageType.EMAIL: self._email,
            MessageType.DATA_SYNC: self._data_sync,
            MessageType.TEST: self._test,
        }

    async def process(self, message: QueueMessage) -> QueueJobResult:
        """Process one message.

        Raises:
            RetryableJobError: the failure is classified as retryable.
        """
        message_type = MessageType(message.message_type)
        logger.info("Processing %s message from user %s", message_type.value, message.user_id)
        return await self._handlers[message_type](message)

    # Outcome mapping

    def _outcome(
        self,
        result: PlanSyncResult,
        success_message: str,
        retry_on: frozenset[SyncErrorCode] = frozenset(),
        data: dict[str, Any] | None = None,
    ) -> QueueJobResult:
        if result.success:
            payload = {"planId": str(result.plan_id)}
            if result.updated_at is not None:
                payload["updatedAt"] = format_version_stamp(result.updated_at)
            payload.update(data or {})
            return QueueJobResult(success=True, message=success_message, data=payload)

        if result.error_code in retry_on | ALWAYS_RETRYABLE:
            raise RetryableJobError(result.error_code, result.error or "Retryable failure")

        return QueueJobResult(
            success=False,
            message="Workout operation failed",
            error=result.error,
            error_code=result.error_code,
            data={"planId": str(result.plan_id)} if result.plan_id else None,
        )

    async def _apply(
        self,
        plan_id,
        changes: PlanChanges,
        last_known_updated_at: datetime | None,
        message_type: MessageType,
        actor_id: str | None = None,
    ) -> PlanSyncResult:
        mode = concurrency_mode(last_known_updated_at)
        if mode == ConcurrencyMode.UNCHECKED:
            logger.info("Applying %s to plan %s without version check", message_type.value, plan_id)
        return await self.plans.apply_changes(
            plan_id,
            changes,
            last_known_updated_at=last_known_updated_at,
            mode=mode,
            actor_id=actor_id,
        )

    @staticmethod
    def _invalid(message: str) -> QueueJobResult:
        return QueueJobResult(
            success=False,
            message="Invalid message",
            error=message,
            error_code=SyncErrorCode.VALIDATION,
        )

    # Plans

    async def _plan_create(self, message: PlanCreateMessage) -> QueueJobResult:
        data = message.data
        result = await self.plans.create_plan(
            PlanCreate(
                plan_id=data.plan_id,
                plan_name=data.plan_name,
                client_id=data.client_id,
                trainer_id=data.trainer_id,
                is_active=data.is_active,
            ),
            actor_id=message.user_id,
            allow_existing=True,
        )
        return self._outcome(result, "Plan created")

    async def _plan_full_save(self, message: PlanFullSaveMessage) -> QueueJobResult:
        data = message.data
        if data.plan_id is not None and data.last_known_updated_at is not None:
            logger.warning("Rejected deprecated full save for plan %s", data.plan_id)
            return QueueJobResult(
                success=False,
                message="Full plan save rejected",
                error=DEPRECATED_FULL_SAVE_MESSAGE,
                error_code=SyncErrorCode.DEPRECATED,
                data={"planId": str(data.plan_id)},
            )

        result = await self.plans.create_plan(
            PlanCreate(
                plan_id=data.plan_id,
                plan_name=data.plan_name or "Workout Plan",
                client_id=data.client_id,
                trainer_id=data.trainer_id or message.user_id,
                phases=data.phases,
            ),
            actor_id=message.user_id,
        )
        return self._outcome(result, "Plan created")

    # Phases

    async def _phase_create(self, message: PhaseCreateMessage) -> QueueJobResult:
        data = message.data
        if data.phase.order_number is None:
            return self._invalid("Phase orderNumber is required")

        phases, sessions, exercises = flatten_plan_tree([data.phase])
        changes = PlanChanges(
            phases=PhaseDiff(added=phases),
            sessions=SessionDiff(added=sessions),
            exercises=ExerciseDiff(added=exercises),
        )
        result = await self._apply(
            data.plan_id, changes, data.last_known_updated_at, MessageType.WORKOUT_PHASE_CREATE, message.user_id
        )
        return self._outcome(
            result, "Phase created", retry_on=DEPENDENT_CREATE_RETRYABLE, data={"phaseId": str(data.phase.id)}
        )

    async def _phase_update(self, message: PhaseUpdateMessage) -> QueueJobResult:
        data = message.data
        changes = PlanChanges(phases=PhaseDiff(updated=[PhaseUpdate(id=data.phase_id, changes=data.updates)]))
        result = await self._apply(data.plan_id, changes, data.last_known_updated_at, MessageType.WORKOUT_PHASE_UPDATE)
        return self._outcome(result, "Phase updated", data={"phaseId": str(data.phase_id)})

    async def _phase_delete(self, message: PhaseDeleteMessage) -> QueueJobResult:
        data = message.data
        changes = PlanChanges(phases=PhaseDiff(deleted=[data.phase_id]))
        result = await self._apply(data.plan_id, changes, data.last_known_updated_at, MessageType.WORKOUT_PHASE_DELETE)
        return self._outcome(result, "Phase deleted", data={"phaseId": str(data.phase_id)})

    async def _phase_duplicate(self, message: PhaseDuplicateMessage) -> QueueJobResult:
        data = message.data
        if data.new_phase.order_number is None:
            return self._invalid("Phase orderNumber is required")

        phases, sessions, exercises = flatten_plan_tree([data.new_phase])
        changes = PlanChanges(
            phases=PhaseDiff(added=phases),
            sessions=SessionDiff(added=sessions),
            exercises=ExerciseDiff(added=exercises),
        )
        result = await self._apply(
            data.plan_id, changes, data.last_known_updated_at, MessageType.WORKOUT_PHASE_DUPLICATE, message.user_id
        )
        return self._outcome(
            result,
            "Phase duplicated",
            data={"originalPhaseId": str(data.original_phase_id), "phaseId": str(data.new_phase.id)},
        )

    async def _phase_activate(self, message: PhaseActivateMessage) -> QueueJobResult:
        data = message.data
        mode = concurrency_mode(data.last_known_updated_at)
        result = await self.plans.set_phase_activation(
            data.plan_id,
            data.phase_id,
            data.is_active,
            last_known_updated_at=data.last_known_updated_at,
            mode=mode,
        )
        return self._outcome(
            result,
            "Phase activation updated",
            data={"phaseId": str(data.phase_id), "isActive": data.is_active},
        )

    # Sessions

    async def _session_create(self, message: SessionCreateMessage) -> QueueJobResult:
        data = message.data
        if data.session.order_number is None:
            return self._invalid("Session orderNumber is required")

        session, exercises = flatten_session(data.phase_id, data.session)
        changes = PlanChanges(
            sessions=SessionDiff(added=[session]),
            exercises=ExerciseDiff(added=exercises),
        )
        result = await self._apply(
            data.plan_id, changes, data.last_known_updated_at, MessageType.WORKOUT_SESSION_CREATE, message.user_id
        )
        return self._outcome(
            result, "Session created", retry_on=CHILD_CREATE_RETRYABLE, data={"sessionId": str(data.session.id)}
        )

    async def _session_update(self, message: SessionUpdateMessage) -> QueueJobResult:
        data = message.data
        changes = PlanChanges(sessions=SessionDiff(updated=[SessionUpdate(id=data.session_id, changes=data.updates)]))
        result = await self._apply(data.plan_id, changes, data.last_known_updated_at, MessageType.WORKOUT_SESSION_UPDATE)
        return self._outcome(result, "Session updated", data={"sessionId": str(data.session_id)})

    async def _session_delete(self, message: SessionDeleteMessage) -> QueueJobResult:
        data = message.data
        changes = PlanChanges(sessions=SessionDiff(deleted=[data.session_id]))
        result = await self._apply(data.plan_id, changes, data.last_known_updated_at, MessageType.WORKOUT_SESSION_DELETE)
        return self._outcome(result, "Session deleted", data={"sessionId": str(data.session_id)})

    async def _session_duplicate(self, message: SessionDuplicateMessage) -> QueueJobResult:
        data = message.data
        if data.new_session.order_number is None:
            return self._invalid("Session orderNumber is required")

        session, exercises = flatten_session(data.phase_id, data.new_session)
        changes = PlanChanges(
            sessions=SessionDiff(added=[session]),
            exercises=ExerciseDiff(added=exercises),
        )
        result = await self._apply(
            data.plan_id, changes, data.last_known_updated_at, MessageType.WORKOUT_SESSION_DUPLICATE, message.user_id
        )
        return self._outcome(
            result,
            "Session duplicated",
            data={"originalSessionId": str(data.original_session_id), "sessionId": str(data.new_session.id)},
        )

    # Exercises

    async def _exercise_save(self, message: ExerciseSaveMessage) -> QueueJobResult:
        data = message.data
        exercise = data.exercise

        if data.is_new:
            row = ExerciseRow(session_id=data.session_id, **exercise.model_dump())
            changes = PlanChanges(exercises=ExerciseDiff(added=[row]))
            retry_on = CHILD_CREATE_RETRYABLE
        else:
            fields = exercise.model_dump(exclude={"id"})
            if fields["exercise_id"] is None:
                del fields["exercise_id"]  # resolved from the description
            changes = PlanChanges(
                exercises=ExerciseDiff(
                    updated=[
                        ExerciseUpdate(
                            id=exercise.id,
                            changes=ExerciseChanges(session_id=data.session_id, **fields),
                        )
                    ]
                )
            )
            retry_on = frozenset()

        result = await self._apply(
            data.plan_id, changes, data.last_known_updated_at, MessageType.WORKOUT_EXERCISE_SAVE, message.user_id
        )
        return self._outcome(
            result,
            "Exercise created" if data.is_new else "Exercise updated",
            retry_on=retry_on,
            data={"planExerciseId": str(exercise.id), "sessionId": str(data.session_id)},
        )

    async def _exercise_delete(self, message: ExerciseDeleteMessage) -> QueueJobResult:
        data = message.data
        changes = PlanChanges(exercises=ExerciseDiff(deleted=[data.plan_exercise_id]))
        result = await self._apply(data.plan_id, changes, data.last_known_updated_at, MessageType.WORKOUT_EXERCISE_DELETE)
        return self._outcome(result, "Exercise deleted", data={"planExerciseId": str(data.plan_exercise_id)})

    # General

    async def _user_action(self, message: UserActionMessage) -> QueueJobResult:
        data = message.data
        logger.info("User action %s on %s %s", data.action, data.entity_type, data.entity_id)
        return QueueJobResult(
            success=True,
            message="User action processed",
            data={"action": data.action, "entityType": data.entity_type, "entityId": data.entity_id},
        )

    async def _notification(self, message: NotificationMessage) -> QueueJobResult:
        data = message.data
        logger.info("Notification for %s via %s: %s", data.recipient_id, data.channel, data.title)
        return QueueJobResult(
            success=True,
            message="Notification processed",
            data={"recipientId": data.recipient_id, "channel": data.channel},
        )

    async def _email(self, message: EmailMessage) -> QueueJobResult:
        data = message.data
        logger.info("Email to %s: %s", data.to, data.subject)
        return QueueJobResult(
            success=True,
            message="Email processed",
            data={"to": data.to, "template": data.template},
        )

    async def _data_sync(self, message: DataSyncMessage) -> QueueJobResult:
        data = message.data
        logger.info("Data sync (%s) of %d %s records", data.direction, len(data.entity_ids), data.entity_type)
        return QueueJobResult(
            success=True,
            message="Data sync processed",
            data={"entityType": data.entity_type, "count": len(data.entity_ids), "direction": data.direction},
        )

    async def _test(self, message: TestMessage) -> QueueJobResult:
        if message.data.should_fail:
            return QueueJobResult(success=False, message="Test job failed", error="Test failure requested")
        return QueueJobResult(success=True, message="Test job processed", data={"echo": message.data.payload})


async def handle_queue_payload(
    payload: dict[str, Any],
    session_factory: async_sessionmaker[AsyncSession],
) -> QueueJobResult:
    """Parse a wire payload and process it in its own database session.

    Malformed payloads are terminal failures.

    Raises:
        RetryableJobError: the failure is classified as retryable.
    """
    try:
        message = parse_queue_message(payload)
    except ValidationError as e:
        logger.error("Rejected malformed %s message: %s", payload.get("messageType"), e)
        return QueueJobResult(
            success=False,
            message="Invalid message",
            error=f"Malformed queue message: {e.error_count()} validation error(s)",
            error_code=SyncErrorCode.VALIDATION,
        )

    async with session_factory() as db:
        return await QueueMessageProcessor(db).process(message)
