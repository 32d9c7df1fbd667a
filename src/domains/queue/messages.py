"""Queue message contracts shared by the enqueuing API and the worker.

Wire format (camelCase JSON)::

    {"messageType": "...", "timestamp": "<ISO-8601>", "userId": "...",
     "metadata": {...}, "data": {...}}
"""
import enum
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import Field, TypeAdapter

from src.core.schemas import CamelModel
from src.domains.workouts.exceptions import SyncErrorCode
from src.domains.workouts.schemas import (
    ExerciseItem,
    PhaseChanges,
    PhaseItem,
    SessionChanges,
    SessionItem,
)


class MessageType(str, enum.Enum):
    """Kinds of queued work."""

    WORKOUT_PLAN_CREATE = "WORKOUT_PLAN_CREATE"
    WORKOUT_PHASE_CREATE = "WORKOUT_PHASE_CREATE"
    WORKOUT_PHASE_UPDATE = "WORKOUT_PHASE_UPDATE"
    WORKOUT_PHASE_DELETE = "WORKOUT_PHASE_DELETE"
    WORKOUT_PHASE_DUPLICATE = "WORKOUT_PHASE_DUPLICATE"
    WORKOUT_PHASE_ACTIVATE = "WORKOUT_PHASE_ACTIVATE"
    WORKOUT_SESSION_CREATE = "WORKOUT_SESSION_CREATE"
    WORKOUT_SESSION_UPDATE = "WORKOUT_SESSION_UPDATE"
    WORKOUT_SESSION_DELETE = "WORKOUT_SESSION_DELETE"
    WORKOUT_SESSION_DUPLICATE = "WORKOUT_SESSION_DUPLICATE"
    WORKOUT_EXERCISE_SAVE = "WORKOUT_EXERCISE_SAVE"
    WORKOUT_EXERCISE_DELETE = "WORKOUT_EXERCISE_DELETE"
    WORKOUT_PLAN_FULL_SAVE = "WORKOUT_PLAN_FULL_SAVE"  # deprecated for existing plans
    USER_ACTION = "USER_ACTION"
    NOTIFICATION = "NOTIFICATION"
    EMAIL = "EMAIL"
    DATA_SYNC = "DATA_SYNC"
    TEST = "TEST"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueueMessageBase(CamelModel):
    timestamp: datetime = Field(default_factory=_utcnow)
    user_id: str | None = None
    metadata: dict[str, str | int | float | bool] | None = None


# Workout payloads. ``last_known_updated_at`` opts the job into the version check.

class PlanCreateData(CamelModel):
    plan_id: UUID
    client_id: str
    trainer_id: str
    plan_name: str = Field(default="Workout Plan", min_length=1, max_length=255)
    is_active: bool = True


class PhaseCreateData(CamelModel):
    plan_id: UUID
    client_id: str | None = None
    phase: PhaseItem
    last_known_updated_at: datetime | None = None


class PhaseUpdateData(CamelModel):
    plan_id: UUID
    phase_id: UUID
    updates: PhaseChanges
    last_known_updated_at: datetime | None = None


class PhaseDeleteData(CamelModel):
    plan_id: UUID
    phase_id: UUID
    last_known_updated_at: datetime | None = None


class PhaseDuplicateData(CamelModel):
    plan_id: UUID
    original_phase_id: UUID
    new_phase: PhaseItem
    last_known_updated_at: datetime | None = None


class PhaseActivateData(CamelModel):
    plan_id: UUID
    phase_id: UUID
    is_active: bool
    last_known_updated_at: datetime | None = None


class SessionCreateData(CamelModel):
    plan_id: UUID
    phase_id: UUID
    session: SessionItem
    last_known_updated_at: datetime | None = None


class SessionUpdateData(CamelModel):
    plan_id: UUID
    session_id: UUID
    updates: SessionChanges
    last_known_updated_at: datetime | None = None


class SessionDeleteData(CamelModel):
    plan_id: UUID
    session_id: UUID
    last_known_updated_at: datetime | None = None


class SessionDuplicateData(CamelModel):
    plan_id: UUID
    phase_id: UUID
    original_session_id: UUID
    new_session: SessionItem
    last_known_updated_at: datetime | None = None


class ExerciseSaveData(CamelModel):
    plan_id: UUID
    session_id: UUID
    phase_id: UUID | None = None
    client_id: str | None = None
    exercise: ExerciseItem
    is_new: bool
    last_known_updated_at: datetime | None = None


class ExerciseDeleteData(CamelModel):
    plan_id: UUID
    session_id: UUID
    plan_exercise_id: UUID
    last_known_updated_at: datetime | None = None


class PlanFullSaveData(CamelModel):
    plan_id: UUID | None = None
    client_id: str
    trainer_id: str | None = None
    plan_name: str | None = Field(default=None, max_length=255)
    phases: list[PhaseItem] = Field(default_factory=list)
    last_known_updated_at: datetime | None = None


# General payloads

class UserActionData(CamelModel):
    action: str
    entity_type: str | None = None
    entity_id: str | None = None
    details: dict[str, Any] | None = None


class NotificationData(CamelModel):
    recipient_id: str
    title: str
    body: str
    channel: Literal["in_app", "push", "email"] = "in_app"


class EmailData(CamelModel):
    to: str
    subject: str
    template: str | None = None
    variables: dict[str, Any] | None = None


class DataSyncData(CamelModel):
    entity_type: str
    entity_ids: list[str] = Field(default_factory=list)
    direction: Literal["push", "pull"] = "push"


class TestData(CamelModel):
    __test__ = False  # not a pytest class

    payload: dict[str, Any] | None = None
    should_fail: bool = False


# Messages

class PlanCreateMessage(QueueMessageBase):
    message_type: Literal["WORKOUT_PLAN_CREATE"] = "WORKOUT_PLAN_CREATE"
    data: PlanCreateData


class PhaseCreateMessage(QueueMessageBase):
    message_type: Literal["WORKOUT_PHASE_CREATE"] = "WORKOUT_PHASE_CREATE"
    data: PhaseCreateData


class PhaseUpdateMessage(QueueMessageBase):
    message_type: Literal["WORKOUT_PHASE_UPDATE"] = "WORKOUT_PHASE_UPDATE"
    data: PhaseUpdateData


class PhaseDeleteMessage(QueueMessageBase):
    message_type: Literal["WORKOUT_PHASE_DELETE"] = "WORKOUT_PHASE_DELETE"
    data: PhaseDeleteData


class PhaseDuplicateMessage(QueueMessageBase):
    message_type: Literal["WORKOUT_PHASE_DUPLICATE"] = "WORKOUT_PHASE_DUPLICATE"
    data: PhaseDuplicateData


class PhaseActivateMessage(QueueMessageBase):
    message_type: Literal["WORKOUT_PHASE_ACTIVATE"] = "WORKOUT_PHASE_ACTIVATE"
    data: PhaseActivateData


class SessionCreateMessage(QueueMessageBase):
    message_type: Literal["WORKOUT_SESSION_CREATE"] = "WORKOUT_SESSION_CREATE"
    data: SessionCreateData


class SessionUpdateMessage(QueueMessageBase):
    message_type: Literal["WORKOUT_SESSION_UPDATE"] = "WORKOUT_SESSION_UPDATE"
    data: SessionUpdateData


class SessionDeleteMessage(QueueMessageBase):
    message_type: Literal["WORKOUT_SESSION_DELETE"] = "WORKOUT_SESSION_DELETE"
    data: SessionDeleteData


class SessionDuplicateMessage(QueueMessageBase):
    message_type: Literal["WORKOUT_SESSION_DUPLICATE"] = "WORKOUT_SESSION_DUPLICATE"
    data: SessionDuplicateData


class ExerciseSaveMessage(QueueMessageBase):
    message_type: Literal["WORKOUT_EXERCISE_SAVE"] = "WORKOUT_EXERCISE_SAVE"
    data: ExerciseSaveData


class ExerciseDeleteMessage(QueueMessageBase):
    message_type: Literal["WORKOUT_EXERCISE_DELETE"] = "WORKOUT_EXERCISE_DELETE"
    data: ExerciseDeleteData


class PlanFullSaveMessage(QueueMessageBase):
    message_type: Literal["WORKOUT_PLAN_FULL_SAVE"] = "WORKOUT_PLAN_FULL_SAVE"
    data: PlanFullSaveData


class UserActionMessage(QueueMessageBase):
    message_type: Literal["USER_ACTION"] = "USER_ACTION"
    data: UserActionData


class NotificationMessage(QueueMessageBase):
    message_type: Literal["NOTIFICATION"] = "NOTIFICATION"
    data: NotificationData


class EmailMessage(QueueMessageBase):
    message_type: Literal["EMAIL"] = "EMAIL"
    data: EmailData


class DataSyncMessage(QueueMessageBase):
    message_type: Literal["DATA_SYNC"] = "DATA_SYNC"
    data: DataSyncData


class TestMessage(QueueMessageBase):
    __test__ = False  # not a pytest class

    message_type: Literal["TEST"] = "TEST"
    data: TestData = Field(default_factory=TestData)


QueueMessage = Annotated[
    Union[
        PlanCreateMessage,
        PhaseCreateMessage,
        PhaseUpdateMessage,
        PhaseDeleteMessage,
        PhaseDuplicateMessage,
        PhaseActivateMessage,
        SessionCreateMessage,
        SessionUpdateMessage,
        SessionDeleteMessage,
        SessionDuplicateMessage,
        ExerciseSaveMessage,
        ExerciseDeleteMessage,
        PlanFullSaveMessage,
        UserActionMessage,
        NotificationMessage,
        EmailMessage,
        DataSyncMessage,
        TestMessage,
    ],
    Field(discriminator="message_type"),
]

queue_message_adapter: TypeAdapter[QueueMessage] = TypeAdapter(QueueMessage)


def parse_queue_message(payload: dict[str, Any]) -> QueueMessage:
    """Validate a wire payload into its typed message."""
    return queue_message_adapter.validate_python(payload)


def serialize_queue_message(message: QueueMessageBase) -> dict[str, Any]:
    """Wire form of a message: camelCase JSON-compatible dict.

    Unset fields are left out so partial updates keep their shape; an explicit
    null still clears a field.
    """
    payload = message.model_dump(mode="json", by_alias=True, exclude_unset=True)
    payload["messageType"] = message.message_type
    payload["timestamp"] = message.timestamp.isoformat()
    return payload


class QueueJobResult(CamelModel):
    """Outcome every processor returns."""

    success: bool
    message: str
    data: dict[str, Any] | None = None
    error: str | None = None
    error_code: SyncErrorCode | None = None
    processed_at: datetime = Field(default_factory=_utcnow)


class EnqueuedJob(CamelModel):
    job_id: str
    message_type: MessageType
