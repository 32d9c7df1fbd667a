"""Workout plan schemas for request/response validation."""
import enum
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from src.core.schemas import CamelModel, OptionalInt, OptionalUUID
from src.domains.workouts.exceptions import SyncErrorCode


class ConcurrencyMode(str, enum.Enum):
    """Whether an apply call compares the caller's version stamp."""

    CHECKED = "checked"
    UNCHECKED = "unchecked"


# Plan tree (client-side shape)

class ExerciseItem(CamelModel):
    """Plan exercise as edited in the planner."""

    id: UUID
    exercise_id: OptionalUUID = None
    description: str = ""  # catalog exercise name
    order: str = ""  # order marker, e.g. "A1"
    motion: str | None = None
    target_area: str | None = None
    sets_min: OptionalInt = None
    sets_max: OptionalInt = None
    reps_min: OptionalInt = None
    reps_max: OptionalInt = None
    tempo: str | None = None
    tut: str | None = None
    rest_min: OptionalInt = None
    rest_max: OptionalInt = None
    customizations: str | None = None
    notes: str | None = None


class SessionItem(CamelModel):
    id: UUID
    name: str = Field(..., min_length=1, max_length=255)
    order_number: int | None = None
    duration: OptionalInt = None
    exercises: list[ExerciseItem] = Field(default_factory=list)


class PhaseItem(CamelModel):
    id: UUID
    name: str = Field(..., min_length=1, max_length=255)
    order_number: int | None = None
    is_active: bool = False
    sessions: list[SessionItem] = Field(default_factory=list)


# Flat rows compared by the diff engine

class PhaseRow(CamelModel):
    id: UUID
    name: str
    order_number: int
    is_active: bool = False


class SessionRow(CamelModel):
    id: UUID
    phase_id: UUID
    name: str
    order_number: int
    duration: OptionalInt = None


class ExerciseRow(CamelModel):
    id: UUID
    session_id: UUID
    exercise_id: OptionalUUID = None
    description: str = ""
    order: str = ""
    motion: str | None = None
    target_area: str | None = None
    sets_min: OptionalInt = None
    sets_max: OptionalInt = None
    reps_min: OptionalInt = None
    reps_max: OptionalInt = None
    tempo: str | None = None
    tut: str | None = None
    rest_min: OptionalInt = None
    rest_max: OptionalInt = None
    customizations: str | None = None
    notes: str | None = None


# Partial updates: only explicitly set fields are applied

class PhaseChanges(CamelModel):
    name: str | None = None
    order_number: int | None = None
    is_active: bool | None = None


class SessionChanges(CamelModel):
    phase_id: UUID | None = None
    name: str | None = None
    order_number: int | None = None
    duration: OptionalInt = None


class ExerciseChanges(CamelModel):
    session_id: UUID | None = None
    exercise_id: OptionalUUID = None
    description: str | None = None
    order: str | None = None
    motion: str | None = None
    target_area: str | None = None
    sets_min: OptionalInt = None
    sets_max: OptionalInt = None
    reps_min: OptionalInt = None
    reps_max: OptionalInt = None
    tempo: str | None = None
    tut: str | None = None
    rest_min: OptionalInt = None
    rest_max: OptionalInt = None
    customizations: str | None = None
    notes: str | None = None


class PhaseUpdate(CamelModel):
    id: UUID
    changes: PhaseChanges


class SessionUpdate(CamelModel):
    id: UUID
    changes: SessionChanges


class ExerciseUpdate(CamelModel):
    id: UUID
    changes: ExerciseChanges


class PhaseDiff(CamelModel):
    added: list[PhaseRow] = Field(default_factory=list)
    updated: list[PhaseUpdate] = Field(default_factory=list)
    deleted: list[UUID] = Field(default_factory=list)


class SessionDiff(CamelModel):
    added: list[SessionRow] = Field(default_factory=list)
    updated: list[SessionUpdate] = Field(default_factory=list)
    deleted: list[UUID] = Field(default_factory=list)


class ExerciseDiff(CamelModel):
    added: list[ExerciseRow] = Field(default_factory=list)
    updated: list[ExerciseUpdate] = Field(default_factory=list)
    deleted: list[UUID] = Field(default_factory=list)


class PlanChanges(CamelModel):
    """Change-set for one plan, grouped by entity level."""

    phases: PhaseDiff = Field(default_factory=PhaseDiff)
    sessions: SessionDiff = Field(default_factory=SessionDiff)
    exercises: ExerciseDiff = Field(default_factory=ExerciseDiff)

    @property
    def is_empty(self) -> bool:
        return not any(
            level.added or level.updated or level.deleted
            for level in (self.phases, self.sessions, self.exercises)
        )


# Requests

class PlanCreate(CamelModel):
    """Schema for creating a plan with its full tree."""

    plan_id: UUID | None = None
    plan_name: str = Field(default="Workout Plan", min_length=1, max_length=255)
    client_id: str | None = None
    trainer_id: str | None = None
    is_active: bool = True
    phases: list[PhaseItem] = Field(default_factory=list)


class PlanSyncRequest(CamelModel):
    """Synchronize a plan from either its full tree or a pre-computed change-set.

    Without a plan id a new plan is created from ``phases``.
    """

    plan_id: UUID | None = None
    last_known_updated_at: datetime | None = None
    client_id: str | None = None
    trainer_id: str | None = None
    plan_name: str | None = Field(default=None, max_length=255)
    phases: list[PhaseItem] | None = None
    changes: PlanChanges | None = None

    @model_validator(mode="after")
    def check_payload(self) -> "PlanSyncRequest":
        if self.phases is not None and self.changes is not None:
            raise ValueError("Provide either phases or changes, not both")
        if self.plan_id is None and self.changes is not None:
            raise ValueError("Creating a plan requires the full phase tree")
        if self.plan_id is not None and self.phases is None and self.changes is None:
            raise ValueError("Either phases or changes must be provided")
        return self


class PhaseActivationRequest(CamelModel):
    is_active: bool
    last_known_updated_at: datetime | None = None


class DuplicateRequest(CamelModel):
    last_known_updated_at: datetime | None = None
    name: str | None = Field(default=None, min_length=1, max_length=255)


# Responses

class PlanSyncResult(CamelModel):
    """Outcome of a synchronization call.

    ``conflict`` is an expected outcome telling the caller to re-fetch and re-diff,
    distinct from a hard failure.
    """

    success: bool
    plan_id: UUID | None = None
    updated_at: datetime | None = None
    conflict: bool = False
    error: str | None = None
    server_updated_at: datetime | None = None
    error_code: SyncErrorCode | None = None


class PlanTreeResponse(CamelModel):
    plan_id: UUID
    plan_name: str
    client_id: str
    trainer_id: str
    is_active: bool
    updated_at: datetime
    phases: list[PhaseItem] = Field(default_factory=list)


class ExerciseResponse(BaseModel):
    """Catalog exercise response."""

    id: UUID
    name: str
    motion: str | None = None
    target_area: str | None = None
    movement_type: str | None = None
    video_url: str | None = None

    class Config:
        from_attributes = True
