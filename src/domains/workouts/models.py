"""Workout plan models for the CoachPlan platform."""
import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.config.database import Base
from src.core.models import TimestampMixin, UUIDMixin


class Exercise(Base, UUIDMixin, TimestampMixin):
    """Catalog exercise, referenced by plan exercises."""

    __tablename__ = "exercises"

    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True, index=True)
    motion: Mapped[str | None] = mapped_column(String(100), nullable=True)
    target_area: Mapped[str | None] = mapped_column(String(100), nullable=True)
    movement_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    video_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_by_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return f"<Exercise {self.name}>"


class WorkoutPlan(Base, UUIDMixin):
    """Top-level workout program assigned to a client.

    ``updated_at`` is the plan's version stamp. It is only written by the plan
    synchronizer and advances on every change to the plan's phases, sessions
    or exercises.
    """

    __tablename__ = "workout_plans"

    plan_name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_by_user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    assigned_to_user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Relationships
    phases: Mapped[list["PlanPhase"]] = relationship(
        "PlanPhase",
        back_populates="plan",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="PlanPhase.order_number",
    )

    def __repr__(self) -> str:
        return f"<WorkoutPlan {self.plan_name}>"


class PlanPhase(Base, UUIDMixin):
    """Ordered training block of a plan."""

    __tablename__ = "plan_phases"
    __table_args__ = (
        UniqueConstraint("plan_id", "order_number", name="uq_plan_phases_plan_order"),
    )

    plan_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("workout_plans.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    phase_name: Mapped[str] = mapped_column(String(255), nullable=False)
    order_number: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False)

    # Relationships
    plan: Mapped["WorkoutPlan"] = relationship("WorkoutPlan", back_populates="phases")
    sessions: Mapped[list["PlanSession"]] = relationship(
        "PlanSession",
        back_populates="phase",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="PlanSession.order_number",
    )

    def __repr__(self) -> str:
        return f"<PlanPhase {self.phase_name} #{self.order_number}>"


class PlanSession(Base, UUIDMixin):
    """Ordered workout within a phase."""

    __tablename__ = "plan_sessions"
    __table_args__ = (
        UniqueConstraint("phase_id", "order_number", name="uq_plan_sessions_phase_order"),
    )

    phase_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("plan_phases.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    session_name: Mapped[str] = mapped_column(String(255), nullable=False)
    order_number: Mapped[int] = mapped_column(Integer, nullable=False)
    session_time: Mapped[int | None] = mapped_column(Integer, nullable=True)  # minutes

    # Relationships
    phase: Mapped["PlanPhase"] = relationship("PlanPhase", back_populates="sessions")
    exercises: Mapped[list["PlanExercise"]] = relationship(
        "PlanExercise",
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="PlanExercise.exercise_order",
    )

    def __repr__(self) -> str:
        return f"<PlanSession {self.session_name} #{self.order_number}>"


class PlanExercise(Base, UUIDMixin):
    """Prescribed exercise instance within a session."""

    __tablename__ = "plan_exercises"

    session_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("plan_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    exercise_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("exercises.id", ondelete="RESTRICT"),
        nullable=False,
    )
    target_area: Mapped[str | None] = mapped_column(String(100), nullable=True)
    motion: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Prescription
    sets_min: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sets_max: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reps_min: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reps_max: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tempo: Mapped[str | None] = mapped_column(String(50), nullable=True)
    tut: Mapped[str | None] = mapped_column(String(50), nullable=True)  # time under tension
    rest_min: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rest_max: Mapped[int | None] = mapped_column(Integer, nullable=True)
    customizations: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Ordering: marker is the display string, order is derived from it
    set_order_marker: Mapped[str] = mapped_column(String(20), default="", nullable=False)
    exercise_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Relationships
    session: Mapped["PlanSession"] = relationship("PlanSession", back_populates="exercises")
    exercise: Mapped["Exercise"] = relationship("Exercise", lazy="selectin")

    def __repr__(self) -> str:
        return f"<PlanExercise {self.set_order_marker} in {self.session_id}>"
