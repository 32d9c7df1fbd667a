"""Plan synchronizer: the only writer of a plan's phases, sessions and exercises.

Every mutation runs as one database transaction:

    check version -> delete -> insert (chunked) -> update -> re-rank exercises
    -> advance version stamp -> commit

Failures roll the whole transaction back and come back as a ``PlanSyncResult``
with ``success=False``; conflicts come back with ``conflict=True``.
"""
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.settings import settings
from src.domains.workouts.diff import (
    diff_plan_rows,
    flatten_plan_tree,
    nest_plan_rows,
    rank_exercise_orders,
)
from src.domains.workouts.exceptions import (
    PlanSyncError,
    SyncErrorCode,
    classify_database_error,
)
from src.domains.workouts.exercise_service import (
    CatalogReference,
    ExerciseCatalogService,
    normalize_exercise_name,
)
from src.domains.workouts.models import (
    Exercise,
    PlanExercise,
    PlanPhase,
    PlanSession,
    WorkoutPlan,
)
from src.domains.workouts.schemas import (
    ConcurrencyMode,
    ExerciseChanges,
    ExerciseDiff,
    ExerciseRow,
    PhaseChanges,
    PhaseDiff,
    PhaseItem,
    PhaseRow,
    PhaseUpdate,
    PlanChanges,
    PlanCreate,
    PlanSyncRequest,
    PlanSyncResult,
    PlanTreeResponse,
    SessionChanges,
    SessionDiff,
    SessionRow,
)

logger = logging.getLogger(__name__)

APPLY_FAILED_MESSAGE = "Failed to apply workout plan changes"
CONFLICT_MESSAGE = "Plan has been modified since last fetch"
PLAN_NOT_FOUND_MESSAGE = "Plan not found"

_COPY_NAME_PATTERN = r"^(.*?)(?:\s*\((\d+)\))?$"


def as_utc(value: datetime) -> datetime:
    """Read naive timestamps (SQLite) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_version_stamp(value: datetime) -> str:
    """Canonical ISO-8601 form used for version comparison."""
    return as_utc(value).isoformat(timespec="microseconds")


def next_version_stamp(previous: datetime | None = None) -> datetime:
    """Current time, forced strictly past the previous stamp."""
    now = datetime.now(timezone.utc)
    if previous is not None:
        previous = as_utc(previous)
        if now <= previous:
            now = previous + timedelta(microseconds=1)
    return now


def get_next_copy_name(original_name: str, existing_names: list[str]) -> str:
    """Generate next copy name like 'Name (2)', 'Name (3)', etc."""
    match = re.match(_COPY_NAME_PATTERN, original_name.strip())
    base_name = match.group(1).strip() if match else original_name.strip()

    # Find highest existing number for this base name
    max_num = 1
    for name in existing_names:
        name_match = re.match(_COPY_NAME_PATTERN, name.strip())
        if name_match and name_match.group(1).strip().lower() == base_name.lower():
            num = int(name_match.group(2)) if name_match.group(2) else 1
            max_num = max(max_num, num)

    return f"{base_name} ({max_num + 1})"


@dataclass
class PlanSnapshot:
    """Server-side rows of one plan, read inside the apply transaction."""

    plan_id: uuid.UUID
    plan_name: str
    client_id: str
    trainer_id: str
    is_active: bool
    updated_at: datetime
    phases: list[PhaseRow] = field(default_factory=list)
    sessions: list[SessionRow] = field(default_factory=list)
    exercises: list[ExerciseRow] = field(default_factory=list)

    @property
    def rows(self) -> tuple[list[PhaseRow], list[SessionRow], list[ExerciseRow]]:
        return self.phases, self.sessions, self.exercises

    def to_tree(self) -> PlanTreeResponse:
        return PlanTreeResponse(
            plan_id=self.plan_id,
            plan_name=self.plan_name,
            client_id=self.client_id,
            trainer_id=self.trainer_id,
            is_active=self.is_active,
            updated_at=self.updated_at,
            phases=nest_plan_rows(self.phases, self.sessions, self.exercises),
        )


ChangeBuilder = Callable[[PlanSnapshot], PlanChanges]


class PlanSyncService:
    """Service applying plan trees and change-sets under optimistic concurrency."""

    def __init__(self, db: AsyncSession, chunk_size: int | None = None):
        self.db = db
        self.chunk_size = chunk_size or settings.SYNC_INSERT_CHUNK_SIZE
        self.catalog = ExerciseCatalogService(db)

    # Reads

    async def get_plan_tree(self, plan_id: uuid.UUID) -> PlanTreeResponse | None:
        """Get a plan with its full phase tree."""
        snapshot = await self._load_snapshot(plan_id)
        return snapshot.to_tree() if snapshot else None

    async def get_plan_for_client(self, client_id: str) -> PlanTreeResponse | None:
        """Get the client's current plan (active first, then most recently changed)."""
        result = await self.db.execute(
            select(WorkoutPlan.id)
            .where(WorkoutPlan.assigned_to_user_id == client_id)
            .order_by(WorkoutPlan.is_active.desc(), WorkoutPlan.updated_at.desc())
            .limit(1)
        )
        plan_id = result.scalar_one_or_none()
        if plan_id is None:
            return None
        return await self.get_plan_tree(plan_id)

    # Entrypoints

    async def sync_plan(
        self,
        request: PlanSyncRequest,
        actor_id: str | None = None,
    ) -> PlanSyncResult:
        """Create a plan or apply a tree/change-set to an existing one."""
        if request.plan_id is None:
            return await self.create_plan(
                PlanCreate(
                    plan_name=request.plan_name or "Workout Plan",
                    client_id=request.client_id,
                    trainer_id=request.trainer_id,
                    phases=request.phases or [],
                ),
                actor_id=actor_id,
            )

        if request.last_known_updated_at is None:
            return PlanSyncResult(
                success=False,
                plan_id=request.plan_id,
                error="lastKnownUpdatedAt is required to update an existing plan",
                error_code=SyncErrorCode.VALIDATION,
            )

        if request.changes is not None:
            return await self.apply_changes(
                request.plan_id,
                request.changes,
                last_known_updated_at=request.last_known_updated_at,
                actor_id=actor_id,
            )
        return await self.apply_tree(
            request.plan_id,
            request.phases or [],
            last_known_updated_at=request.last_known_updated_at,
            actor_id=actor_id,
        )

    async def create_plan(
        self,
        data: PlanCreate,
        actor_id: str | None = None,
        allow_existing: bool = False,
    ) -> PlanSyncResult:
        """Create a plan and its full tree in one transaction.

        With ``allow_existing`` an already stored plan id is reported as success,
        which makes re-delivered creation messages harmless.
        """
        if not data.client_id or not data.trainer_id:
            return PlanSyncResult(
                success=False,
                plan_id=data.plan_id,
                error="clientId and trainerId are required to create a plan",
                error_code=SyncErrorCode.VALIDATION,
            )

        plan_id = data.plan_id or uuid.uuid4()
        try:
            if data.plan_id is not None:
                existing = await self._load_plan_header(plan_id)
                if existing is not None:
                    if not allow_existing:
                        raise PlanSyncError(SyncErrorCode.VALIDATION, "Plan already exists")
                    await self.db.rollback()
                    return PlanSyncResult(
                        success=True, plan_id=plan_id, updated_at=as_utc(existing.updated_at)
                    )

            updated_at = next_version_stamp()
            await self.db.execute(
                insert(WorkoutPlan).values(
                    id=plan_id,
                    plan_name=data.plan_name,
                    created_by_user_id=data.trainer_id,
                    assigned_to_user_id=data.client_id,
                    is_active=data.is_active,
                    updated_at=updated_at,
                )
            )

            phases, sessions, exercises = flatten_plan_tree(data.phases)
            snapshot = PlanSnapshot(
                plan_id=plan_id,
                plan_name=data.plan_name,
                client_id=data.client_id,
                trainer_id=data.trainer_id,
                is_active=data.is_active,
                updated_at=updated_at,
            )
            changes = PlanChanges(
                phases=PhaseDiff(added=phases),
                sessions=SessionDiff(added=sessions),
                exercises=ExerciseDiff(added=exercises),
            )
            await self._apply(snapshot, changes, actor_id)
            await self.db.commit()
        except PlanSyncError as e:
            return await self._fail(plan_id, e.code, e.message)
        except SQLAlchemyError as e:
            return await self._fail_persistence(plan_id, e)

        self.db.expire_all()
        logger.info("Created workout plan %s for client %s", plan_id, data.client_id)
        return PlanSyncResult(success=True, plan_id=plan_id, updated_at=updated_at)

    async def apply_changes(
        self,
        plan_id: uuid.UUID,
        changes: PlanChanges,
        last_known_updated_at: datetime | None = None,
        mode: ConcurrencyMode = ConcurrencyMode.CHECKED,
        actor_id: str | None = None,
    ) -> PlanSyncResult:
        """Apply a pre-computed change-set."""
        return await self._run(plan_id, lambda snapshot: changes, last_known_updated_at, mode, actor_id)

    async def apply_tree(
        self,
        plan_id: uuid.UUID,
        phases: list[PhaseItem],
        last_known_updated_at: datetime | None = None,
        mode: ConcurrencyMode = ConcurrencyMode.CHECKED,
        actor_id: str | None = None,
    ) -> PlanSyncResult:
        """Diff the planner's tree against the stored plan and apply the result."""
        client_rows = flatten_plan_tree(phases)

        def build(snapshot: PlanSnapshot) -> PlanChanges:
            return diff_plan_rows(snapshot.rows, client_rows)

        return await self._run(plan_id, build, last_known_updated_at, mode, actor_id)

    async def set_phase_activation(
        self,
        plan_id: uuid.UUID,
        phase_id: uuid.UUID,
        is_active: bool,
        last_known_updated_at: datetime | None = None,
        mode: ConcurrencyMode = ConcurrencyMode.CHECKED,
    ) -> PlanSyncResult:
        """Toggle a phase; activating one deactivates the plan's other phases."""

        def build(snapshot: PlanSnapshot) -> PlanChanges:
            if not any(phase.id == phase_id for phase in snapshot.phases):
                raise PlanSyncError(SyncErrorCode.NOT_FOUND, "Phase not found")

            updates = []
            for phase in snapshot.phases:
                if phase.id == phase_id:
                    if phase.is_active != is_active:
                        updates.append(PhaseUpdate(id=phase.id, changes=PhaseChanges(is_active=is_active)))
                elif is_active and phase.is_active:
                    updates.append(PhaseUpdate(id=phase.id, changes=PhaseChanges(is_active=False)))
            return PlanChanges(phases=PhaseDiff(updated=updates))

        return await self._run(plan_id, build, last_known_updated_at, mode)

    async def duplicate_session(
        self,
        plan_id: uuid.UUID,
        session_id: uuid.UUID,
        last_known_updated_at: datetime | None = None,
        mode: ConcurrencyMode = ConcurrencyMode.CHECKED,
        name: str | None = None,
    ) -> PlanSyncResult:
        """Copy a session with its exercises to the end of its phase."""

        def build(snapshot: PlanSnapshot) -> PlanChanges:
            source = next((row for row in snapshot.sessions if row.id == session_id), None)
            if source is None:
                raise PlanSyncError(SyncErrorCode.NOT_FOUND, "Session not found")

            siblings = [row for row in snapshot.sessions if row.phase_id == source.phase_id]
            copy = SessionRow(
                id=uuid.uuid4(),
                phase_id=source.phase_id,
                name=name or get_next_copy_name(source.name, [row.name for row in siblings]),
                order_number=max(row.order_number for row in siblings) + 1,
                duration=source.duration,
            )
            exercises = self._copy_exercises(snapshot, {source.id: copy.id})
            return PlanChanges(
                sessions=SessionDiff(added=[copy]),
                exercises=ExerciseDiff(added=exercises),
            )

        return await self._run(plan_id, build, last_known_updated_at, mode)

    async def duplicate_phase(
        self,
        plan_id: uuid.UUID,
        phase_id: uuid.UUID,
        last_known_updated_at: datetime | None = None,
        mode: ConcurrencyMode = ConcurrencyMode.CHECKED,
        name: str | None = None,
    ) -> PlanSyncResult:
        """Copy a phase with its sessions and exercises to the end of the plan."""

        def build(snapshot: PlanSnapshot) -> PlanChanges:
            source = next((row for row in snapshot.phases if row.id == phase_id), None)
            if source is None:
                raise PlanSyncError(SyncErrorCode.NOT_FOUND, "Phase not found")

            copy = PhaseRow(
                id=uuid.uuid4(),
                name=name or get_next_copy_name(source.name, [row.name for row in snapshot.phases]),
                order_number=max(row.order_number for row in snapshot.phases) + 1,
                is_active=False,
            )
            session_map: dict[uuid.UUID, uuid.UUID] = {}
            sessions = []
            for row in snapshot.sessions:
                if row.phase_id != source.id:
                    continue
                session_map[row.id] = uuid.uuid4()
                sessions.append(row.model_copy(update={"id": session_map[row.id], "phase_id": copy.id}))
            return PlanChanges(
                phases=PhaseDiff(added=[copy]),
                sessions=SessionDiff(added=sessions),
                exercises=ExerciseDiff(added=self._copy_exercises(snapshot, session_map)),
            )

        return await self._run(plan_id, build, last_known_updated_at, mode)

    # Transaction driver

    async def _run(
        self,
        plan_id: uuid.UUID,
        build: ChangeBuilder,
        last_known_updated_at: datetime | None,
        mode: ConcurrencyMode,
        actor_id: str | None = None,
    ) -> PlanSyncResult:
        try:
            snapshot = await self._load_snapshot(plan_id)
            if snapshot is None:
                raise PlanSyncError(SyncErrorCode.PLAN_NOT_FOUND, PLAN_NOT_FOUND_MESSAGE)

            if mode == ConcurrencyMode.CHECKED:
                if last_known_updated_at is None:
                    raise PlanSyncError(
                        SyncErrorCode.VALIDATION,
                        "lastKnownUpdatedAt is required to update an existing plan",
                    )
                if format_version_stamp(last_known_updated_at) != format_version_stamp(snapshot.updated_at):
                    await self.db.rollback()
                    logger.warning(
                        "Conflict on plan %s: client version %s, server version %s",
                        plan_id,
                        format_version_stamp(last_known_updated_at),
                        format_version_stamp(snapshot.updated_at),
                    )
                    return PlanSyncResult(
                        success=False,
                        plan_id=plan_id,
                        conflict=True,
                        error=CONFLICT_MESSAGE,
                        server_updated_at=snapshot.updated_at,
                        error_code=SyncErrorCode.CONFLICT,
                    )

            changes = build(snapshot)
            if changes.is_empty:
                await self.db.rollback()
                return PlanSyncResult(success=True, plan_id=plan_id, updated_at=snapshot.updated_at)

            await self._apply(snapshot, changes, actor_id)
            updated_at = next_version_stamp(snapshot.updated_at)
            await self.db.execute(
                update(WorkoutPlan)
                .where(WorkoutPlan.id == plan_id)
                .values(updated_at=updated_at)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except PlanSyncError as e:
            return await self._fail(plan_id, e.code, e.message)
        except SQLAlchemyError as e:
            return await self._fail_persistence(plan_id, e)

        self.db.expire_all()
        logger.info("Applied changes to plan %s (%s mode)", plan_id, mode.value)
        return PlanSyncResult(success=True, plan_id=plan_id, updated_at=updated_at)

    async def _fail(self, plan_id: uuid.UUID, code: SyncErrorCode, message: str) -> PlanSyncResult:
        await self.db.rollback()
        logger.warning("Sync of plan %s failed (%s): %s", plan_id, code.value, message)
        return PlanSyncResult(success=False, plan_id=plan_id, error=message, error_code=code)

    async def _fail_persistence(self, plan_id: uuid.UUID, exc: SQLAlchemyError) -> PlanSyncResult:
        await self.db.rollback()
        code = classify_database_error(exc)
        logger.error("Sync of plan %s failed (%s)", plan_id, code.value, exc_info=exc)
        return PlanSyncResult(success=False, plan_id=plan_id, error=APPLY_FAILED_MESSAGE, error_code=code)

    # Apply steps

    async def _apply(
        self,
        snapshot: PlanSnapshot,
        changes: PlanChanges,
        actor_id: str | None = None,
    ) -> None:
        phases_by_id = {row.id: row for row in snapshot.phases}
        sessions_by_id = {row.id: row for row in snapshot.sessions}
        exercises_by_id = {row.id: row for row in snapshot.exercises}

        # Deletions cascade explicitly; unknown ids were already deleted.
        # Re-delivered creations are skipped
        deleted_phases = {pid for pid in changes.phases.deleted if pid in phases_by_id}
        live_phases = set(phases_by_id) - deleted_phases
        new_phases = [row for row in changes.phases.added if row.id not in live_phases]
        known_phases = live_phases | {row.id for row in new_phases}

        # Children moved to a surviving parent stay out of the cascade
        explicit_sessions = {sid for sid in changes.sessions.deleted if sid in sessions_by_id}
        moved_sessions = {
            item.id
            for item in changes.sessions.updated
            if item.changes.phase_id in known_phases and item.id not in explicit_sessions
        }
        deleted_sessions = explicit_sessions | {
            row.id
            for row in snapshot.sessions
            if row.phase_id in deleted_phases and row.id not in moved_sessions
        }
        live_sessions = set(sessions_by_id) - deleted_sessions
        new_sessions = [row for row in changes.sessions.added if row.id not in live_sessions]
        known_sessions = live_sessions | {row.id for row in new_sessions}

        explicit_exercises = {eid for eid in changes.exercises.deleted if eid in exercises_by_id}
        moved_exercises = {
            item.id
            for item in changes.exercises.updated
            if item.changes.session_id in known_sessions and item.id not in explicit_exercises
        }
        deleted_exercises = explicit_exercises | {
            row.id
            for row in snapshot.exercises
            if row.session_id in deleted_sessions and row.id not in moved_exercises
        }
        live_exercises = set(exercises_by_id) - deleted_exercises
        new_exercises = [row for row in changes.exercises.added if row.id not in live_exercises]

        self._check_references(changes, new_sessions, new_exercises, live_phases, live_sessions,
                               live_exercises, known_phases, known_sessions)

        # Parents of moved children go only after the moves are applied
        holding_sessions = {exercises_by_id[eid].session_id for eid in moved_exercises} & deleted_sessions
        holding_phases = {
            sessions_by_id[sid].phase_id for sid in moved_sessions | holding_sessions
        } & deleted_phases

        if deleted_exercises:
            await self._delete_rows(PlanExercise, deleted_exercises)
        if deleted_sessions - holding_sessions:
            await self._delete_rows(PlanSession, deleted_sessions - holding_sessions)
        if deleted_phases - holding_phases:
            await self._delete_rows(PlanPhase, deleted_phases - holding_phases)

        parked_sessions = await self._park_order_numbers(
            changes, sessions_by_id, holding_phases, holding_sessions
        )

        catalog_ids = await self._resolve_catalog(changes, new_exercises, exercises_by_id, actor_id)

        await self._bulk_insert(
            PlanPhase,
            [
                {
                    "id": row.id,
                    "plan_id": snapshot.plan_id,
                    "phase_name": row.name,
                    "order_number": row.order_number,
                    "is_active": row.is_active,
                }
                for row in new_phases
            ],
        )
        await self._bulk_insert(
            PlanSession,
            [
                {
                    "id": row.id,
                    "phase_id": row.phase_id,
                    "session_name": row.name,
                    "order_number": row.order_number,
                    "session_time": row.duration,
                }
                for row in new_sessions
            ],
        )
        await self._bulk_insert(
            PlanExercise,
            [self._exercise_values(row, catalog_ids) for row in new_exercises],
        )

        for item in changes.phases.updated:
            await self._update_row(PlanPhase, item.id, self._phase_update_values(item.changes))
        for item in changes.sessions.updated:
            values = self._session_update_values(item.changes)
            if item.id in parked_sessions:
                values.setdefault("order_number", parked_sessions[item.id])
            await self._update_row(PlanSession, item.id, values)
        for item in changes.exercises.updated:
            await self._update_row(
                PlanExercise, item.id, self._exercise_update_values(item.changes, catalog_ids)
            )

        if holding_sessions:
            await self._delete_rows(PlanSession, holding_sessions)
        if holding_phases:
            await self._delete_rows(PlanPhase, holding_phases)

        touched_sessions = {row.session_id for row in new_exercises}
        touched_sessions |= {exercises_by_id[eid].session_id for eid in deleted_exercises}
        for item in changes.exercises.updated:
            touched_sessions.add(exercises_by_id[item.id].session_id)
            if item.changes.session_id is not None:
                touched_sessions.add(item.changes.session_id)
        await self._recompute_exercise_orders(touched_sessions - deleted_sessions)

    def _check_references(
        self,
        changes: PlanChanges,
        new_sessions: list[SessionRow],
        new_exercises: list[ExerciseRow],
        live_phases: set[uuid.UUID],
        live_sessions: set[uuid.UUID],
        live_exercises: set[uuid.UUID],
        known_phases: set[uuid.UUID],
        known_sessions: set[uuid.UUID],
    ) -> None:
        for item in changes.phases.updated:
            if item.id not in live_phases:
                raise PlanSyncError(SyncErrorCode.NOT_FOUND, f"Phase {item.id} not found in plan")
        for item in changes.sessions.updated:
            if item.id not in live_sessions:
                raise PlanSyncError(SyncErrorCode.NOT_FOUND, f"Session {item.id} not found in plan")
            if item.changes.phase_id is not None and item.changes.phase_id not in known_phases:
                raise PlanSyncError(SyncErrorCode.NOT_FOUND, f"Phase {item.changes.phase_id} not found in plan")
        for item in changes.exercises.updated:
            if item.id not in live_exercises:
                raise PlanSyncError(SyncErrorCode.NOT_FOUND, f"Exercise {item.id} not found in plan")
            if item.changes.session_id is not None and item.changes.session_id not in known_sessions:
                raise PlanSyncError(
                    SyncErrorCode.NOT_FOUND, f"Session {item.changes.session_id} not found in plan"
                )
        for row in new_sessions:
            if row.phase_id not in known_phases:
                raise PlanSyncError(SyncErrorCode.NOT_FOUND, f"Phase {row.phase_id} not found in plan")
        for row in new_exercises:
            if row.session_id not in known_sessions:
                raise PlanSyncError(SyncErrorCode.NOT_FOUND, f"Session {row.session_id} not found in plan")
            if row.exercise_id is None and not row.description.strip():
                raise PlanSyncError(
                    SyncErrorCode.VALIDATION,
                    f"Exercise {row.id} needs an exercise id or a description",
                )

    async def _resolve_catalog(
        self,
        changes: PlanChanges,
        new_exercises: list[ExerciseRow],
        exercises_by_id: dict[uuid.UUID, ExerciseRow],
        actor_id: str | None,
    ) -> dict[str, uuid.UUID]:
        references = [
            CatalogReference(row.description, row.motion, row.target_area)
            for row in new_exercises
            if row.exercise_id is None
        ]
        for item in changes.exercises.updated:
            fields = item.changes.model_fields_set
            description = (item.changes.description or "").strip()
            if "description" in fields and "exercise_id" not in fields and description:
                current = exercises_by_id[item.id]
                references.append(
                    CatalogReference(
                        item.changes.description,
                        item.changes.motion if "motion" in fields else current.motion,
                        item.changes.target_area if "target_area" in fields else current.target_area,
                    )
                )
        return await self.catalog.resolve_exercise_ids(references, created_by_user_id=actor_id)

    async def _park_order_numbers(
        self,
        changes: PlanChanges,
        sessions_by_id: dict[uuid.UUID, SessionRow],
        holding_phases: set[uuid.UUID],
        holding_sessions: set[uuid.UUID],
    ) -> dict[uuid.UUID, int]:
        """Move rows that change position to negative slots so swaps never collide.

        Parents waiting to be deleted are parked too, freeing their slots for
        inserted rows. Returns the original order number of every parked session.
        """
        slot = 0
        parked_sessions = {}
        for phase_id in holding_phases:
            slot -= 1
            await self._update_row(PlanPhase, phase_id, {"order_number": slot})
        for session_id in holding_sessions:
            slot -= 1
            await self._update_row(PlanSession, session_id, {"order_number": slot})
        for item in changes.phases.updated:
            if "order_number" in item.changes.model_fields_set:
                slot -= 1
                await self._update_row(PlanPhase, item.id, {"order_number": slot})
        for item in changes.sessions.updated:
            fields = item.changes.model_fields_set
            if "order_number" in fields or "phase_id" in fields:
                slot -= 1
                parked_sessions[item.id] = sessions_by_id[item.id].order_number
                await self._update_row(PlanSession, item.id, {"order_number": slot})
        return parked_sessions

    async def _delete_rows(self, model: Any, ids: set[uuid.UUID]) -> None:
        await self.db.execute(
            delete(model).where(model.id.in_(list(ids))).execution_options(synchronize_session=False)
        )

    async def _update_row(self, model: Any, row_id: uuid.UUID, values: dict[str, Any]) -> None:
        if not values:
            return
        await self.db.execute(
            update(model)
            .where(model.id == row_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def _bulk_insert(self, model: Any, rows: list[dict[str, Any]]) -> None:
        """Insert rows in chunks; all chunks share the surrounding transaction."""
        for start in range(0, len(rows), self.chunk_size):
            await self._insert_chunk(model, rows[start:start + self.chunk_size])

    async def _insert_chunk(self, model: Any, rows: list[dict[str, Any]]) -> None:
        await self.db.execute(insert(model), rows)

    async def _recompute_exercise_orders(self, session_ids: set[uuid.UUID]) -> None:
        """Store each exercise's zero-based rank by order marker."""
        if not session_ids:
            return
        result = await self.db.execute(
            select(
                PlanExercise.id,
                PlanExercise.session_id,
                PlanExercise.set_order_marker,
                PlanExercise.exercise_order,
            ).where(PlanExercise.session_id.in_(list(session_ids)))
        )
        by_session: dict[uuid.UUID, list[Any]] = {}
        for row in result:
            by_session.setdefault(row.session_id, []).append(row)

        for rows in by_session.values():
            ranks = rank_exercise_orders((row.id, row.set_order_marker) for row in rows)
            for row in rows:
                if row.exercise_order != ranks[row.id]:
                    await self._update_row(PlanExercise, row.id, {"exercise_order": ranks[row.id]})

    # Value mapping

    @staticmethod
    def _required(values: dict[str, Any], column: str, field_name: str) -> None:
        if column in values and values[column] is None:
            raise PlanSyncError(SyncErrorCode.VALIDATION, f"{field_name} cannot be empty")

    def _phase_update_values(self, changes: PhaseChanges) -> dict[str, Any]:
        data = changes.model_dump(exclude_unset=True)
        values = {}
        if "name" in data:
            values["phase_name"] = data["name"]
        for key in ("order_number", "is_active"):
            if key in data:
                values[key] = data[key]
        self._required(values, "phase_name", "Phase name")
        self._required(values, "order_number", "Phase order")
        self._required(values, "is_active", "Phase active flag")
        return values

    def _session_update_values(self, changes: SessionChanges) -> dict[str, Any]:
        data = changes.model_dump(exclude_unset=True)
        values = {}
        if "name" in data:
            values["session_name"] = data["name"]
        if "duration" in data:
            values["session_time"] = data["duration"]
        for key in ("phase_id", "order_number"):
            if key in data:
                values[key] = data[key]
        self._required(values, "session_name", "Session name")
        self._required(values, "order_number", "Session order")
        self._required(values, "phase_id", "Session phase")
        return values

    def _exercise_update_values(
        self,
        changes: ExerciseChanges,
        catalog_ids: dict[str, uuid.UUID],
    ) -> dict[str, Any]:
        data = changes.model_dump(exclude_unset=True)
        values = {}
        description = data.pop("description", None)
        if "order" in data:
            values["set_order_marker"] = data.pop("order") or ""
        if "exercise_id" not in data and description and description.strip():
            values["exercise_id"] = catalog_ids[normalize_exercise_name(description)]
        values.update(data)
        self._required(values, "exercise_id", "Exercise reference")
        self._required(values, "session_id", "Exercise session")
        return values

    @staticmethod
    def _exercise_values(row: ExerciseRow, catalog_ids: dict[str, uuid.UUID]) -> dict[str, Any]:
        exercise_id = row.exercise_id or catalog_ids[normalize_exercise_name(row.description)]
        return {
            "id": row.id,
            "session_id": row.session_id,
            "exercise_id": exercise_id,
            "target_area": row.target_area,
            "motion": row.motion,
            "sets_min": row.sets_min,
            "sets_max": row.sets_max,
            "reps_min": row.reps_min,
            "reps_max": row.reps_max,
            "tempo": row.tempo,
            "tut": row.tut,
            "rest_min": row.rest_min,
            "rest_max": row.rest_max,
            "customizations": row.customizations,
            "notes": row.notes,
            "set_order_marker": row.order or "",
            "exercise_order": 0,
        }

    @staticmethod
    def _copy_exercises(
        snapshot: PlanSnapshot,
        session_map: dict[uuid.UUID, uuid.UUID],
    ) -> list[ExerciseRow]:
        return [
            row.model_copy(update={"id": uuid.uuid4(), "session_id": session_map[row.session_id]})
            for row in snapshot.exercises
            if row.session_id in session_map
        ]

    # Loading

    async def _load_plan_header(self, plan_id: uuid.UUID) -> Any:
        result = await self.db.execute(
            select(
                WorkoutPlan.id,
                WorkoutPlan.plan_name,
                WorkoutPlan.assigned_to_user_id,
                WorkoutPlan.created_by_user_id,
                WorkoutPlan.is_active,
                WorkoutPlan.updated_at,
            ).where(WorkoutPlan.id == plan_id)
        )
        return result.one_or_none()

    async def _load_snapshot(self, plan_id: uuid.UUID) -> PlanSnapshot | None:
        header = await self._load_plan_header(plan_id)
        if header is None:
            return None

        phase_result = await self.db.execute(
            select(PlanPhase.id, PlanPhase.phase_name, PlanPhase.order_number, PlanPhase.is_active)
            .where(PlanPhase.plan_id == plan_id)
            .order_by(PlanPhase.order_number)
        )
        phases = [
            PhaseRow(id=row.id, name=row.phase_name, order_number=row.order_number, is_active=bool(row.is_active))
            for row in phase_result
        ]

        session_result = await self.db.execute(
            select(
                PlanSession.id,
                PlanSession.phase_id,
                PlanSession.session_name,
                PlanSession.order_number,
                PlanSession.session_time,
            )
            .join(PlanPhase, PlanSession.phase_id == PlanPhase.id)
            .where(PlanPhase.plan_id == plan_id)
            .order_by(PlanPhase.order_number, PlanSession.order_number)
        )
        sessions = [
            SessionRow(
                id=row.id,
                phase_id=row.phase_id,
                name=row.session_name,
                order_number=row.order_number,
                duration=row.session_time,
            )
            for row in session_result
        ]

        exercise_result = await self.db.execute(
            select(PlanExercise, Exercise.name)
            .join(PlanSession, PlanExercise.session_id == PlanSession.id)
            .join(PlanPhase, PlanSession.phase_id == PlanPhase.id)
            .outerjoin(Exercise, PlanExercise.exercise_id == Exercise.id)
            .where(PlanPhase.plan_id == plan_id)
            .order_by(PlanExercise.session_id, PlanExercise.exercise_order)
            .execution_options(populate_existing=True)
        )
        exercises = [
            ExerciseRow(
                id=exercise.id,
                session_id=exercise.session_id,
                exercise_id=exercise.exercise_id,
                description=name or "",
                order=exercise.set_order_marker or "",
                motion=exercise.motion,
                target_area=exercise.target_area,
                sets_min=exercise.sets_min,
                sets_max=exercise.sets_max,
                reps_min=exercise.reps_min,
                reps_max=exercise.reps_max,
                tempo=exercise.tempo,
                tut=exercise.tut,
                rest_min=exercise.rest_min,
                rest_max=exercise.rest_max,
                customizations=exercise.customizations,
                notes=exercise.notes,
            )
            for exercise, name in exercise_result.all()
        ]

        return PlanSnapshot(
            plan_id=header.id,
            plan_name=header.plan_name,
            client_id=header.assigned_to_user_id,
            trainer_id=header.created_by_user_id,
            is_active=bool(header.is_active),
            updated_at=as_utc(header.updated_at),
            phases=phases,
            sessions=sessions,
            exercises=exercises,
        )
