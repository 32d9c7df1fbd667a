"""Workout plan endpoints: plan tree reads, synchronization and granular mutations."""
import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.database import get_db
from src.domains.workouts.exceptions import SyncErrorCode
from src.domains.workouts.exercise_service import ExerciseCatalogService
from src.domains.workouts.schemas import (
    DuplicateRequest,
    ExerciseResponse,
    PhaseActivationRequest,
    PlanSyncRequest,
    PlanSyncResult,
    PlanTreeResponse,
)
from src.domains.workouts.sync_service import PlanSyncService

logger = logging.getLogger(__name__)

router = APIRouter()

# Set by the presentation layer once the identity provider has authenticated the caller
ActorId = Annotated[str | None, Header(alias="X-User-Id")]

_STATUS_BY_ERROR = {
    SyncErrorCode.CONFLICT: status.HTTP_409_CONFLICT,
    SyncErrorCode.PLAN_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    SyncErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    SyncErrorCode.VALIDATION: status.HTTP_422_UNPROCESSABLE_ENTITY,
    SyncErrorCode.DEPRECATED: status.HTTP_410_GONE,
    SyncErrorCode.TRANSIENT: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _respond(result: PlanSyncResult, response: Response) -> PlanSyncResult:
    """Keep the result body; only the HTTP status reflects the outcome."""
    if not result.success:
        response.status_code = _STATUS_BY_ERROR.get(
            result.error_code, status.HTTP_500_INTERNAL_SERVER_ERROR
        )
    return result


@router.get("/workout-plans/clients/{client_id}", response_model=PlanTreeResponse)
async def get_client_plan(
    client_id: str,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> PlanTreeResponse:
    """Get the current workout plan of a client."""
    plan = await PlanSyncService(db).get_plan_for_client(client_id)
    if not plan:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Workout plan not found",
        )
    return plan


@router.get("/workout-plans/{plan_id}", response_model=PlanTreeResponse)
async def get_plan(
    plan_id: UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> PlanTreeResponse:
    """Get a workout plan with its phases, sessions and exercises."""
    plan = await PlanSyncService(db).get_plan_tree(plan_id)
    if not plan:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Workout plan not found",
        )
    return plan


@router.post("/workout-plans/sync", response_model=PlanSyncResult)
async def sync_plan(
    request: PlanSyncRequest,
    response: Response,
    db: Annotated[AsyncSession, Depends(get_db)],
    actor_id: ActorId = None,
) -> PlanSyncResult:
    """Create a plan or apply the planner's edits to an existing one.

    A conflict means the plan changed since the caller fetched it; the caller
    must re-fetch, re-diff and resubmit.
    """
    result = await PlanSyncService(db).sync_plan(request, actor_id=actor_id)
    if result.conflict:
        logger.info("Sync conflict on plan %s for user %s", result.plan_id, actor_id)
    return _respond(result, response)


@router.patch("/workout-plans/{plan_id}/phases/{phase_id}/activation", response_model=PlanSyncResult)
async def set_phase_activation(
    plan_id: UUID,
    phase_id: UUID,
    request: PhaseActivationRequest,
    response: Response,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> PlanSyncResult:
    """Activate or deactivate a phase."""
    result = await PlanSyncService(db).set_phase_activation(
        plan_id,
        phase_id,
        request.is_active,
        last_known_updated_at=request.last_known_updated_at,
    )
    return _respond(result, response)


@router.post("/workout-plans/{plan_id}/sessions/{session_id}/duplicate", response_model=PlanSyncResult)
async def duplicate_session(
    plan_id: UUID,
    session_id: UUID,
    request: DuplicateRequest,
    response: Response,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> PlanSyncResult:
    """Duplicate a session with its exercises."""
    result = await PlanSyncService(db).duplicate_session(
        plan_id,
        session_id,
        last_known_updated_at=request.last_known_updated_at,
        name=request.name,
    )
    return _respond(result, response)


@router.post("/workout-plans/{plan_id}/phases/{phase_id}/duplicate", response_model=PlanSyncResult)
async def duplicate_phase(
    plan_id: UUID,
    phase_id: UUID,
    request: DuplicateRequest,
    response: Response,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> PlanSyncResult:
    """Duplicate a phase with its sessions and exercises."""
    result = await PlanSyncService(db).duplicate_phase(
        plan_id,
        phase_id,
        last_known_updated_at=request.last_known_updated_at,
        name=request.name,
    )
    return _respond(result, response)


@router.get("/exercises", response_model=list[ExerciseResponse])
async def list_exercises(
    db: Annotated[AsyncSession, Depends(get_db)],
    search: Annotated[str | None, Query(max_length=100)] = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> list[ExerciseResponse]:
    """List catalog exercises."""
    exercises = await ExerciseCatalogService(db).list_exercises(
        search=search,
        limit=limit,
        offset=offset,
    )
    return [ExerciseResponse.model_validate(exercise) for exercise in exercises]
