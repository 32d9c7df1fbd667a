"""Tests for queue message processing against the plan synchronizer."""
import uuid
from datetime import timedelta
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.domains.queue.processors import (
    DEPRECATED_FULL_SAVE_MESSAGE,
    RetryableJobError,
    handle_queue_payload,
)
from src.domains.workouts.exceptions import SyncErrorCode
from src.domains.workouts.schemas import PlanSyncResult
from src.domains.workouts.sync_service import PlanSyncService, format_version_stamp
from tests.factories import exercise_item, phase_item, session_item


def message(message_type: str, data: dict[str, Any], **extra: Any) -> dict[str, Any]:
    return {
        "messageType": message_type,
        "timestamp": "2026-03-01T10:00:00Z",
        "userId": "trainer-1",
        "metadata": {"source": "workout-planner"},
        "data": data,
        **extra,
    }


async def read_tree(session_factory: async_sessionmaker[AsyncSession], plan_id: uuid.UUID):
    async with session_factory() as db:
        return await PlanSyncService(db).get_plan_tree(plan_id)


class TestWorkoutMessages:
    """Tests for workout mutations arriving through the queue."""

    @pytest.mark.asyncio
    async def test_exercise_save_new_adds_exercise(self, session_factory, sample_plan):
        """A new exercise should be stored and the plan version should advance."""
        # Arrange
        session = sample_plan["tree"].phases[0].sessions[0]
        new_exercise = exercise_item("Face Pull", "C", setsMin="3", repsMin="15")
        payload = message(
            "WORKOUT_EXERCISE_SAVE",
            {
                "planId": str(sample_plan["id"]),
                "sessionId": str(session.id),
                "exercise": new_exercise,
                "isNew": True,
            },
        )

        # Act
        result = await handle_queue_payload(payload, session_factory)

        # Assert
        assert result.success is True, result.error
        assert result.data["planExerciseId"] == new_exercise["id"]
        tree = await read_tree(session_factory, sample_plan["id"])
        exercises = tree.phases[0].sessions[0].exercises
        assert [item.description for item in exercises] == ["Bench Press", "Barbell Row", "Face Pull"]
        assert exercises[2].sets_min == 3
        assert tree.updated_at > sample_plan["updated_at"]
        assert result.data["updatedAt"] == format_version_stamp(tree.updated_at)

    @pytest.mark.asyncio
    async def test_full_save_of_existing_plan_is_deprecated(self, session_factory, sample_plan):
        """Full saves of existing plans should fail terminally without mutating."""
        # Arrange
        payload = message(
            "WORKOUT_PLAN_FULL_SAVE",
            {
                "planId": str(sample_plan["id"]),
                "clientId": "client-1",
                "lastKnownUpdatedAt": format_version_stamp(sample_plan["updated_at"]),
                "phases": [phase_item("Replacement", 0)],
            },
        )

        # Act
        result = await handle_queue_payload(payload, session_factory)

        # Assert
        assert result.success is False
        assert result.error_code == SyncErrorCode.DEPRECATED
        assert result.error == DEPRECATED_FULL_SAVE_MESSAGE
        tree = await read_tree(session_factory, sample_plan["id"])
        assert tree.model_dump() == sample_plan["tree"].model_dump()

    @pytest.mark.asyncio
    async def test_full_save_without_plan_creates_plan(self, session_factory):
        """A full save for a new plan should create it."""
        payload = message(
            "WORKOUT_PLAN_FULL_SAVE",
            {
                "clientId": "client-2",
                "trainerId": "trainer-1",
                "planName": "Off Season",
                "phases": [phase_item("Base", 0, sessions=[session_item("Day 1", 0)])],
            },
        )

        result = await handle_queue_payload(payload, session_factory)

        assert result.success is True, result.error
        tree = await read_tree(session_factory, uuid.UUID(result.data["planId"]))
        assert tree.plan_name == "Off Season"
        assert tree.phases[0].sessions[0].name == "Day 1"

    @pytest.mark.asyncio
    async def test_plan_create_is_idempotent(self, session_factory):
        """Re-delivered plan creation should succeed without duplicating."""
        plan_id = uuid.uuid4()
        payload = message(
            "WORKOUT_PLAN_CREATE",
            {"planId": str(plan_id), "clientId": "client-3", "trainerId": "trainer-1"},
        )

        first = await handle_queue_payload(payload, session_factory)
        second = await handle_queue_payload(payload, session_factory)

        assert first.success is True
        assert second.success is True
        assert second.data["planId"] == str(plan_id)

    @pytest.mark.asyncio
    async def test_phase_create_before_plan_is_retryable(self, session_factory):
        """Phases for a plan that does not exist yet should be retried."""
        payload = message(
            "WORKOUT_PHASE_CREATE",
            {"planId": str(uuid.uuid4()), "phase": phase_item("Base", 0)},
        )

        with pytest.raises(RetryableJobError) as exc_info:
            await handle_queue_payload(payload, session_factory)

        assert exc_info.value.code == SyncErrorCode.PLAN_NOT_FOUND

    @pytest.mark.asyncio
    async def test_phase_create_conflict_is_retryable(self, session_factory, sample_plan):
        """A checked phase creation that loses the race should be retried."""
        payload = message(
            "WORKOUT_PHASE_CREATE",
            {
                "planId": str(sample_plan["id"]),
                "phase": phase_item("Peak", 2),
                "lastKnownUpdatedAt": format_version_stamp(sample_plan["updated_at"] - timedelta(seconds=1)),
            },
        )

        with pytest.raises(RetryableJobError) as exc_info:
            await handle_queue_payload(payload, session_factory)

        assert exc_info.value.code == SyncErrorCode.CONFLICT

    @pytest.mark.asyncio
    async def test_checked_update_conflict_is_terminal(self, session_factory, sample_plan):
        """Conflicts on updates should not be retried."""
        phase = sample_plan["tree"].phases[0]
        payload = message(
            "WORKOUT_PHASE_UPDATE",
            {
                "planId": str(sample_plan["id"]),
                "phaseId": str(phase.id),
                "updates": {"name": "Renamed"},
                "lastKnownUpdatedAt": format_version_stamp(sample_plan["updated_at"] - timedelta(seconds=1)),
            },
        )

        result = await handle_queue_payload(payload, session_factory)

        assert result.success is False
        assert result.error_code == SyncErrorCode.CONFLICT
        tree = await read_tree(session_factory, sample_plan["id"])
        assert tree.phases[0].name == phase.name

    @pytest.mark.asyncio
    async def test_unchecked_session_update_applies(self, session_factory, sample_plan):
        """Without a stamp the update should apply unchecked."""
        session = sample_plan["tree"].phases[0].sessions[1]
        payload = message(
            "WORKOUT_SESSION_UPDATE",
            {
                "planId": str(sample_plan["id"]),
                "sessionId": str(session.id),
                "updates": {"name": "Lower (heavy)", "duration": 75},
            },
        )

        result = await handle_queue_payload(payload, session_factory)

        assert result.success is True, result.error
        tree = await read_tree(session_factory, sample_plan["id"])
        updated = tree.phases[0].sessions[1]
        assert updated.name == "Lower (heavy)"
        assert updated.duration == 75

    @pytest.mark.asyncio
    async def test_new_exercise_for_unknown_session_is_retryable(self, session_factory, sample_plan):
        """An exercise arriving before its session should be retried."""
        payload = message(
            "WORKOUT_EXERCISE_SAVE",
            {
                "planId": str(sample_plan["id"]),
                "sessionId": str(uuid.uuid4()),
                "exercise": exercise_item("Curl", "A"),
                "isNew": True,
            },
        )

        with pytest.raises(RetryableJobError) as exc_info:
            await handle_queue_payload(payload, session_factory)

        assert exc_info.value.code == SyncErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_update_of_unknown_exercise_is_terminal(self, session_factory, sample_plan):
        """Updating a missing exercise should fail without retry."""
        session = sample_plan["tree"].phases[0].sessions[0]
        payload = message(
            "WORKOUT_EXERCISE_SAVE",
            {
                "planId": str(sample_plan["id"]),
                "sessionId": str(session.id),
                "exercise": exercise_item("Curl", "A"),
                "isNew": False,
            },
        )

        result = await handle_queue_payload(payload, session_factory)

        assert result.success is False
        assert result.error_code == SyncErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_exercise_delete_removes_exercise(self, session_factory, sample_plan):
        """Deleting an exercise should remove it from the session."""
        session = sample_plan["tree"].phases[0].sessions[0]
        payload = message(
            "WORKOUT_EXERCISE_DELETE",
            {
                "planId": str(sample_plan["id"]),
                "sessionId": str(session.id),
                "planExerciseId": str(session.exercises[0].id),
            },
        )

        result = await handle_queue_payload(payload, session_factory)

        assert result.success is True, result.error
        tree = await read_tree(session_factory, sample_plan["id"])
        assert [item.description for item in tree.phases[0].sessions[0].exercises] == ["Barbell Row"]

    @pytest.mark.asyncio
    async def test_session_create_requires_order_number(self, session_factory, sample_plan):
        """Sessions without an order number should be rejected."""
        new_session = session_item("Arms", 0)
        del new_session["orderNumber"]
        payload = message(
            "WORKOUT_SESSION_CREATE",
            {
                "planId": str(sample_plan["id"]),
                "phaseId": str(sample_plan["tree"].phases[1].id),
                "session": new_session,
            },
        )

        result = await handle_queue_payload(payload, session_factory)

        assert result.success is False
        assert result.error_code == SyncErrorCode.VALIDATION

    @pytest.mark.asyncio
    async def test_transient_failures_are_always_retryable(self, session_factory, sample_plan):
        """TRANSIENT outcomes should be retried for any workout kind."""
        transient = PlanSyncResult(
            success=False,
            plan_id=sample_plan["id"],
            error="Failed to apply workout plan changes",
            error_code=SyncErrorCode.TRANSIENT,
        )
        payload = message(
            "WORKOUT_SESSION_DELETE",
            {"planId": str(sample_plan["id"]), "sessionId": str(uuid.uuid4())},
        )

        with patch.object(PlanSyncService, "apply_changes", new=AsyncMock(return_value=transient)):
            with pytest.raises(RetryableJobError) as exc_info:
                await handle_queue_payload(payload, session_factory)

        assert exc_info.value.code == SyncErrorCode.TRANSIENT


class TestGeneralMessages:
    """Tests for non-workout message kinds and malformed input."""

    @pytest.mark.asyncio
    async def test_user_action_echoes(self, session_factory):
        payload = message("USER_ACTION", {"action": "opened_planner", "entityType": "plan", "entityId": "p1"})

        result = await handle_queue_payload(payload, session_factory)

        assert result.success is True
        assert result.data == {"action": "opened_planner", "entityType": "plan", "entityId": "p1"}

    @pytest.mark.asyncio
    async def test_test_message_can_fail(self, session_factory):
        payload = message("TEST", {"shouldFail": True})

        result = await handle_queue_payload(payload, session_factory)

        assert result.success is False
        assert result.error == "Test failure requested"

    @pytest.mark.asyncio
    async def test_malformed_payload_is_terminal(self, session_factory):
        """Unparseable messages should fail with VALIDATION."""
        payload = message("WORKOUT_SESSION_DELETE", {"planId": "not-a-uuid"})

        result = await handle_queue_payload(payload, session_factory)

        assert result.success is False
        assert result.error_code == SyncErrorCode.VALIDATION
