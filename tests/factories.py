"""Payload builders for planner trees (camelCase, as the planner sends them)."""
import uuid
from typing import Any

TRAINER_ID = "trainer-1"
CLIENT_ID = "client-1"


def exercise_item(description: str, order: str, **fields: Any) -> dict[str, Any]:
    """Planner exercise payload."""
    return {"id": str(uuid.uuid4()), "description": description, "order": order, **fields}


def session_item(name: str, order_number: int, exercises: list[dict[str, Any]] | None = None) -> dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "name": name,
        "orderNumber": order_number,
        "exercises": exercises or [],
    }


def phase_item(
    name: str,
    order_number: int,
    sessions: list[dict[str, Any]] | None = None,
    is_active: bool = False,
) -> dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "name": name,
        "orderNumber": order_number,
        "isActive": is_active,
        "sessions": sessions or [],
    }
