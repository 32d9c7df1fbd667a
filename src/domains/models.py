"""Central import of all domain models.

This file imports all models to ensure they are registered with SQLAlchemy's
metadata before any database operations (like creating tables or migrations).
"""

# Workouts domain
from src.domains.workouts.models import (
    Exercise,
    PlanExercise,
    PlanPhase,
    PlanSession,
    WorkoutPlan,
)

__all__ = [
    # Workouts
    "Exercise",
    "WorkoutPlan",
    "PlanPhase",
    "PlanSession",
    "PlanExercise",
]
