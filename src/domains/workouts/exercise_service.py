"""Exercise catalog operations."""
import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import func, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.domains.workouts.exceptions import PlanSyncError, SyncErrorCode
from src.domains.workouts.models import Exercise

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CatalogReference:
    """Name-based reference to a catalog exercise, with defaults used when creating it."""

    name: str
    motion: str | None = None
    target_area: str | None = None

    @property
    def key(self) -> str:
        return normalize_exercise_name(self.name)


def normalize_exercise_name(name: str) -> str:
    return " ".join(name.split()).lower()


class ExerciseCatalogService:
    """Lookup and creation of catalog exercises."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_exercise_by_id(self, exercise_id: uuid.UUID) -> Exercise | None:
        """Get an exercise by ID."""
        result = await self.db.execute(
            select(Exercise).where(Exercise.id == exercise_id)
        )
        return result.scalar_one_or_none()

    async def get_by_name(self, name: str) -> Exercise | None:
        """Get an exercise by name, ignoring case and extra whitespace."""
        result = await self.db.execute(
            select(Exercise).where(func.lower(Exercise.name) == normalize_exercise_name(name))
        )
        return result.scalars().first()

    async def list_exercises(
        self,
        search: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Exercise]:
        """List exercises with an optional name filter."""
        query = select(Exercise)

        if search:
            query = query.where(Exercise.name.ilike(f"%{search}%"))

        query = query.order_by(Exercise.name).limit(limit).offset(offset)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def resolve_exercise_ids(
        self,
        references: list[CatalogReference],
        created_by_user_id: str | None = None,
    ) -> dict[str, uuid.UUID]:
        """Resolve catalog ids by name, creating the missing exercises.

        Returns a mapping keyed by normalized name. Runs inside the caller's
        transaction and does not commit.
        """
        wanted: dict[str, CatalogReference] = {}
        for reference in references:
            if reference.key and reference.key not in wanted:
                wanted[reference.key] = reference
        if not wanted:
            return {}

        result = await self.db.execute(
            select(Exercise.id, Exercise.name).where(func.lower(Exercise.name).in_(list(wanted)))
        )
        resolved = {normalize_exercise_name(row.name): row.id for row in result}

        missing = [reference for key, reference in wanted.items() if key not in resolved]
        if missing:
            rows = [
                {
                    "id": uuid.uuid4(),
                    "name": " ".join(reference.name.split()),
                    "motion": reference.motion,
                    "target_area": reference.target_area,
                    "created_by_user_id": created_by_user_id,
                }
                for reference in missing
            ]
            try:
                await self.db.execute(insert(Exercise), rows)
            except IntegrityError as e:
                # Another transaction created one of these names first
                logger.warning("Catalog insert raced with a concurrent writer: %s", e.orig)
                raise PlanSyncError(
                    SyncErrorCode.TRANSIENT, "Exercise catalog changed concurrently"
                ) from e
            for row in rows:
                resolved[normalize_exercise_name(row["name"])] = row["id"]

        return resolved
