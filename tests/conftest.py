"""Test configuration and fixtures for CoachPlan API."""

from collections.abc import AsyncGenerator
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from src.config.database import Base, get_db
from src.config.settings import QueueConfig
from src.core.redis import JobHistory, clear_memory_fallback
from src.domains.queue.client import QueueClient
from src.main import create_app
from tests.factories import CLIENT_ID, TRAINER_ID, exercise_item, phase_item, session_item

# Test database URL - use SQLite in-memory for tests
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Use asyncio backend for tests."""
    return "asyncio"


@pytest.fixture(autouse=True)
def redis_unavailable():
    """Run job history against the in-memory fallback."""
    clear_memory_fallback()
    with patch("src.core.redis.get_redis", return_value=None):
        yield
    clear_memory_fallback()


@pytest.fixture(scope="function")
async def test_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Import all models to register them
    from src.domains import models  # noqa: F401

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine (used by queue processing)."""
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def queue_config() -> QueueConfig:
    return QueueConfig(name="test-workout-operations")


@pytest.fixture
def job_history(queue_config: QueueConfig) -> JobHistory:
    return JobHistory(queue_config.name, keep_completed=queue_config.keep_completed, keep_failed=queue_config.keep_failed)


@pytest.fixture
def mock_celery() -> MagicMock:
    """Celery app stand-in that records sent tasks."""
    return MagicMock()


@pytest.fixture
def queue_client(mock_celery, queue_config, job_history) -> QueueClient:
    return QueueClient(mock_celery, queue_config, job_history)


@pytest.fixture(scope="function")
async def client(test_engine, db_session, queue_client) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with database session override."""
    app = create_app()
    app.state.queue_client = queue_client

    # Override the database dependency
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    app.dependency_overrides.clear()


# =============================================================================
# Plan Fixtures
# =============================================================================


@pytest.fixture
def plan_tree() -> list[dict[str, Any]]:
    """Two phases; the first has two sessions with exercises."""
    return [
        phase_item(
            "Hypertrophy",
            0,
            is_active=True,
            sessions=[
                session_item(
                    "Upper",
                    0,
                    [
                        exercise_item("Bench Press", "A", setsMin=3, repsMin=8, repsMax=10),
                        exercise_item("Barbell Row", "B", setsMin=3),
                    ],
                ),
                session_item("Lower", 1, [exercise_item("Back Squat", "A", setsMin=5)]),
            ],
        ),
        phase_item("Strength", 1, sessions=[session_item("Full Body", 0)]),
    ]


@pytest.fixture
async def sample_plan(db_session: AsyncSession, plan_tree: list[dict[str, Any]]) -> dict[str, Any]:
    """Create a plan through the synchronizer and return its stored tree."""
    from src.domains.workouts.schemas import PlanCreate
    from src.domains.workouts.sync_service import PlanSyncService

    service = PlanSyncService(db_session)
    result = await service.create_plan(
        PlanCreate.model_validate(
            {
                "planName": "Spring Block",
                "clientId": CLIENT_ID,
                "trainerId": TRAINER_ID,
                "phases": plan_tree,
            }
        ),
        actor_id=TRAINER_ID,
    )
    assert result.success, result.error

    tree = await service.get_plan_tree(result.plan_id)
    return {
        "id": result.plan_id,
        "updated_at": tree.updated_at,
        "tree": tree,
    }

