from functools import lru_cache
from typing import Literal

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class QueueConfig(BaseModel):
    """Explicit job queue configuration handed to the queue client and worker."""

    name: str = "workout-operations"
    broker_url: str = "redis://localhost:6379/0"
    concurrency: int = 5
    max_attempts: int = 3
    backoff_seconds: float = 2.0
    keep_completed: int = 100
    keep_failed: int = 50
    cleanup_interval_seconds: int = 1800

    @property
    def max_retries(self) -> int:
        """Retries after the first attempt."""
        return max(self.max_attempts - 1, 0)

    def backoff_delay(self, retries: int) -> float:
        """Exponential backoff delay for the given number of prior retries."""
        return self.backoff_seconds * (2**retries)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    APP_NAME: str = "CoachPlan API"
    APP_VERSION: str = "0.3.0"
    APP_ENV: Literal["development", "staging", "production"] = "development"
    DEBUG: bool = True
    API_V1_PREFIX: str = "/api/v1"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./coachplan.db"
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Redis
    REDIS_URL: str = "redis://localhost:6379/0"

    # CORS
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:8080",
    ]

    # Plan synchronization
    SYNC_INSERT_CHUNK_SIZE: int = 100

    # Job queue
    QUEUE_NAME: str = "workout-operations"
    QUEUE_CONCURRENCY: int = 5
    QUEUE_MAX_ATTEMPTS: int = 3
    QUEUE_BACKOFF_SECONDS: float = 2.0
    QUEUE_KEEP_COMPLETED: int = 100
    QUEUE_KEEP_FAILED: int = 50
    QUEUE_CLEANUP_INTERVAL_SECONDS: int = 1800  # 30 min
    QUEUE_SCHEDULER_ENABLED: bool = True

    # Observability (GlitchTip/Sentry)
    GLITCHTIP_DSN: str = ""
    GLITCHTIP_TRACES_SAMPLE_RATE: float = 0.2

    @property
    def queue_config(self) -> QueueConfig:
        """Build the queue configuration struct."""
        return QueueConfig(
            name=self.QUEUE_NAME,
            broker_url=self.REDIS_URL,
            concurrency=self.QUEUE_CONCURRENCY,
            max_attempts=self.QUEUE_MAX_ATTEMPTS,
            backoff_seconds=self.QUEUE_BACKOFF_SECONDS,
            keep_completed=self.QUEUE_KEEP_COMPLETED,
            keep_failed=self.QUEUE_KEEP_FAILED,
            cleanup_interval_seconds=self.QUEUE_CLEANUP_INTERVAL_SECONDS,
        )

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    @property
    def is_development(self) -> bool:
        return self.APP_ENV == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
