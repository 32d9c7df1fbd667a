"""Error taxonomy for plan synchronization."""
import enum

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError


class SyncErrorCode(str, enum.Enum):
    """Typed outcome of a failed synchronization."""

    PLAN_NOT_FOUND = "plan_not_found"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    VALIDATION = "validation_error"
    TRANSIENT = "transient"
    PERSISTENCE = "persistence_error"
    DEPRECATED = "deprecated"


class PlanSyncError(Exception):
    """Raised inside the synchronizer and converted to a failed result at its boundary."""

    def __init__(self, code: SyncErrorCode, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def classify_database_error(exc: SQLAlchemyError) -> SyncErrorCode:
    """Map a persistence-layer exception to a sync error code."""
    if isinstance(exc, (OperationalError, InterfaceError)):
        return SyncErrorCode.TRANSIENT
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return SyncErrorCode.TRANSIENT
    return SyncErrorCode.PERSISTENCE
