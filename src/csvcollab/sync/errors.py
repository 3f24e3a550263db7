"""Error classification and action results for collaborative row actions.

Every workspace action catches failures at the point of the action and
turns them into an :class:`ActionResult`, so a single failed action never
takes the session down.  :class:`ErrorHandler` decides which category a
raised exception belongs to.
"""

import sqlite3
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from ..core.errors import (
    AuthorizationError,
    LockConflictError,
    NotFoundError,
    StoreError,
    SubscriptionError,
)
from ..utils.logging import get_logger

logger = get_logger(__name__)


class ErrorType(Enum):
    """Classification of failures for reporting."""
    LOCK_CONFLICT = "lock_conflict"    # lost the race, re-observe state
    AUTHORIZATION = "authorization"    # blocked action
    STORE = "store"                    # network/database failure
    SUBSCRIPTION = "subscription"      # stale until resubscribe
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


class ActionResult(BaseModel):
    """Outcome of a user action as reported to the caller."""

    ok: bool
    action: str
    row_id: Optional[str] = None
    error_type: Optional[ErrorType] = None
    message: Optional[str] = None

    @classmethod
    def success(cls, action: str, row_id: Optional[str] = None) -> "ActionResult":
        return cls(ok=True, action=action, row_id=row_id)

    @classmethod
    def failure(
        cls,
        action: str,
        error_type: ErrorType,
        message: str,
        row_id: Optional[str] = None,
    ) -> "ActionResult":
        return cls(ok=False, action=action, row_id=row_id, error_type=error_type, message=message)


class ErrorHandler:
    """Classify exceptions raised while performing row actions."""

    def classify_error(self, error: Exception) -> ErrorType:
        if isinstance(error, LockConflictError):
            return ErrorType.LOCK_CONFLICT
        if isinstance(error, AuthorizationError):
            return ErrorType.AUTHORIZATION
        if isinstance(error, NotFoundError):
            return ErrorType.NOT_FOUND
        if isinstance(error, SubscriptionError):
            return ErrorType.SUBSCRIPTION
        if isinstance(error, (StoreError, sqlite3.Error, OSError, ConnectionError)):
            return ErrorType.STORE
        return ErrorType.UNKNOWN

    def is_fatal(self, error_type: ErrorType) -> bool:
        """Whether the session must stop after this error.

        Never true: every failure leaves the workspace navigable, and the
        user can retry or pick another row.
        """
        return False

    def to_result(self, action: str, error: Exception, row_id: Optional[str] = None) -> ActionResult:
        """Build the failure notice shown to the user."""
        error_type = self.classify_error(error)
        if error_type in (ErrorType.STORE, ErrorType.UNKNOWN):
            logger.error(f"{action} failed on row {row_id}: {error}", extra={"row_id": row_id, "action": action})
        else:
            logger.info(f"{action} rejected on row {row_id}: {error}", extra={"row_id": row_id, "action": action})
        return ActionResult.failure(action, error_type, str(error) or error_type.value, row_id=row_id)
