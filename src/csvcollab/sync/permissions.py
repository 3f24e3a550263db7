"""Authorization predicates shared by every mutating row operation."""

from ..core.errors import AuthorizationError
from ..core.models import Row, User


def can_mutate(row: Row, user: User) -> bool:
    """Status and note changes: the row is unlocked or the user holds it."""
    return row.lock_holder is None or row.lock_holder == user.user_id


def can_force_release(row: Row, user: User) -> bool:
    """Releasing a lock: anyone allowed to mutate, plus administrators."""
    return can_mutate(row, user) or user.is_admin


def can_edit_fields(row: Row, user: User) -> bool:
    """Cell edits require holding the lock."""
    return row.lock_holder == user.user_id


def can_acquire(row: Row, user: User) -> bool:
    return can_mutate(row, user)


def require_mutate(row: Row, user: User) -> None:
    if not can_mutate(row, user):
        raise AuthorizationError(
            f"User '{user.user_id}' cannot modify row {row.row_id}: locked by '{row.lock_holder}'."
        )


def require_edit_fields(row: Row, user: User) -> None:
    if not can_edit_fields(row, user):
        raise AuthorizationError(
            f"User '{user.user_id}' must lock row {row.row_id} before editing cells."
        )


def require_force_release(row: Row, user: User) -> None:
    if not can_force_release(row, user):
        raise AuthorizationError(
            f"Cannot unlock: row {row.row_id} is locked by '{row.lock_holder}', not '{user.user_id}'."
        )
