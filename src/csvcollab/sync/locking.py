"""Optimistic row locking on top of the store's conditional updates."""

from ..core.errors import AuthorizationError, RowNotFoundError
from ..core.ids import utcnow
from ..core.models import Row, RowStatus, User
from ..store.base import LockCondition, RowStore
from ..utils.logging import get_logger
from .permissions import can_acquire, can_force_release

logger = get_logger(__name__)


class LockManager:
    """Acquire, release and force-release exclusive row locks.

    Locks are last-write-wins optimistic updates guarded by the store:
    an acquire only applies while the row is unlocked, so when two users
    race the store lets exactly one of them through.  A failed acquire is
    not an error; callers re-read the row to learn who won.

    Parameters
    ----------
    store:
        Row store performing the conditional updates.
    """

    def __init__(self, store: RowStore) -> None:
        self.store = store

    async def _get_row(self, row_id: str) -> Row:
        row = await self.store.get_row(row_id)
        if row is None:
            raise RowNotFoundError(row_id)
        return row

    async def acquire(self, row_id: str, user: User) -> bool:
        """Lock a row for ``user``.

        Sets the holder, lock time and assignee, and moves a pending row to
        working.  Returns False when another user holds the lock.  Acquiring
        a row the user already holds succeeds without touching it.
        """
        row = await self._get_row(row_id)
        if row.lock_holder == user.user_id:
            return True
        if not can_acquire(row, user):
            logger.info(
                f"Acquire by {user.user_id} rejected: row held by {row.lock_holder}",
                extra={"row_id": row_id, "user_id": user.user_id},
            )
            return False

        changes = {
            "lock_holder": user.user_id,
            "locked_at": utcnow(),
            "assigned_to": user.user_id,
        }
        if row.status == RowStatus.PENDING:
            changes["status"] = RowStatus.WORKING
        acquired = await self.store.update_row(row_id, changes, LockCondition.unlocked())
        if acquired:
            logger.info(f"Locked row for user {user.user_id}", extra={"row_id": row_id, "user_id": user.user_id})
        else:
            logger.info(
                f"Acquire by {user.user_id} lost the race",
                extra={"row_id": row_id, "user_id": user.user_id},
            )
        return acquired

    async def release(self, row_id: str, user: User) -> bool:
        """Remove a lock.

        Only the lock holder or an admin can unlock.  Status and assignee
        are left as they were.  Returns True if the row is unlocked by
        this call; releasing an unlocked row is a no-op returning False.
        """
        row = await self._get_row(row_id)
        if row.lock_holder is None:
            return False
        if not can_force_release(row, user):
            logger.info(
                f"Release by {user.user_id} rejected: row held by {row.lock_holder}",
                extra={"row_id": row_id, "user_id": user.user_id},
            )
            return False
        # Holders release conditionally; an admin override is unconditional
        condition = LockCondition.held_by(user.user_id) if row.lock_holder == user.user_id else None
        released = await self.store.update_row(row_id, {"lock_holder": None, "locked_at": None}, condition)
        if released:
            logger.info(f"Unlocked row by user {user.user_id}", extra={"row_id": row_id, "user_id": user.user_id})
        return released

    async def force_release(self, row_id: str, admin: User) -> bool:
        """Clear a lock regardless of holder. Admin use only."""
        if not admin.is_admin:
            raise AuthorizationError(f"User '{admin.user_id}' is not an administrator.")
        await self._get_row(row_id)
        released = await self.store.update_row(row_id, {"lock_holder": None, "locked_at": None})
        if released:
            logger.info(f"Force-unlocked row by {admin.user_id}", extra={"row_id": row_id, "user_id": admin.user_id})
        return released
