"""Row lifecycle transitions, cell and note edits, and dataset recounts."""

from typing import Any, Dict, Optional

from ..core.errors import DatasetNotFoundError, RowNotFoundError
from ..core.ids import utcnow
from ..core.models import Row, RowStatus, User
from ..store.base import LockCondition, RowStore
from ..utils.logging import get_logger
from .permissions import require_edit_fields, require_mutate

logger = get_logger(__name__)


class StatusTracker:
    """Apply authorized mutations to a row's status, cells and note.

    Any status may move to any other status.  The only gate is
    authorization: the caller holds the lock or the row is unlocked.  The
    same check is repeated inside the store's conditional update, so a lock
    taken by someone else in the meantime makes the write fail instead of
    overwriting their work.
    """

    def __init__(self, store: RowStore) -> None:
        self.store = store

    async def _get_row(self, row_id: str) -> Row:
        row = await self.store.get_row(row_id)
        if row is None:
            raise RowNotFoundError(row_id)
        return row

    async def change_status(self, row_id: str, user: User, status: RowStatus) -> bool:
        """Move a row to ``status``.

        Entering completed stamps ``completed_at``; any other target clears
        it.  Raises AuthorizationError when another user holds the lock.
        Returns False if the conditional write lost a race.
        """
        status = RowStatus(status)
        row = await self._get_row(row_id)
        require_mutate(row, user)
        changes: Dict[str, Any] = {
            "status": status,
            "completed_at": utcnow() if status == RowStatus.COMPLETED else None,
        }
        if row.status == RowStatus.COMPLETED and status == RowStatus.COMPLETED:
            # Re-completing keeps the original completion time
            changes["completed_at"] = row.completed_at
        applied = await self.store.update_row(
            row_id, changes, LockCondition.unlocked_or_held_by(user.user_id)
        )
        if applied:
            logger.info(
                f"Status {row.status.value} -> {status.value} by {user.user_id}",
                extra={"row_id": row_id, "user_id": user.user_id},
            )
        return applied

    async def update_field(self, row_id: str, user: User, field: str, value: Any) -> bool:
        """Set one cell. Only the lock holder may edit cells."""
        row = await self._get_row(row_id)
        require_edit_fields(row, user)
        fields = dict(row.fields)
        fields[field] = value
        return await self.store.update_row(
            row_id, {"fields": fields}, LockCondition.held_by(user.user_id)
        )

    async def set_note(self, row_id: str, user: User, note: Optional[str]) -> bool:
        """Replace the row's free-text note; blank text clears it."""
        row = await self._get_row(row_id)
        require_mutate(row, user)
        note = note.strip() if note else None
        return await self.store.update_row(
            row_id, {"note": note or None}, LockCondition.unlocked_or_held_by(user.user_id)
        )

    async def recount(self, dataset_id: str) -> Dict[str, int]:
        """Recompute and persist the dataset counters from its rows."""
        dataset = await self.store.get_dataset(dataset_id)
        if dataset is None:
            raise DatasetNotFoundError(dataset_id)
        rows = await self.store.read_rows(dataset_id)
        counts = {
            "total_rows": len(rows),
            "completed_rows": count_completed(rows),
        }
        await self.store.update_dataset(dataset_id, counts)
        logger.info(
            f"Recounted dataset: {counts['completed_rows']}/{counts['total_rows']} completed",
            extra={"dataset_id": dataset_id},
        )
        return counts


def count_completed(rows) -> int:
    """Number of rows whose status is completed."""
    return sum(1 for r in rows if r.status == RowStatus.COMPLETED)
