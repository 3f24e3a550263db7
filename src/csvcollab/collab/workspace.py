"""Collaborative workspace session.

A workspace is one user's view onto the shared datasets.  It owns the
client's :class:`~csvcollab.sync.engine.SyncEngine` and exposes the row
actions (lock, unlock, status, cell and note edits).  Each action checks
authorization against the cached snapshot first, performs the
conditional write, records an activity entry where the original product
does, and finally re-fetches and notifies peers.  Failures come back as
:class:`ActionResult` values so the session stays usable after any
single failed action.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..core.errors import AuthorizationError, DatasetNotFoundError, LockConflictError
from ..core.models import ActivityEntry, Dataset, Row, RowStatus, User
from ..store.base import RowStore
from ..sync.engine import Snapshot, SyncEngine
from ..sync.errors import ActionResult, ErrorHandler
from ..sync.locking import LockManager
from ..sync.permissions import can_edit_fields, can_force_release, can_mutate
from ..sync.presence import Presence
from ..sync.status import StatusTracker
from ..utils.logging import get_logger

logger = get_logger(__name__)


class Workspace:
    """Container for one user's collaborative editing session."""

    def __init__(
        self,
        store: RowStore,
        user: User,
        engine: Optional[SyncEngine] = None,
    ) -> None:
        self.store = store
        self.user = user
        self.engine = engine or SyncEngine(store)
        self.locks = LockManager(store)
        self.status = StatusTracker(store)
        self.errors = ErrorHandler()
        self.column_order: List[str] = []
        self.notices: List[ActionResult] = []

    # Scope --------------------------------------------------------------

    @property
    def snapshot(self) -> Optional[Snapshot]:
        return self.engine.snapshot

    @property
    def dataset_id(self) -> Optional[str]:
        return self.engine.dataset_id

    async def datasets(self) -> List[Dataset]:
        return await self.store.list_datasets(active_only=True)

    async def select_dataset(self, dataset_id: str) -> ActionResult:
        """Switch the active dataset; resets the column order."""
        self.column_order = []
        try:
            if await self.store.get_dataset(dataset_id) is None:
                raise DatasetNotFoundError(dataset_id)
            snapshot = await self.engine.open(dataset_id)
        except Exception as e:
            return self._report(self.errors.to_result("select", e))
        self.column_order = snapshot.columns if snapshot else []
        logger.info(f"User {self.user.email} selected dataset", extra={"dataset_id": dataset_id})
        return ActionResult.success("select")

    async def refresh(self) -> ActionResult:
        """Manual refresh; also the way back after a dropped channel."""
        try:
            if self.engine.connected:
                await self.engine.refresh()
            else:
                await self.engine.resubscribe()
        except Exception as e:
            return self._report(self.errors.to_result("refresh", e))
        self._sync_columns()
        return ActionResult.success("refresh")

    async def close(self) -> None:
        await self.engine.close()

    # Row actions --------------------------------------------------------

    def _cached_row(self, row_id: str) -> Optional[Row]:
        return self.snapshot.get(row_id) if self.snapshot else None

    def _report(self, result: ActionResult) -> ActionResult:
        if not result.ok:
            self.notices.append(result)
        return result

    async def _run(
        self,
        action: str,
        row_id: str,
        write: Callable[[], Awaitable[bool]],
        activity: Optional[str] = None,
        conflict: bool = False,
    ) -> ActionResult:
        """Perform one write, log it, then re-sync and notify peers."""
        try:
            applied = await write()
        except Exception as e:
            return self._report(self.errors.to_result(action, e, row_id=row_id))

        if not applied:
            # A lost race is only visible after re-reading
            await self._resync(action, row_id)
            if conflict:
                row = self._cached_row(row_id)
                error: Exception = LockConflictError(row_id, row.lock_holder if row else None)
            else:
                error = AuthorizationError(f"{action} on row {row_id} was not applied")
            return self._report(self.errors.to_result(action, error, row_id=row_id))

        if activity:
            await self._log(activity, row_id)
        await self._resync(action, row_id)
        return ActionResult.success(action, row_id=row_id)

    async def _resync(self, action: str, row_id: str) -> None:
        if self.engine.dataset_id is None:
            return
        try:
            await self.engine.after_write(row_id, action)
        except Exception as e:
            self._report(self.errors.to_result("refresh", e, row_id=row_id))
        self._sync_columns()

    async def _log(self, action: str, row_id: str, details: Optional[Dict[str, Any]] = None) -> None:
        try:
            await self.store.log_activity(
                ActivityEntry(
                    user_id=self.user.user_id,
                    action=action,
                    resource_type="row",
                    resource_id=row_id,
                    details=details,
                )
            )
        except Exception as e:
            logger.warning(f"Could not record activity '{action}': {e}", extra={"row_id": row_id})

    def _blocked(self, action: str, row_id: str, message: str) -> ActionResult:
        return self._report(self.errors.to_result(action, AuthorizationError(message), row_id=row_id))

    async def lock_row(self, row_id: str) -> ActionResult:
        row = self._cached_row(row_id)
        if row is not None and row.lock_holder and row.lock_holder != self.user.user_id:
            return self._report(
                self.errors.to_result("lock", LockConflictError(row_id, row.lock_holder), row_id=row_id)
            )
        # Re-locking our own row writes nothing, so there is nothing to log
        already_held = row is not None and row.lock_holder == self.user.user_id
        return await self._run(
            "lock",
            row_id,
            lambda: self.locks.acquire(row_id, self.user),
            activity=None if already_held else "locked row",
            conflict=True,
        )

    async def unlock_row(self, row_id: str) -> ActionResult:
        row = self._cached_row(row_id)
        if row is not None and not row.is_locked:
            return ActionResult.success("unlock", row_id=row_id)
        if row is not None and not can_force_release(row, self.user):
            return self._blocked("unlock", row_id, f"Row {row_id} is locked by {row.lock_holder}")
        return await self._run(
            "unlock",
            row_id,
            lambda: self.locks.release(row_id, self.user),
            activity="unlocked row",
        )

    async def force_unlock_row(self, row_id: str) -> ActionResult:
        if not self.user.is_admin:
            return self._blocked("force_unlock", row_id, "Only administrators can force-release locks")
        return await self._run(
            "force_unlock",
            row_id,
            lambda: self.locks.force_release(row_id, self.user),
            activity="force-unlocked row",
        )

    async def change_status(self, row_id: str, status: RowStatus) -> ActionResult:
        status = RowStatus(status)
        row = self._cached_row(row_id)
        if row is not None and not can_mutate(row, self.user):
            return self._blocked("status", row_id, f"Row {row_id} is locked by {row.lock_holder}")
        return await self._run(
            "status",
            row_id,
            lambda: self.status.change_status(row_id, self.user, status),
            activity=f"changed status to {status.value}",
        )

    async def update_cell(self, row_id: str, column: str, value: Any) -> ActionResult:
        row = self._cached_row(row_id)
        if row is not None and not can_edit_fields(row, self.user):
            return self._blocked("edit", row_id, f"Lock row {row_id} before editing")
        return await self._run(
            "edit",
            row_id,
            lambda: self.status.update_field(row_id, self.user, column, value),
        )

    async def set_note(self, row_id: str, note: Optional[str]) -> ActionResult:
        row = self._cached_row(row_id)
        if row is not None and not can_mutate(row, self.user):
            return self._blocked("note", row_id, f"Row {row_id} is locked by {row.lock_holder}")
        return await self._run(
            "note",
            row_id,
            lambda: self.status.set_note(row_id, self.user, note),
        )

    # Display helpers ----------------------------------------------------

    def _sync_columns(self) -> None:
        columns = self.snapshot.columns if self.snapshot else []
        # Reset when the column set differs (different file structure)
        if not self.column_order or sorted(self.column_order) != sorted(columns):
            self.column_order = columns

    def move_column(self, column: str, new_index: int) -> List[str]:
        """Reorder a column for display. Does not touch stored data."""
        if column not in self.column_order:
            raise KeyError(column)
        order = [c for c in self.column_order if c != column]
        new_index = max(0, min(new_index, len(order)))
        order.insert(new_index, column)
        self.column_order = order
        return order

    def filter_rows(
        self,
        status: Optional[RowStatus] = None,
        query: str = "",
        limit: Optional[int] = None,
    ) -> List[Row]:
        """Filter the cached snapshot by status and free text."""
        if self.snapshot is None:
            return []
        rows = self.snapshot.filter(status=status, query=query)
        return rows[:limit] if limit is not None else rows

    def active_users(self) -> Presence:
        return self.snapshot.presence if self.snapshot else Presence()
