"""End-to-end collaboration scenarios across several workspaces.

Each workspace owns its own sync engine, as separate browser sessions
would, and all of them share one store.
"""

import pytest

from csvcollab.collab.workspace import Workspace
from csvcollab.core.errors import StoreError
from csvcollab.core.models import RowStatus
from csvcollab.io.csv_io import import_records
from csvcollab.store.sqlite import SQLiteRowStore
from csvcollab.sync.errors import ErrorType
from csvcollab.sync.locking import LockManager
from csvcollab.sync.status import StatusTracker


class FailingWriteStore(SQLiteRowStore):
    """Store whose row writes fail once `fail_writes` is switched on."""

    def __init__(self, path):
        super().__init__(path)
        self.fail_writes = False

    async def update_row(self, row_id, changes, condition=None):
        if self.fail_writes:
            raise StoreError("database unavailable")
        return await super().update_row(row_id, changes, condition)


@pytest.fixture
def sessions(store, alice, bob, admin):
    return {
        "alice": Workspace(store, alice),
        "bob": Workspace(store, bob),
        "admin": Workspace(store, admin),
    }


async def _open_all(sessions, dataset_id):
    for ws in sessions.values():
        result = await ws.select_dataset(dataset_id)
        assert result.ok


async def _close_all(sessions):
    for ws in sessions.values():
        await ws.close()


@pytest.mark.integration
class TestScenarioSingleOwner:
    """Acquire, edit, complete and release a row."""

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, store, sessions, rows, alice, eventually):
        ws = sessions["alice"]
        row_id = rows[0].row_id
        await _open_all(sessions, rows[0].dataset_id)
        try:
            assert (await ws.lock_row(row_id)).ok
            row = await store.get_row(row_id)
            assert row.lock_holder == alice.user_id
            assert row.status == RowStatus.WORKING

            assert (await ws.update_cell(row_id, "qty", "99")).ok
            row = await store.get_row(row_id)
            assert row.fields["qty"] == "99"
            assert row.lock_holder == alice.user_id

            assert (await ws.change_status(row_id, RowStatus.COMPLETED)).ok
            completed_at = (await store.get_row(row_id)).completed_at
            assert completed_at is not None

            assert (await ws.unlock_row(row_id)).ok
            row = await store.get_row(row_id)
            assert row.lock_holder is None
            assert row.locked_at is None
            assert row.status == RowStatus.COMPLETED
            assert row.completed_at == completed_at

            # Other sessions converge on the same state
            bob_ws = sessions["bob"]
            assert await eventually(
                lambda: bob_ws.snapshot.get(row_id).status == RowStatus.COMPLETED
                and not bob_ws.snapshot.get(row_id).is_locked
            )
            assert ws.snapshot.get(row_id).fields["qty"] == "99"
        finally:
            await _close_all(sessions)

    @pytest.mark.asyncio
    async def test_actions_are_logged(self, store, sessions, rows, alice):
        ws = sessions["alice"]
        await ws.select_dataset(rows[0].dataset_id)
        try:
            await ws.lock_row(rows[0].row_id)
            await ws.change_status(rows[0].row_id, RowStatus.BLOCKED)
            await ws.unlock_row(rows[0].row_id)
        finally:
            await _close_all(sessions)

        actions = [a.action for a in await store.list_activity(user_id=alice.user_id)]
        assert actions == ["unlocked row", "changed status to blocked", "locked row"]

    @pytest.mark.asyncio
    async def test_relocking_own_row_logs_once(self, store, sessions, rows, alice):
        ws = sessions["alice"]
        await ws.select_dataset(rows[0].dataset_id)
        try:
            assert (await ws.lock_row(rows[0].row_id)).ok
            assert (await ws.lock_row(rows[0].row_id)).ok
        finally:
            await _close_all(sessions)

        actions = [a.action for a in await store.list_activity(user_id=alice.user_id)]
        assert actions == ["locked row"]


@pytest.mark.integration
class TestScenarioContention:
    """A second user is rejected until an admin reclaims the lock."""

    @pytest.mark.asyncio
    async def test_admin_reclaims_lock(self, store, sessions, rows, alice, bob, eventually):
        row_id = rows[0].row_id
        await _open_all(sessions, rows[0].dataset_id)
        try:
            assert (await sessions["alice"].lock_row(row_id)).ok
            bob_ws = sessions["bob"]
            assert await eventually(lambda: bob_ws.snapshot.get(row_id).lock_holder == alice.user_id)
            assert bob_ws.active_users().user_ids == [alice.user_id]

            denied = await bob_ws.lock_row(row_id)
            assert not denied.ok
            assert denied.error_type == ErrorType.LOCK_CONFLICT
            assert (await store.get_row(row_id)).lock_holder == alice.user_id

            unlock = await bob_ws.unlock_row(row_id)
            assert not unlock.ok
            assert unlock.error_type == ErrorType.AUTHORIZATION

            assert (await sessions["admin"].force_unlock_row(row_id)).ok
            assert (await store.get_row(row_id)).lock_holder is None

            assert await eventually(lambda: not bob_ws.snapshot.get(row_id).is_locked)
            assert (await bob_ws.lock_row(row_id)).ok
            assert (await store.get_row(row_id)).lock_holder == bob.user_id
        finally:
            await _close_all(sessions)

    @pytest.mark.asyncio
    async def test_stale_snapshot_loses_race(self, store, sessions, rows, alice):
        """Bob's cached row looks free, but the store refuses his acquire."""
        row_id = rows[0].row_id
        bob_ws = sessions["bob"]
        await bob_ws.select_dataset(rows[0].dataset_id)
        # Close bob's channels so his snapshot cannot see alice's lock
        await bob_ws.engine._teardown()
        try:
            await LockManager(store).acquire(row_id, alice)
            assert not bob_ws.snapshot.get(row_id).is_locked

            result = await bob_ws.lock_row(row_id)
            assert not result.ok
            assert result.error_type == ErrorType.LOCK_CONFLICT
            assert result in bob_ws.notices
            # The failed action re-read the row and now shows the winner
            assert bob_ws.snapshot.get(row_id).lock_holder == alice.user_id
        finally:
            await _close_all(sessions)

    @pytest.mark.asyncio
    async def test_member_cannot_force_unlock(self, sessions, rows):
        bob_ws = sessions["bob"]
        result = await bob_ws.force_unlock_row(rows[0].row_id)
        assert not result.ok
        assert result.error_type == ErrorType.AUTHORIZATION


@pytest.mark.integration
class TestScenarioRecount:
    """Completed counts only depend on row status."""

    @pytest.mark.asyncio
    async def test_recount_with_mixed_locks(self, store, sessions, dataset, rows, eventually):
        await _open_all(sessions, dataset.dataset_id)
        try:
            await sessions["alice"].change_status(rows[0].row_id, RowStatus.COMPLETED)
            await sessions["bob"].lock_row(rows[5].row_id)
            await sessions["bob"].change_status(rows[5].row_id, RowStatus.COMPLETED)
            await sessions["admin"].change_status(rows[9].row_id, RowStatus.COMPLETED)
            await sessions["alice"].lock_row(rows[1].row_id)
            await sessions["bob"].lock_row(rows[2].row_id)
            await sessions["admin"].change_status(rows[3].row_id, RowStatus.BLOCKED)

            counts = await StatusTracker(store).recount(dataset.dataset_id)
            assert counts["completed_rows"] == 3
            assert counts["total_rows"] == 10
            assert (await store.get_dataset(dataset.dataset_id)).completed_rows == 3
            assert await eventually(lambda: sessions["alice"].snapshot.completed_rows == 3)
        finally:
            await _close_all(sessions)


@pytest.mark.integration
class TestWorkspaceDisplay:
    @pytest.mark.asyncio
    async def test_unknown_dataset(self, sessions):
        result = await sessions["alice"].select_dataset("missing")
        assert not result.ok
        assert result.error_type == ErrorType.NOT_FOUND

    @pytest.mark.asyncio
    async def test_column_reorder_and_filters(self, sessions, dataset):
        ws = sessions["alice"]
        await ws.select_dataset(dataset.dataset_id)
        try:
            assert ws.column_order == ["name", "qty", "city"]
            assert ws.move_column("city", 0) == ["city", "name", "qty"]
            with pytest.raises(KeyError):
                ws.move_column("missing", 0)

            assert len(ws.filter_rows(query="lyon")) == 5
            assert len(ws.filter_rows(limit=3)) == 3
            assert ws.filter_rows(status=RowStatus.WORKING) == []

            # A refresh with the same columns keeps the custom order
            await ws.refresh()
            assert ws.column_order == ["city", "name", "qty"]
        finally:
            await ws.close()

    @pytest.mark.asyncio
    async def test_refresh_recovers_dropped_channels(self, store, sessions, dataset):
        ws = sessions["alice"]
        await ws.select_dataset(dataset.dataset_id)
        try:
            await ws.engine._teardown()
            assert not ws.engine.connected

            result = await ws.refresh()
            assert result.ok
            assert ws.engine.connected
        finally:
            await ws.close()


@pytest.mark.integration
class TestStoreFailure:
    """A failed write is reported and leaves the snapshot alone."""

    @pytest.mark.asyncio
    async def test_failed_write_keeps_snapshot(self, tmp_path, alice, make_records):
        store = FailingWriteStore(tmp_path / "failing.db")
        await store.upsert_user(alice)
        dataset = await import_records(store, "tasks", make_records(3))
        ws = Workspace(store, alice)
        try:
            assert (await ws.select_dataset(dataset.dataset_id)).ok
            row_id = ws.snapshot.rows[0].row_id
            snapshot = ws.snapshot
            store.fail_writes = True

            for result in (
                await ws.lock_row(row_id),
                await ws.change_status(row_id, RowStatus.COMPLETED),
            ):
                assert not result.ok
                assert result.error_type == ErrorType.STORE
                assert "database unavailable" in result.message
                assert result in ws.notices

            assert ws.snapshot is snapshot
            assert ws.snapshot.version == snapshot.version
            row = await store.get_row(row_id)
            assert row.lock_holder is None
            assert row.status == RowStatus.PENDING
        finally:
            await ws.close()
            store.close()
