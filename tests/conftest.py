"""Shared fixtures: a temporary SQLite store, users and a seeded dataset."""

import asyncio

import pytest
import pytest_asyncio

from csvcollab.core.models import User, UserRole
from csvcollab.io.csv_io import import_records
from csvcollab.store.sqlite import SQLiteRowStore


@pytest.fixture
def store(tmp_path):
    """Fresh SQLite store in a temporary directory."""
    s = SQLiteRowStore(tmp_path / "collab.db")
    yield s
    s.close()


@pytest.fixture
def alice() -> User:
    return User(user_id="u-alice", email="alice@example.com", full_name="Alice Adams", color="#3B82F6")


@pytest.fixture
def bob() -> User:
    return User(user_id="u-bob", email="bob@example.com", full_name="Bob Brown", color="#10B981")


@pytest.fixture
def admin() -> User:
    return User(
        user_id="u-admin",
        email="admin@example.com",
        full_name="Ada Admin",
        color="#EF4444",
        role=UserRole.ADMIN,
    )


def _records(count: int = 10):
    return [{"name": f"item {i}", "qty": str(i), "city": "Paris" if i % 2 else "Lyon"} for i in range(count)]


@pytest_asyncio.fixture
async def dataset(store, alice, bob, admin):
    """Ten pending rows owned by nobody, plus three registered users."""
    for user in (alice, bob, admin):
        await store.upsert_user(user)
    return await import_records(store, "tasks", _records(10), uploaded_by=admin.user_id)


@pytest_asyncio.fixture
async def rows(store, dataset):
    return await store.read_rows(dataset.dataset_id)


@pytest.fixture
def eventually():
    """Poll an async-friendly predicate until it holds or time runs out."""

    async def _wait(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if predicate():
                return True
            await asyncio.sleep(interval)
        return predicate()

    return _wait


@pytest.fixture
def make_records():
    """Factory for simple three-column records."""
    return _records
