"""Integration tests for the csvcollab command line interface."""

import asyncio

import pytest
from typer.testing import CliRunner

from csvcollab.cli.main import app
from csvcollab.core.models import RowStatus
from csvcollab.store.sqlite import SQLiteRowStore

runner = CliRunner()


def _read(db, coro_factory):
    store = SQLiteRowStore(db)
    try:
        return asyncio.run(coro_factory(store))
    finally:
        store.close()


@pytest.fixture
def db(tmp_path):
    return tmp_path / "cli.db"


@pytest.fixture
def workspace(tmp_path, db):
    """Database with an admin, a member and one imported dataset."""
    csv_path = tmp_path / "tasks.csv"
    csv_path.write_text("task,owner\nwrite docs,\nfix bug,\nship,\n", encoding="utf-8")

    for args in (
        ["add-user", "root@example.com", "--id", "root", "--admin", "--db", str(db)],
        ["add-user", "kim@example.com", "--id", "kim", "--name", "Kim Park", "--db", str(db)],
        ["add-user", "lee@example.com", "--id", "lee", "--db", str(db)],
    ):
        result = runner.invoke(app, args)
        assert result.exit_code == 0, result.output

    result = runner.invoke(app, ["import", str(csv_path), "--user", "root", "--db", str(db)])
    assert result.exit_code == 0, result.output
    assert "Imported 3 rows" in result.output

    datasets = _read(db, lambda s: s.list_datasets())
    dataset_id = datasets[0].dataset_id
    rows = _read(db, lambda s: s.read_rows(dataset_id))
    return {"dataset_id": dataset_id, "row_ids": [r.row_id for r in rows], "csv": csv_path}


def test_add_user_assigns_color(db):
    result = runner.invoke(app, ["add-user", "ann@example.com", "--id", "ann", "--db", str(db)])
    assert result.exit_code == 0
    user = _read(db, lambda s: s.get_user("ann"))
    assert user.color.startswith("#")
    assert not user.is_admin


def test_import_requires_admin(db, workspace):
    result = runner.invoke(app, ["import", str(workspace["csv"]), "--user", "kim", "--db", str(db)])
    assert result.exit_code == 1
    assert "administrators" in result.output


def test_lock_status_and_unlock(db, workspace):
    row_id = workspace["row_ids"][0]

    result = runner.invoke(app, ["lock", row_id, "--user", "kim", "--db", str(db)])
    assert result.exit_code == 0, result.output

    result = runner.invoke(app, ["edit", row_id, "owner", "kim", "--user", "kim", "--db", str(db)])
    assert result.exit_code == 0, result.output

    result = runner.invoke(app, ["status", row_id, "completed", "--user", "kim", "--db", str(db)])
    assert result.exit_code == 0, result.output

    result = runner.invoke(app, ["unlock", row_id, "--user", "kim", "--db", str(db)])
    assert result.exit_code == 0, result.output

    row = _read(db, lambda s: s.get_row(row_id))
    assert row.status == RowStatus.COMPLETED
    assert row.fields["owner"] == "kim"
    assert row.lock_holder is None


def test_contention_and_force_unlock(db, workspace):
    row_id = workspace["row_ids"][1]
    runner.invoke(app, ["lock", row_id, "--user", "kim", "--db", str(db)])

    result = runner.invoke(app, ["lock", row_id, "--user", "lee", "--db", str(db)])
    assert result.exit_code == 1
    assert "lock_conflict" in result.output

    result = runner.invoke(app, ["unlock", row_id, "--user", "lee", "--force", "--db", str(db)])
    assert result.exit_code == 1

    result = runner.invoke(app, ["unlock", row_id, "--user", "root", "--force", "--db", str(db)])
    assert result.exit_code == 0, result.output
    assert _read(db, lambda s: s.get_row(row_id)).lock_holder is None


def test_note_and_recount(db, workspace):
    row_id = workspace["row_ids"][2]
    result = runner.invoke(app, ["note", row_id, "needs review", "--user", "lee", "--db", str(db)])
    assert result.exit_code == 0, result.output
    runner.invoke(app, ["status", row_id, "completed", "--user", "lee", "--db", str(db)])

    result = runner.invoke(app, ["recount", workspace["dataset_id"], "--db", str(db)])
    assert result.exit_code == 0
    assert "1/3 rows completed" in result.output
    assert _read(db, lambda s: s.get_row(row_id)).note == "needs review"


def test_export(tmp_path, db, workspace):
    out = tmp_path / "out" / "tasks.csv"
    result = runner.invoke(app, ["export", workspace["dataset_id"], "-o", str(out), "--db", str(db)])
    assert result.exit_code == 0
    assert out.read_text(encoding="utf-8").splitlines()[1] == '"write docs",""'


def test_listing_commands(db, workspace):
    for args in (
        ["datasets", "--db", str(db)],
        ["rows", workspace["dataset_id"], "--db", str(db)],
        ["stats", "--db", str(db)],
        ["stats", "--user", "kim", "--db", str(db)],
        ["activity", "--db", str(db)],
    ):
        result = runner.invoke(app, args)
        assert result.exit_code == 0, result.output


def test_unknown_user(db, workspace):
    result = runner.invoke(app, ["lock", workspace["row_ids"][0], "--user", "nobody", "--db", str(db)])
    assert result.exit_code == 1
    assert "Unknown user" in result.output


def test_init_creates_database(tmp_path):
    db = tmp_path / "nested" / "fresh.db"
    result = runner.invoke(app, ["init", "--db", str(db)])
    assert result.exit_code == 0, result.output
    assert db.exists()
    assert _read(db, lambda s: s.list_datasets()) == []
