"""Integration tests for the CSV Collab web API.

These tests spin up a TestClient against the FastAPI app with the store
dependency pointed at a temporary SQLite database.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from csvcollab.config.settings import settings
from csvcollab.store.sqlite import SQLiteRowStore
from csvcollab.web.app import app
from csvcollab.web.routes import get_store

CSV_BODY = b"sku,title,price\nA1,Desk lamp,19.99\nA2,Chair,49.00\nA3,Desk,120.00\n"


@pytest.fixture
def api_store(tmp_path, monkeypatch, alice, bob, admin):
    """Store with three users; exports are written under tmp_path."""
    monkeypatch.setattr(settings, "data_dir", tmp_path)
    store = SQLiteRowStore(tmp_path / "api.db")
    for user in (alice, bob, admin):
        asyncio.run(store.upsert_user(user))
    app.dependency_overrides[get_store] = lambda: store
    yield store
    app.dependency_overrides.clear()
    store.close()


@pytest.fixture
def client(api_store):
    """Return a TestClient for the FastAPI app."""
    return TestClient(app)


def _as(user):
    return {"X-User-Id": user.user_id}


@pytest.fixture
def uploaded(client, admin):
    response = client.post(
        "/api/datasets",
        files={"file": ("catalog.csv", CSV_BODY, "text/csv")},
        headers=_as(admin),
    )
    assert response.status_code == 200
    return response.json()


def _row_ids(client, dataset_id):
    data = client.get(f"/api/datasets/{dataset_id}/rows").json()
    return [r["row_id"] for r in data["rows"]]


def test_health(client):
    assert client.get("/api/health").json() == {"status": "ok"}


class TestDatasets:
    def test_upload_requires_admin(self, client, alice):
        response = client.post(
            "/api/datasets",
            files={"file": ("catalog.csv", CSV_BODY, "text/csv")},
            headers=_as(alice),
        )
        assert response.status_code == 403

    def test_upload_requires_known_user(self, client):
        response = client.post("/api/datasets", files={"file": ("catalog.csv", CSV_BODY, "text/csv")})
        assert response.status_code == 401
        response = client.post(
            "/api/datasets",
            files={"file": ("catalog.csv", CSV_BODY, "text/csv")},
            headers={"X-User-Id": "ghost"},
        )
        assert response.status_code == 401

    def test_upload_and_list(self, client, uploaded):
        assert uploaded["name"] == "catalog"
        assert uploaded["total_rows"] == 3

        listed = client.get("/api/datasets").json()
        assert [d["dataset_id"] for d in listed] == [uploaded["dataset_id"]]
        assert listed[0]["progress"] == 0.0

        detail = client.get(f"/api/datasets/{uploaded['dataset_id']}").json()
        assert detail["stats"]["by_status"]["pending"] == 3

    def test_missing_dataset(self, client):
        assert client.get("/api/datasets/missing").status_code == 404
        assert client.get("/api/datasets/missing/rows").status_code == 404
        assert client.post("/api/datasets/missing/recount").status_code == 404

    def test_rows_snapshot_and_filters(self, client, uploaded):
        dataset_id = uploaded["dataset_id"]
        data = client.get(f"/api/datasets/{dataset_id}/rows").json()
        assert data["total"] == 3
        assert [r["sequence"] for r in data["rows"]] == [0, 1, 2]
        assert data["presence"]["visible"] == []

        desk = client.get(f"/api/datasets/{dataset_id}/rows", params={"q": "desk"}).json()
        assert desk["matching"] == 2
        limited = client.get(f"/api/datasets/{dataset_id}/rows", params={"limit": 1}).json()
        assert len(limited["rows"]) == 1
        assert limited["matching"] == 3

    def test_append_and_export(self, client, uploaded, admin):
        dataset_id = uploaded["dataset_id"]
        response = client.post(
            f"/api/datasets/{dataset_id}/append",
            files={"file": ("more.csv", b"sku,title,price\nA4,Shelf,35.00\n", "text/csv")},
            headers=_as(admin),
        )
        assert response.json()["rows_added"] == 1

        exported = client.get(f"/api/datasets/{dataset_id}/export")
        assert exported.status_code == 200
        lines = exported.text.splitlines()
        assert lines[0] == '"sku","title","price"'
        assert lines[-1] == '"A4","Shelf","35.00"'

    def test_delete(self, client, uploaded, admin, alice):
        dataset_id = uploaded["dataset_id"]
        assert client.delete(f"/api/datasets/{dataset_id}", headers=_as(alice)).status_code == 403
        assert client.delete(f"/api/datasets/{dataset_id}", headers=_as(admin)).status_code == 200
        assert client.get(f"/api/datasets/{dataset_id}").status_code == 404


class TestRowActions:
    def test_lock_edit_complete_release(self, client, uploaded, alice):
        row_id = _row_ids(client, uploaded["dataset_id"])[0]

        locked = client.post(f"/api/rows/{row_id}/lock", headers=_as(alice)).json()
        assert locked["ok"]
        assert locked["row"]["lock_holder"] == alice.user_id
        assert locked["row"]["status"] == "working"

        edited = client.post(
            f"/api/rows/{row_id}/fields", json={"column": "price", "value": "17.50"}, headers=_as(alice)
        ).json()
        assert edited["row"]["fields"]["price"] == "17.50"

        done = client.post(f"/api/rows/{row_id}/status", json={"status": "completed"}, headers=_as(alice)).json()
        assert done["row"]["completed_at"] is not None

        released = client.post(f"/api/rows/{row_id}/unlock", headers=_as(alice)).json()
        assert released["ok"]
        assert released["row"]["lock_holder"] is None
        assert released["row"]["status"] == "completed"

        counts = client.post(f"/api/datasets/{uploaded['dataset_id']}/recount").json()
        assert counts == {"total_rows": 3, "completed_rows": 1}

    def test_contention(self, client, uploaded, alice, bob, admin):
        row_id = _row_ids(client, uploaded["dataset_id"])[0]
        client.post(f"/api/rows/{row_id}/lock", headers=_as(alice))

        denied = client.post(f"/api/rows/{row_id}/lock", headers=_as(bob)).json()
        assert not denied["ok"]
        assert denied["row"]["lock_holder"] == alice.user_id
        assert alice.user_id in denied["message"]

        assert not client.post(f"/api/rows/{row_id}/unlock", headers=_as(bob)).json()["ok"]
        response = client.post(f"/api/rows/{row_id}/status", json={"status": "blocked"}, headers=_as(bob))
        assert response.status_code == 403
        assert client.post(f"/api/rows/{row_id}/force-unlock", headers=_as(bob)).status_code == 403

        forced = client.post(f"/api/rows/{row_id}/force-unlock", headers=_as(admin)).json()
        assert forced["ok"]
        assert client.post(f"/api/rows/{row_id}/lock", headers=_as(bob)).json()["ok"]

        data = client.get(f"/api/datasets/{uploaded['dataset_id']}/rows").json()
        assert [u["user_id"] for u in data["presence"]["visible"]] == [bob.user_id]

    def test_cell_edit_without_lock(self, client, uploaded, alice):
        row_id = _row_ids(client, uploaded["dataset_id"])[0]
        response = client.post(
            f"/api/rows/{row_id}/fields", json={"column": "price", "value": "1"}, headers=_as(alice)
        )
        assert response.status_code == 403

    def test_note(self, client, uploaded, alice):
        row_id = _row_ids(client, uploaded["dataset_id"])[1]
        noted = client.post(f"/api/rows/{row_id}/note", json={"note": " check stock "}, headers=_as(alice)).json()
        assert noted["row"]["note"] == "check stock"

    def test_unknown_row(self, client, uploaded, alice):
        assert client.post("/api/rows/missing/lock", headers=_as(alice)).status_code == 404

    def test_invalid_status(self, client, uploaded, alice):
        row_id = _row_ids(client, uploaded["dataset_id"])[0]
        response = client.post(f"/api/rows/{row_id}/status", json={"status": "archived"}, headers=_as(alice))
        assert response.status_code == 422


class TestActivityAndStats:
    def test_activity_and_user_stats(self, client, uploaded, alice):
        row_id = _row_ids(client, uploaded["dataset_id"])[0]
        client.post(f"/api/rows/{row_id}/lock", headers=_as(alice))
        client.post(f"/api/rows/{row_id}/status", json={"status": "completed"}, headers=_as(alice))

        actions = [a["action"] for a in client.get("/api/activity", params={"limit": 3}).json()]
        assert actions == ["changed status to completed", "locked row", "uploaded CSV file"]

        stats = client.get(f"/api/users/{alice.user_id}/stats").json()
        assert stats["total_completed"] == 1
        assert stats["rows_locked"] == 1
        assert client.get("/api/users/ghost/stats").status_code == 404


def test_websocket_relays_peer_broadcasts(client, uploaded):
    dataset_id = uploaded["dataset_id"]
    with client.websocket_connect(f"/ws/datasets/{dataset_id}") as ws:
        ws.send_json({"action": "row_updated", "row_id": "r-1", "sender_id": "browser-1"})
        message = ws.receive_json()
    assert message["channel"] == "broadcast"
    assert message["event"]["action"] == "row_updated"
    assert message["event"]["sender_id"] == "browser-1"


def test_websocket_ignores_malformed_messages(client, uploaded):
    dataset_id = uploaded["dataset_id"]
    with client.websocket_connect(f"/ws/datasets/{dataset_id}") as ws:
        ws.send_json(["row_updated", "r-1"])
        ws.send_json(42)
        ws.send_json({"action": "row_locked", "row_id": "r-2"})
        message = ws.receive_json()
    assert message["channel"] == "broadcast"
    assert message["event"]["action"] == "row_locked"
    assert message["event"]["row_id"] == "r-2"
