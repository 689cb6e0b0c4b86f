"""Integration tests for /sync routes."""
from datetime import datetime, timedelta

import pytest

from dbsync.models.catalog import Book
from dbsync.models.change_log import ChangeLogEntry, SyncStatus

from support import append_change, book, fetch, seed_row


@pytest.fixture(name="conflict_id")
def conflict_id_fixture(client, pool):
    """Trigger a tick that leaves one version conflict on n2."""
    seed_row(pool, "n1", Book, **book(title="A", sync_version=2))
    seed_row(pool, "n2", Book, **book(title="B", sync_version=5))
    seed_row(pool, "n3", Book, **book())
    append_change(pool, "books", 7, "UPDATE", {"title": "A"})
    resp = client.post("/sync/trigger")
    assert resp.json()["conflicted"] == 1
    return client.get("/sync/conflicts").json()["items"][0]["id"]


class TestStatusRoutes:
    def test_status(self, client):
        resp = client.get("/sync/status")
        assert resp.status_code == 200
        body = resp.json()
        assert body["primary"] == "n1"
        assert body["pending_count"] == 0
        assert body["last_run"] is None
        assert set(body["connection_status"]) == {"n1", "n2", "n3"}

    def test_trigger_runs_a_tick(self, client, pool):
        seed_row(pool, "n1", Book, **book())
        append_change(pool, "books", 7, "INSERT", {"title": "Dune"})

        resp = client.post("/sync/trigger")

        assert resp.status_code == 200
        assert resp.json()["succeeded"] == 1
        assert fetch(pool, "n2", "books", 7)["title"] == "Dune"
        assert client.get("/sync/status").json()["last_run"]["processed"] == 1

    def test_stats(self, client, pool):
        seed_row(pool, "n1", Book, **book())
        append_change(pool, "books", 7, "INSERT", {"title": "Dune"})
        client.post("/sync/trigger")
        resp = client.get("/sync/stats", params={"days": 3})
        assert resp.json()["days"] == 3
        assert resp.json()["stats"][0]["status"] == "success"


class TestLogRoutes:
    def test_list_logs_with_filters(self, client, pool):
        append_change(pool, "books", 7, "INSERT", {"title": "Dune"})
        append_change(pool, "categories", 1, "INSERT", {"category_name": "SF"})

        resp = client.get("/sync/logs", params={"table_name": "categories"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["total"] == 1
        assert body["items"][0]["table_name"] == "categories"
        assert body["items"][0]["sync_status"] == "pending"

    def test_invalid_status_filter(self, client):
        assert client.get("/sync/logs", params={"status": "bogus"}).status_code == 422

    def test_cleanup(self, client, pool):
        with pool.session("n1") as session:
            session.add(ChangeLogEntry(
                table_name="books", record_id="1", operation="INSERT", source_node="n1",
                sync_status=SyncStatus.SUCCESS, created_at=datetime.utcnow() - timedelta(days=60),
            ))
            session.commit()

        resp = client.delete("/sync/logs/cleanup", params={"days": 30})

        assert resp.json()["deleted"] == 1

    def test_cleanup_rejects_pending(self, client):
        assert client.delete("/sync/logs/cleanup", params={"status": "pending"}).status_code == 422


class TestConflictRoutes:
    def test_get_conflict(self, client, conflict_id):
        resp = client.get(f"/sync/conflicts/{conflict_id}")
        assert resp.status_code == 200
        assert resp.json()["conflict_type"] == "version"
        assert resp.json()["target_data"]["title"] == "B"

    def test_get_unknown_conflict(self, client):
        assert client.get("/sync/conflicts/999").status_code == 404

    def test_resolve_use_source(self, client, pool, conflict_id):
        resp = client.post(
            f"/sync/conflicts/{conflict_id}/resolve",
            json={"action": "use_source", "resolved_by": "ops"},
        )
        assert resp.status_code == 200
        assert resp.json()["resolve_status"] == "resolved"
        assert fetch(pool, "n2", "books", 7)["title"] == "A"

    def test_resolve_twice_is_404(self, client, conflict_id):
        client.post(f"/sync/conflicts/{conflict_id}/resolve", json={"action": "ignore"})
        resp = client.post(f"/sync/conflicts/{conflict_id}/resolve", json={"action": "ignore"})
        assert resp.status_code == 404

    def test_manual_merge_without_data_is_400(self, client, conflict_id):
        resp = client.post(f"/sync/conflicts/{conflict_id}/resolve", json={"action": "manual_merge"})
        assert resp.status_code == 400

    def test_unknown_action_is_422(self, client, conflict_id):
        resp = client.post(f"/sync/conflicts/{conflict_id}/resolve", json={"action": "flip"})
        assert resp.status_code == 422

    def test_batch_resolve(self, client, conflict_id):
        resp = client.post(
            "/sync/conflicts/batch-resolve",
            json={"conflict_ids": [conflict_id, 999], "action": "ignore"},
        )
        assert resp.status_code == 200
        assert resp.json()["success_count"] == 1
        assert resp.json()["failure_count"] == 1
        assert client.get("/sync/conflicts", params={"status": "all"}).json()["total"] == 1

    def test_batch_manual_merge_is_400(self, client):
        resp = client.post(
            "/sync/conflicts/batch-resolve",
            json={"conflict_ids": [1], "action": "manual_merge"},
        )
        assert resp.status_code == 400


class TestConfigRoutes:
    def test_get_config(self, client):
        body = client.get("/sync/config").json()
        assert body["batch_size"] == 100
        assert body["enabled"] is True

    def test_update_config(self, client):
        resp = client.put("/sync/config", json={"batch_size": 20})
        assert resp.status_code == 200
        assert resp.json()["batch_size"] == 20
        assert client.get("/sync/config").json()["batch_size"] == 20

    def test_out_of_range_is_400(self, client):
        assert client.put("/sync/config", json={"batch_size": 0}).status_code == 400
