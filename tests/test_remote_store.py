"""
Tests del remote store de referencia.
"""
import pytest
from fastapi.testclient import TestClient

from conftest import COMPANY_ID, DIVISION_ID
from tally_sync_connector.remote_store import BulkLoadGuard, StoreBusyError, create_store_app

TENANT = f"{COMPANY_ID}/{DIVISION_ID}"


@pytest.fixture
def app():
    return create_store_app(lock_timeout=0.05)


@pytest.fixture
def client(app):
    return TestClient(app)


def bulk_sync(client, table, data, metadata=None, sync_type="full"):
    return client.post(f"/api/v1/bulk-sync/{TENANT}", json={
        "table": table,
        "data": data,
        "sync_type": sync_type,
        "metadata": metadata or {}
    })


def test_health(client):
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json()["bulk_operation_in_progress"] is False


class TestBulkSync:

    def test_upsert_is_idempotent(self, client, app):
        records = [{"guid": "g-1", "name": "Cash"}, {"guid": "g-2", "name": "Bank"}]

        first = bulk_sync(client, "ledgers", records)
        second = bulk_sync(client, "ledgers", records)

        assert first.json()["data"]["processed"] == 2
        assert second.json()["success"] is True
        assert app.state.store.table_counts(COMPANY_ID, DIVISION_ID) == {"ledgers": 2}

    def test_upsert_updates_by_guid(self, client):
        bulk_sync(client, "ledgers", [{"guid": "g-1", "name": "Cash"}])
        bulk_sync(client, "ledgers", [{"guid": "g-1", "name": "Cash in hand"}])

        rows = client.post(f"/api/v1/query/{TENANT}", json={"table": "ledgers"}).json()["data"]
        assert [row["name"] for row in rows] == ["Cash in hand"]

    def test_record_without_guid_fails(self, client):
        data = bulk_sync(client, "ledgers", [{"guid": ""}, {"guid": "g-1\r"}]).json()["data"]

        assert data["processed"] == 1
        assert data["failed"] == 1

    def test_invalid_tenant(self, client):
        response = client.post("/api/v1/bulk-sync/not-a-uuid/also-not", json={"table": "ledgers", "data": []})

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_busy_lock_returns_503(self, client, app):
        app.state.guard._lock.acquire()
        try:
            response = bulk_sync(client, "ledgers", [{"guid": "g-1"}])
        finally:
            app.state.guard._lock.release()

        assert response.status_code == 503


class TestMetadata:

    def test_max_alter_ids_across_tables(self, client):
        bulk_sync(client, "groups", [{"guid": "g-1"}], metadata={"source_table": "mst_group"})
        bulk_sync(client, "system_metadata", [], metadata={
            "last_alter_id_master": 100,
            "last_alter_id_transaction": 50
        })
        bulk_sync(client, "system_metadata", [], metadata={
            "last_alter_id_master": 120,
            "last_alter_id_transaction": 60
        })

        data = client.get(f"/api/v1/metadata/{TENANT}").json()["data"]

        assert data["last_alter_id_master"] == 120
        assert data["last_alter_id_transaction"] == 60
        assert set(data["tables"]) == {"groups", "system_metadata"}

    def test_empty_store(self, client):
        data = client.get(f"/api/v1/metadata/{TENANT}").json()["data"]
        assert data["last_alter_id_master"] == 0
        assert data["tables"] == {}

    def test_busy_sentinel_during_bulk_load(self, client, app):
        with app.state.guard.bulk_load():
            data = client.get(f"/api/v1/metadata/{TENANT}").json()["data"]

        assert data["busy"] is True
        assert data["last_alter_id_master"] == 0
        assert "in progress" in data["message"]


class TestQuery:

    def test_pagination(self, client):
        bulk_sync(client, "ledgers", [{"guid": f"g-{i}", "name": f"L{i:02d}"} for i in range(5)])

        first = client.post(f"/api/v1/query/{TENANT}", json={"table": "ledgers", "limit": 2}).json()
        last = client.post(f"/api/v1/query/{TENANT}", json={"table": "ledgers", "limit": 2, "offset": 4}).json()

        assert first["total"] == 5
        assert [row["name"] for row in first["data"]] == ["L00", "L01"]
        assert first["next_offset"] == 2
        assert last["count"] == 1
        assert last["next_offset"] is None

    def test_filters_and_alias(self, client):
        bulk_sync(client, "cost_centres", [{"guid": "c-1", "name": "A"}, {"guid": "c-2", "name": "B"}])

        result = client.post(f"/api/v1/query/{TENANT}", json={"table": "cost_centers", "filters": {"name": "B"}})

        assert [row["guid"] for row in result.json()["data"]] == ["c-2"]

    def test_sql_is_rejected(self, client):
        response = client.post(f"/api/v1/query/{TENANT}", json={"sql": "SELECT 1"})
        assert response.status_code == 400

    def test_busy(self, client, app):
        with app.state.guard.bulk_load():
            result = client.post(f"/api/v1/query/{TENANT}", json={"table": "ledgers"}).json()

        assert result["success"] is False
        assert result["busy"] is True


def test_stats(client):
    bulk_sync(client, "ledgers", [{"guid": "g-1"}, {"guid": "g-2"}])
    bulk_sync(client, "groups", [{"guid": "g-1"}])

    data = client.get(f"/api/v1/stats/{TENANT}").json()["data"]

    assert data["total_records"] == 3
    assert data["table_counts"] == {"ledgers": 2, "groups": 1}


def test_guard_times_out():
    guard = BulkLoadGuard(lock_timeout=0.01)
    with guard.bulk_load():
        assert guard.in_progress
        with pytest.raises(StoreBusyError):
            with guard.bulk_load():
                pass
    assert not guard.in_progress
