"""Tests for the HTTP API."""

from datetime import datetime, timedelta, timezone
import tempfile

import pytest
from fastapi.testclient import TestClient

from api.main import app
from quotaflow.catalog import PlanCatalog
from quotaflow.errors import StorageUnavailable
from quotaflow.storage import SQLiteStorage


@pytest.fixture
def db_path(monkeypatch):
    with tempfile.TemporaryDirectory() as tmpdir:
        path = f"{tmpdir}/quotaflow.db"
        monkeypatch.setenv("QUOTAFLOW_DB_PATH", path)
        monkeypatch.delenv("QUOTAFLOW_API_KEY", raising=False)
        yield path


@pytest.fixture
def client(db_path):
    return TestClient(app)


def subscribe(db_path, subject_id, code):
    storage = SQLiteStorage(db_path)
    catalog = PlanCatalog(storage)
    catalog.seed_defaults()
    catalog.subscribe(subject_id, catalog.by_code(code).plan_id)
    storage.close()


class TestQuotaEndpoints:
    """Check, record and probe over HTTP."""

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_check_and_record(self, client, db_path):
        subscribe(db_path, "ws-1", "starter_monthly")

        resp = client.post("/quota/ws-1/filesDaily/check", json={"requested_qty": 1})
        assert resp.status_code == 200
        assert resp.json()["allowed"] is True

        resp = client.post("/usage/ws-1/filesDaily/record", json={"actual_qty": 10})
        assert resp.json()["consumed"] == 10

        resp = client.post("/quota/ws-1/filesDaily/check", json={"requested_qty": 1})
        body = resp.json()
        assert body["allowed"] is False
        assert body["reason"] == "quota_exceeded"
        assert body["suggestion"]

    def test_probe(self, client):
        body = client.get("/quota/ws-2/voiceSynthesis").json()
        assert body["allowed"] is False
        assert body["limit"] == 0

    def test_probe_is_read_only(self, client, db_path):
        for _ in range(2):
            client.get("/quota/ws-2/voiceSynthesis")
        storage = SQLiteStorage(db_path)
        assert storage.count_denials("ws-2", datetime(2000, 1, 1, tzinfo=timezone.utc)) == {}
        storage.close()

    def test_invalid_body(self, client):
        resp = client.post("/quota/ws-1/exports/check", json={"requested_qty": -1})
        assert resp.status_code == 422

    def test_unknown_resource_record(self, client):
        resp = client.post("/usage/ws-1/teleports/record", json={"actual_qty": 1})
        assert resp.status_code == 400

    def test_status_report(self, client):
        client.post("/usage/ws-1/exports/record", json={"actual_qty": 2})
        body = client.get("/quota/ws-1").json()
        exports = next(r for r in body["resources"] if r["resource"] == "exports")
        assert exports["consumed"] == 2
        assert body["plan"] == "free"

    def test_plans(self, client):
        codes = [p["code"] for p in client.get("/plans").json()]
        assert codes[0] == "free"
        assert "enterprise" in codes

    def test_api_key_required(self, client, monkeypatch):
        monkeypatch.setenv("QUOTAFLOW_API_KEY", "secret")
        assert client.get("/plans").status_code == 401
        assert client.get("/plans", headers={"X-API-Key": "secret"}).status_code == 200

    def test_storage_unavailable_is_503(self, client, monkeypatch):
        def broken(self, *args, **kwargs):
            raise StorageUnavailable("disk gone")

        monkeypatch.setattr(SQLiteStorage, "increment_counters", broken)
        resp = client.post("/usage/ws-1/exports/record", json={"actual_qty": 1})
        assert resp.status_code == 503


class TestRecommendationEndpoints:
    def test_missing_recommendation(self, client):
        assert client.get("/recommendations/ws-1").status_code == 404

    def test_analyze_and_update(self, client, db_path):
        subscribe(db_path, "ws-1", "hobbyist_monthly")
        for stamp in ("2026-01-15T00:00:00+00:00", "2026-03-15T00:00:00+00:00"):
            client.post("/usage/ws-1/transcriptions/record", json={"actual_qty": 95, "as_of": stamp})

        resp = client.post(
            "/recommendations/ws-1/analyze",
            json={"as_of": "2026-04-10T00:00:00+00:00"},
        )
        rec = resp.json()["recommendation"]
        assert rec["reason"] == "quota-exceeded"

        resp = client.post(f"/recommendations/{rec['recommendation_id']}/status", json={"status": "accepted"})
        assert resp.status_code == 409

        resp = client.post(f"/recommendations/{rec['recommendation_id']}/status", json={"status": "viewed"})
        assert resp.json()["status"] == "viewed"

    def test_unknown_recommendation(self, client):
        resp = client.post("/recommendations/missing/status", json={"status": "viewed"})
        assert resp.status_code == 404


class TestOverrideEndpoints:
    def test_request_and_approve(self, client):
        start = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
        resp = client.post("/overrides", json={
            "workspace_id": "ws-9",
            "limits": {"exports": 500},
            "contract_start": start,
        })
        override = resp.json()
        assert override["status"] == "pending"

        resp = client.post(f"/overrides/{override['override_id']}/approve", json={"approved_by": "ops"})
        assert resp.json()["status"] == "approved"

        body = client.get("/quota/ws-9/exports").json()
        assert body["limit"] == 500

        resp = client.post(f"/overrides/{override['override_id']}/reject", json={})
        assert resp.status_code == 409

    def test_invalid_override(self, client):
        resp = client.post("/overrides", json={
            "workspace_id": "ws-9",
            "limits": {"exports": -4},
            "contract_start": "2026-01-01T00:00:00+00:00",
        })
        assert resp.status_code == 422
