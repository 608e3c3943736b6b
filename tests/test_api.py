"""API tests through FastAPI's TestClient with a scripted upstream."""

import time

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from syncward.api import connection_routes
from syncward.api.connection_routes import router as connection_router
from syncward.api.sync_routes import router as sync_router
from syncward.connectors.meta.client import MetaClient

from conftest import FakeSource, build_backfill_engine

CONNECTION_BODY = {
    "connection_id": "conn-1",
    "tenant_id": "brand-1",
    "ad_account_id": "act_1",
    "access_token": "secret-token",
    "timezone_name": "UTC",
    "entity_types": ["ad", "campaign"],
}


@pytest.fixture
def client(file_db_engine):
    app = FastAPI()
    app.include_router(sync_router)
    app.include_router(connection_router)
    app.state.backfill_engine = build_backfill_engine(file_db_engine, FakeSource())
    with TestClient(app) as test_client:
        yield test_client


def poll_status(client, run_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/runs/{run_id}/status").json()
        if body["overall_status"] != "syncing" or time.monotonic() > deadline:
            return body
        time.sleep(0.02)


class TestConnections:
    def test_register_and_list_hides_token(self, client):
        resp = client.post("/connections", json=CONNECTION_BODY)
        assert resp.status_code == 201
        body = resp.json()
        assert "access_token" not in body
        assert body["has_token"] is True
        assert body["entity_types"] == ["ad", "campaign"]

        listed = client.get("/connections", params={"tenant_id": "brand-1"}).json()
        assert [c["connection_id"] for c in listed] == ["conn-1"]
        assert client.get("/connections", params={"tenant_id": "other"}).json() == []

    def test_update_keeps_one_row(self, client):
        client.post("/connections", json=CONNECTION_BODY)
        client.post("/connections", json={**CONNECTION_BODY, "timezone_name": "Asia/Kolkata"})
        listed = client.get("/connections", params={"tenant_id": "brand-1"}).json()
        assert len(listed) == 1
        assert listed[0]["timezone_name"] == "Asia/Kolkata"

    def test_connection_id_owned_by_other_tenant(self, client):
        client.post("/connections", json=CONNECTION_BODY)
        resp = client.post("/connections", json={**CONNECTION_BODY, "tenant_id": "brand-2"})
        assert resp.status_code == 409

    def test_validate_token_and_sync_account(self, client, monkeypatch):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["access_token"] == "secret-token"
            if request.url.path.endswith("/debug_token"):
                return httpx.Response(
                    200,
                    json={"data": {"is_valid": True, "expires_at": 0, "scopes": ["ads_read"], "app_id": "9"}},
                )
            return httpx.Response(
                200, json={"id": "act_1", "name": "Shop", "timezone_name": "America/New_York"}
            )

        monkeypatch.setattr(
            connection_routes,
            "MetaClient",
            lambda access_token=None: MetaClient(access_token, transport=httpx.MockTransport(handler)),
        )
        client.post("/connections", json=CONNECTION_BODY)

        token = client.get("/connections/conn-1/validate-token").json()
        assert token["valid"] is True

        synced = client.post("/connections/conn-1/sync-account").json()
        assert synced["connection"]["timezone_name"] == "America/New_York"

    def test_unknown_connection(self, client):
        assert client.get("/connections/nope/validate-token").status_code == 404


class TestBackfill:
    def test_backfill_then_status(self, client):
        client.post("/connections", json=CONNECTION_BODY)

        resp = client.post(
            "/backfill",
            json={"tenant_id": "brand-1", "connection_id": "conn-1", "lookback_days": 10, "entity_types": ["ad"]},
        )
        assert resp.status_code == 202
        started = resp.json()
        assert started["jobs_scheduled"] > 0
        assert "ad" in started["gaps"]

        status = poll_status(client, started["run_id"])
        assert status["overall_status"] == "completed"
        assert status["jobs_completed"] == started["jobs_scheduled"]
        assert status["progress_pct"] == 100.0

        tenant = client.get("/tenants/brand-1/status").json()
        assert tenant["run_id"] == started["run_id"]

        runs = client.get("/runs", params={"tenant_id": "brand-1"}).json()
        assert runs[0]["run_id"] == started["run_id"]
        assert runs[0]["status"] == "completed"

        gaps = client.get(
            "/gaps",
            params={"tenant_id": "brand-1", "connection_id": "conn-1", "entity_type": "ad", "lookback_days": 10},
        ).json()
        assert gaps["gaps"] == []
        assert gaps["total_missing_days"] == 0

        cancel = client.post(f"/runs/{started['run_id']}/cancel").json()
        assert cancel == {"run_id": started["run_id"], "cancelled": False}

    def test_unknown_connection_is_404(self, client):
        resp = client.post("/backfill", json={"tenant_id": "brand-1", "connection_id": "nope"})
        assert resp.status_code == 404

    def test_invalid_lookback(self, client):
        client.post("/connections", json=CONNECTION_BODY)
        body = {"tenant_id": "brand-1", "connection_id": "conn-1"}
        assert client.post("/backfill", json={**body, "lookback_days": 0}).status_code == 422
        assert client.post("/backfill", json={**body, "lookback_days": 5000}).status_code == 422

    def test_unknown_run(self, client):
        assert client.get("/runs/nope/status").status_code == 404
        assert client.post("/runs/nope/cancel").status_code == 404
        assert client.get("/tenants/nobody/status").status_code == 404
