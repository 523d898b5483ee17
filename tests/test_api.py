"""Tests for the Anvil API endpoints and the /ws socket."""

import pytest
from fastapi.testclient import TestClient

from anvil.core.auth import create_token
from anvil.daemon.main import create_app
from tests.conftest import ALLOWED_ORIGIN, TEST_API_KEY, TEST_JWT_SECRET, FailingLauncher, make_settings


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, unauthed_client):
        resp = await unauthed_client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert "version" in data
        assert data["uptime"] >= 0
        assert data["workers"]["total"] == 2
        assert data["realtime_clients"] == 0


class TestAuth:
    @pytest.mark.asyncio
    async def test_no_auth_rejected(self, unauthed_client):
        resp = await unauthed_client.get("/api/v1/workers")
        assert resp.status_code in (401, 403)

    @pytest.mark.asyncio
    async def test_bad_auth_rejected(self, app):
        from httpx import AsyncClient, ASGITransport
        transport = ASGITransport(app=app)
        async with AsyncClient(
            transport=transport,
            base_url="http://test",
            headers={"Authorization": "Bearer wrong_key"},
        ) as c:
            resp = await c.get("/api/v1/workers")
            assert resp.status_code == 401


class TestCors:
    @pytest.mark.asyncio
    async def test_allowed_origin(self, client):
        resp = await client.get("/health", headers={"Origin": ALLOWED_ORIGIN})
        assert resp.status_code == 200
        assert resp.headers["access-control-allow-origin"] == ALLOWED_ORIGIN

    @pytest.mark.asyncio
    async def test_unknown_origin_rejected(self, client):
        resp = await client.get("/health", headers={"Origin": "http://evil.example"})
        assert resp.status_code == 403
        assert resp.json()["detail"] == "Not allowed by CORS"

    @pytest.mark.asyncio
    async def test_no_origin_allowed(self, client):
        resp = await client.get("/api/v1/workers/stats")
        assert resp.status_code == 200


class TestWorkers:
    @pytest.mark.asyncio
    async def test_list_workers(self, client):
        resp = await client.get("/api/v1/workers")
        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 2
        assert data["stats"]["online"] == 2
        assert all(w["status"] == "online" for w in data["workers"])

    @pytest.mark.asyncio
    async def test_list_workers_filtered(self, client):
        await client.post("/api/v1/workers/register", json={"worker_id": "box-1", "type": "container"})
        resp = await client.get("/api/v1/workers", params={"type": "container"})
        assert [w["id"] for w in resp.json()["workers"]] == ["box-1"]

    @pytest.mark.asyncio
    async def test_register_and_get(self, client):
        resp = await client.post("/api/v1/workers/register", json={
            "worker_id": "agent-1",
            "type": "remote",
            "capabilities": ["build"],
        })
        assert resp.status_code == 200
        assert resp.json()["worker"]["capabilities"] == ["build"]

        resp = await client.get("/api/v1/workers/agent-1")
        assert resp.status_code == 200
        assert resp.json()["type"] == "remote"

    @pytest.mark.asyncio
    async def test_get_unknown_worker(self, client):
        resp = await client.get("/api/v1/workers/ghost")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_heartbeat(self, client):
        await client.post("/api/v1/workers/register", json={"worker_id": "agent-1"})
        resp = await client.post("/api/v1/workers/agent-1/heartbeat")
        assert resp.status_code == 200
        assert resp.json()["worker_status"] == "online"

        resp = await client.post("/api/v1/workers/ghost/heartbeat")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_assign_and_release(self, client):
        resp = await client.post("/api/v1/workers/assign", json={"task_id": "build-1"})
        data = resp.json()
        assert data["status"] == "assigned"
        worker_id = data["worker_id"]

        resp = await client.get(f"/api/v1/workers/{worker_id}")
        assert resp.json()["current_tasks"] == ["build-1"]

        resp = await client.post(f"/api/v1/workers/{worker_id}/release", json={"task_id": "build-1"})
        assert resp.json()["released"] is True

        resp = await client.get(f"/api/v1/workers/{worker_id}")
        assert resp.json()["current_tasks"] == []

    @pytest.mark.asyncio
    async def test_assign_without_capacity_is_pending(self, client):
        for i in range(10):
            await client.post("/api/v1/workers/assign", json={"task_id": f"t{i}"})

        resp = await client.post("/api/v1/workers/assign", json={"task_id": "t10"})
        assert resp.status_code == 200
        assert resp.json() == {"task_id": "t10", "worker_id": None, "status": "pending"}

        stats = (await client.get("/api/v1/workers/stats")).json()
        assert stats["utilization"] == 1.0
        assert stats["busy"] == 2

    @pytest.mark.asyncio
    async def test_release_unknown_worker(self, client):
        resp = await client.post("/api/v1/workers/ghost/release", json={"task_id": "t1"})
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_remove_worker_reports_failed_tasks(self, client):
        worker_id = (await client.post("/api/v1/workers/assign", json={"task_id": "t1"})).json()["worker_id"]

        resp = await client.delete(f"/api/v1/workers/{worker_id}")
        assert resp.status_code == 200
        assert resp.json()["failed_tasks"] == ["t1"]

        resp = await client.delete(f"/api/v1/workers/{worker_id}")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_drain_idle_worker(self, client):
        await client.post("/api/v1/workers/register", json={"worker_id": "agent-1"})
        resp = await client.post("/api/v1/workers/agent-1/drain", params={"timeout": 1})
        assert resp.status_code == 200
        assert resp.json() == {"status": "removed", "worker_id": "agent-1", "failed_tasks": []}

    @pytest.mark.asyncio
    async def test_drain_timeout(self, client):
        await client.post("/api/v1/workers/register", json={"worker_id": "a-first"})
        await client.post("/api/v1/workers/assign", json={"task_id": "t1"})

        resp = await client.post("/api/v1/workers/a-first/drain", params={"timeout": 0.01})
        assert resp.json()["failed_tasks"] == ["t1"]

    @pytest.mark.asyncio
    async def test_terminate_failure_is_bad_gateway(self, app, client):
        app.state.pool._launcher = FailingLauncher(fail_terminate={"a-first"})
        await client.post("/api/v1/workers/register", json={"worker_id": "a-first"})
        await client.post("/api/v1/workers/assign", json={"task_id": "t1"})

        resp = await client.post("/api/v1/workers/a-first/drain", params={"timeout": 0.01})
        assert resp.status_code == 502
        assert "cannot terminate a-first" in resp.json()["detail"]

        worker = (await client.get("/api/v1/workers/a-first")).json()
        assert worker["status"] == "online"

        resp = await client.delete("/api/v1/workers/a-first")
        assert resp.status_code == 502


class TestRealtimeRest:
    @pytest.mark.asyncio
    async def test_broadcast_without_clients(self, client):
        resp = await client.post("/api/v1/realtime/broadcast", json={"channel": "builds", "data": {"id": 1}})
        assert resp.status_code == 200
        assert resp.json() == {"channel": "builds", "recipients": 0}

    @pytest.mark.asyncio
    async def test_list_clients(self, client):
        resp = await client.get("/api/v1/realtime/clients")
        assert resp.json() == {"clients": [], "total": 0}

    @pytest.mark.asyncio
    async def test_send_to_user(self, client):
        resp = await client.post("/api/v1/realtime/users/alice", json={"data": {"hi": True}})
        assert resp.json() == {"user_id": "alice", "recipients": 0}


class TestWebSocket:
    def test_connection_message(self):
        app = create_app(make_settings())
        with TestClient(app) as http:
            with http.websocket_connect("/ws") as ws:
                welcome = ws.receive_json()
                assert welcome["type"] == "connection"
                assert welcome["data"]["authenticated"] is False

    def test_token_authenticates(self):
        app = create_app(make_settings())
        token = create_token("user-1", TEST_JWT_SECRET)
        with TestClient(app) as http:
            with http.websocket_connect(f"/ws?token={token}") as ws:
                assert ws.receive_json()["data"]["authenticated"] is True
                clients = http.get(
                    "/api/v1/realtime/clients",
                    headers={"Authorization": f"Bearer {TEST_API_KEY}"},
                ).json()
                assert clients["clients"][0]["user_id"] == "user-1"

    def test_protocol_round_trip(self):
        app = create_app(make_settings())
        with TestClient(app) as http:
            with http.websocket_connect("/ws") as ws:
                ws.receive_json()

                ws.send_text("not json")
                assert ws.receive_json() == {"type": "error", "data": {"message": "Invalid message format"}}

                ws.send_json({"type": "ping"})
                assert ws.receive_json()["type"] == "pong"

                ws.send_json({"type": "subscribe", "data": {"channel": "builds"}})
                assert ws.receive_json() == {"type": "subscribed", "data": {"channel": "builds"}}

                resp = http.post(
                    "/api/v1/realtime/broadcast",
                    json={"channel": "builds", "data": {"build": 7}},
                    headers={"Authorization": f"Bearer {TEST_API_KEY}"},
                )
                assert resp.json()["recipients"] == 1
                message = ws.receive_json()
                assert message["type"] == "broadcast"
                assert message["channel"] == "builds"
                assert message["data"] == {"build": 7}

    def test_pool_events_reach_workers_channel(self):
        app = create_app(make_settings())
        with TestClient(app) as http:
            with http.websocket_connect("/ws") as ws:
                ws.receive_json()
                ws.send_json({"type": "subscribe", "data": {"channel": "workers"}})
                ws.receive_json()

                http.post(
                    "/api/v1/workers/register",
                    json={"worker_id": "agent-9"},
                    headers={"Authorization": f"Bearer {TEST_API_KEY}"},
                )
                message = ws.receive_json()
                assert message["channel"] == "workers"
                assert message["data"]["event"] == "worker:spawned"
                assert message["data"]["worker"]["id"] == "agent-9"

    def test_websocket_disabled(self):
        app = create_app(make_settings(enable_websocket=False))
        with TestClient(app) as http:
            assert http.get("/health").json()["realtime_clients"] is None
            resp = http.post(
                "/api/v1/realtime/broadcast",
                json={"channel": "builds"},
                headers={"Authorization": f"Bearer {TEST_API_KEY}"},
            )
            assert resp.status_code == 503
