"""
Tests for the FastAPI surface, driven in-process through httpx's ASGI transport.
"""

import asyncio
import json

import httpx
import pytest
import pytest_asyncio

from leadscout.main import app
from leadscout.service import TaskService
from tests.helpers import create_claimed

HEADERS = {"X-User-Id": "user-1"}


@pytest_asyncio.fixture
async def client(store, broadcaster):
    app.state.service = TaskService(store, worker=None, broadcaster=broadcaster)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


class TestTaskEndpoints:

    @pytest.mark.asyncio
    async def test_create_and_fetch_task(self, client):
        response = await client.post(
            "/api/tasks",
            json={"kind": "ai_search", "task_name": "Gyms", "input_data": {"query": "gymnastics clubs UAE"}},
            headers=HEADERS,
        )

        assert response.status_code == 201
        task = response.json()["task"]
        assert task["status"] == "pending"
        assert task["progress"]["total"] == 7

        fetched = await client.get(f"/api/tasks/{task['id']}", headers=HEADERS)
        assert fetched.status_code == 200
        assert fetched.json()["task"]["task_name"] == "Gyms"

    @pytest.mark.asyncio
    async def test_invalid_input_is_422(self, client):
        response = await client.post(
            "/api/tasks",
            json={"kind": "ai_search", "input_data": {"query": ""}},
            headers=HEADERS,
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_missing_user_header(self, client):
        response = await client.get("/api/tasks")
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_other_owner_gets_404(self, client, store):
        task = await store.create_task("user-2", "ai_search", {"query": "dance"})

        response = await client.get(f"/api/tasks/{task.id}", headers=HEADERS)

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_active_tasks_and_stats(self, client, store):
        await store.create_task("user-1", "ai_search", {"query": "dance"})
        done = await create_claimed(store)
        await store.mark_completed(done.id, {"final_count": 0}, total=7)

        active = await client.get("/api/tasks/active", headers=HEADERS)
        everything = await client.get("/api/tasks", headers=HEADERS)
        stats = await client.get("/api/tasks/stats", headers=HEADERS)

        assert len(active.json()["tasks"]) == 1
        assert len(everything.json()["tasks"]) == 2
        assert stats.json()["stats"]["tasks"]["completed"] == 1

    @pytest.mark.asyncio
    async def test_cancel_then_cancel_again(self, client, store):
        task = await store.create_task("user-1", "ai_search", {"query": "dance"})

        first = await client.post(f"/api/tasks/{task.id}/cancel", headers=HEADERS)
        second = await client.post(f"/api/tasks/{task.id}/cancel", headers=HEADERS)

        assert first.status_code == 200
        assert first.json()["task"]["status"] == "cancelled"
        assert second.status_code == 400

    @pytest.mark.asyncio
    async def test_run_now_without_worker(self, client, store):
        task = await store.create_task("user-1", "ai_search", {"query": "dance"})

        response = await client.post(f"/api/tasks/{task.id}/run", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["started"] is False

    @pytest.mark.asyncio
    async def test_events_for_finished_task_send_snapshot(self, client, store):
        task = await create_claimed(store)
        await store.mark_completed(task.id, {"final_count": 3}, total=7)

        response = await client.get(f"/api/tasks/{task.id}/events", headers=HEADERS)

        assert response.status_code == 200
        lines = [line for line in response.text.splitlines() if line.startswith("data: ")]
        snapshot = json.loads(lines[0][len("data: "):])
        assert snapshot["final"] is True
        assert snapshot["current"] == 7

    @pytest.mark.asyncio
    async def test_events_stream_ends_when_running_task_fails(self, client, store, broadcaster):
        task = await create_claimed(store, kind="url_parse", input_data={"url": "n/a"})

        request = asyncio.create_task(client.get(f"/api/tasks/{task.id}/events", headers=HEADERS))
        for _ in range(200):
            if broadcaster.subscriber_count(task.id):
                break
            await asyncio.sleep(0.01)
        await store.mark_failed(task.id, "Invalid URL: n/a", "initializing")
        broadcaster.close(task.id, "initializing", "Invalid URL: n/a")
        response = await asyncio.wait_for(request, timeout=2)

        events = [json.loads(line[len("data: "):]) for line in response.text.splitlines() if line.startswith("data: ")]
        assert events[0]["final"] is False
        assert events[-1]["final"] is True
        assert events[-1]["message"] == "Invalid URL: n/a"
        assert broadcaster.subscriber_count(task.id) == 0


class TestServiceEndpoints:

    @pytest.mark.asyncio
    async def test_health_without_worker(self, client):
        response = await client.get("/health")
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_worker_status_without_worker(self, client):
        response = await client.get("/api/worker/status")
        assert response.json() == {"success": True, "worker": None}
