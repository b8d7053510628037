"""Tests for the DevMind REST API (devmind/api/devmind_api.py)."""

import asyncio

import httpx
import pytest

from devmind.api.devmind_api import app
from devmind.di_container import init_container, shutdown_container


@pytest.fixture
async def client(settings):
    init_container(settings.model_copy(update={"simulated_mode": True}))
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    await shutdown_container()


async def _wait_for_state(client, batch_id, state, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        body = (await client.get(f"/api/batches/{batch_id}")).json()
        if body["state"] == state:
            return body
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"batch stuck in {body['state']}")
        await asyncio.sleep(0.02)


# ========================================================================
# HEALTH
# ========================================================================


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["services"]["recovered"] is False
    assert sorted(a["agent_id"] for a in body["agents"]) == [
        "architect-agent", "doc-agent", "refactor-agent", "vision-agent",
    ]


# ========================================================================
# PROJECT LIFECYCLE
# ========================================================================


@pytest.mark.asyncio
async def test_template_project_waits_for_architecture_review(client):
    response = await client.post("/api/projects", json={"description": "todo app"})
    assert response.status_code == 201
    batch_id = response.json()["batch_id"]
    assert len(response.json()["status"]["tasks"]) == 4

    body = await _wait_for_state(client, batch_id, "awaiting_review")
    statuses = {t["task_id"]: t["status"] for t in body["tasks"]}
    assert statuses[f"{batch_id}:task-1"] == "completed"
    assert statuses[f"{batch_id}:task-2"] == "review"

    conflict = await client.post(f"/api/tasks/{batch_id}:task-1/approve")
    assert conflict.status_code == 409
    assert conflict.json()["kind"] == "IllegalTransitionError"

    approved = await client.post(f"/api/tasks/{batch_id}:task-2/approve", json={"rationale": "ship it"})
    assert approved.status_code == 200
    assert approved.json()["status"] == "completed"

    body = await _wait_for_state(client, batch_id, "completed")
    assert [d["kind"] for d in body["decisions"]] == ["approval"]


@pytest.mark.asyncio
async def test_reject_requires_reason(client):
    response = await client.post("/api/tasks/whatever/reject", json={"reason": ""})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_cancel_batch(client):
    plan = {"tasks": [{"id": "only", "type": "unserved"}]}
    batch_id = (await client.post("/api/projects", json={"description": "x", "plan": plan})).json()["batch_id"]
    response = await client.post(f"/api/batches/{batch_id}/cancel")
    assert response.json()["cancelled"] == [f"{batch_id}:only"]
    assert (await client.get(f"/api/batches/{batch_id}")).json()["state"] == "cancelled"


# ========================================================================
# ERRORS
# ========================================================================


@pytest.mark.asyncio
async def test_invalid_plan_is_bad_request(client):
    response = await client.post("/api/projects", json={"description": "x", "plan": {"tasks": []}})
    assert response.status_code == 400
    assert response.json()["kind"] == "PlanValidationError"


@pytest.mark.asyncio
async def test_unknown_batch_is_not_found(client):
    assert (await client.get("/api/batches/nope")).status_code == 404
    assert (await client.get("/api/batches/nope/events")).status_code == 404


@pytest.mark.asyncio
async def test_unknown_task_is_not_found(client):
    response = await client.post("/api/tasks/nope/unblock")
    assert response.status_code == 404
    assert response.json()["kind"] == "TaskNotFoundError"
