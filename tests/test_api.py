"""Tests for the health, jobs and providers endpoints."""

import pytest
from httpx import AsyncClient

from campaign_engine.services import job_service


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    response = await client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["env"] == "test"
    assert "version" in data
    assert data["redis"] == "disabled"


@pytest.mark.asyncio
async def test_enqueue_and_inspect_job(client: AsyncClient):
    payload = {"job_type": "report_export", "payload": {"month": "2026-09"}, "idempotency_key": "rep-9"}

    first = await client.post("/jobs", json=payload)
    second = await client.post("/jobs", json=payload)

    assert first.status_code == 201
    assert second.status_code == 201
    assert first.json()["id"] == second.json()["id"]
    assert first.json()["status"] == "pending"

    response = await client.get(f"/jobs/{first.json()['id']}")
    assert response.status_code == 200
    assert response.json()["payload"] == {"month": "2026-09"}

    response = await client.get("/jobs/stats")
    assert response.json()["pending"] == 1


@pytest.mark.asyncio
async def test_enqueue_rejects_bad_input(client: AsyncClient):
    response = await client.post("/jobs", json={"job_type": "", "payload": {}})
    assert response.status_code == 422

    response = await client.post("/jobs", json={"job_type": "x", "max_attempts": 0})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_cancel_and_replay_endpoints(client: AsyncClient, db):
    created = (await client.post("/jobs", json={"job_type": "report_export"})).json()

    response = await client.post(f"/jobs/{created['id']}/cancel")
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"

    response = await client.post(f"/jobs/{created['id']}/cancel")
    assert response.status_code == 409

    job = job_service.enqueue(db, "report_export", {}, max_attempts=1)
    job_service.claim_next(db, "worker-test")
    job_service.fail(db, job.id, "smtp down")

    response = await client.get("/jobs/dead-letter")
    assert [j["id"] for j in response.json()] == [str(job.id)]
    assert response.json()[0]["last_error"] == "smtp down"

    response = await client.post(f"/jobs/{job.id}/replay")
    assert response.status_code == 200
    assert response.json()["status"] == "pending"
    assert response.json()["attempts"] == 0


@pytest.mark.asyncio
async def test_missing_job_returns_404(client: AsyncClient):
    response = await client.get("/jobs/00000000-0000-0000-0000-000000000000")

    assert response.status_code == 404
    assert response.json()["error"] == "NotFoundError"


@pytest.mark.asyncio
async def test_providers_summary(client: AsyncClient):
    response = await client.get("/providers")

    assert response.status_code == 200
    data = response.json()
    assert set(data) == {"email", "linkedin", "video"}
    assert data["email"]["selected"] == "lemlist"
    assert data["video"]["configured"] is True
    assert "lemlist-key" not in response.text
