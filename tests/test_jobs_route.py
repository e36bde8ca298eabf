"""Tests for job management API routes."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from core.types import CrawlPageResult, JobStatus, Provider
from database.memory import InMemoryJobStore
from services.api.dependencies import get_db
from services.api.routes.jobs import router as jobs_router


@pytest.fixture
def store() -> InMemoryJobStore:
    store = InMemoryJobStore()
    store.add_provider(Provider(id=1, name="Shop", website_url="https://shop.example/"))
    store.add_provider(Provider(id=2, name="No site"))
    return store


@pytest.fixture
def client(store: InMemoryJobStore) -> TestClient:
    app = FastAPI()

    async def _get_db_override():
        return store

    app.dependency_overrides[get_db] = _get_db_override
    app.include_router(jobs_router, prefix="/api/jobs")
    return TestClient(app)


def _create(client: TestClient, **body) -> dict:
    response = client.post("/api/jobs", json={"providerId": 1, **body})
    assert response.status_code == 201, response.text
    return response.json()


async def _start(store: InMemoryJobStore, job_id: int) -> None:
    await store.update_job_if(
        job_id,
        status=JobStatus.RUNNING,
        lease_owner="worker-test",
        lease_expires_at=datetime.now(timezone.utc) + timedelta(minutes=5),
    )


def test_create_job_defaults_start_url_to_provider_site(client: TestClient) -> None:
    job = _create(client, maxPages=25)

    assert job["status"] == "queued"
    assert job["start_url"] == "https://shop.example/"
    assert job["max_pages"] == 25
    assert job["lease_owner"] is None


def test_create_job_rejects_unknown_provider(client: TestClient) -> None:
    response = client.post("/api/jobs", json={"providerId": 99})

    assert response.status_code == 400
    assert response.json()["detail"] == "Provider not found"


def test_create_job_requires_start_url_without_provider_site(client: TestClient) -> None:
    response = client.post("/api/jobs", json={"providerId": 2})
    assert response.status_code == 400

    response = client.post(
        "/api/jobs", json={"providerId": 2, "startUrl": "https://other.example/"}
    )
    assert response.status_code == 201


def test_get_job_not_found(client: TestClient) -> None:
    response = client.get("/api/jobs/404")

    assert response.status_code == 404
    assert response.json()["detail"] == "Job 404 not found"


@pytest.mark.asyncio
async def test_get_job_includes_recent_pages(client: TestClient, store: InMemoryJobStore) -> None:
    job = _create(client)
    await store.insert_page(job["id"], CrawlPageResult(url="https://shop.example/a", success=True, http_status_code=200))
    await store.insert_page(job["id"], CrawlPageResult(url="https://shop.example/b", success=False, error="HTTP 500: Internal Server Error"))

    response = client.get(f"/api/jobs/{job['id']}")

    assert response.status_code == 200
    payload = response.json()
    assert payload["pages_total"] == 2
    assert [p["url"] for p in payload["recent_pages"]] == [
        "https://shop.example/b",
        "https://shop.example/a",
    ]
    assert payload["recent_pages"][0]["status"] == "failed"


@pytest.mark.asyncio
async def test_list_jobs_filters_and_paginates(client: TestClient, store: InMemoryJobStore) -> None:
    first = _create(client)
    second = _create(client)
    _create(client, startUrl="https://shop.example/sale")
    await _start(store, first["id"])

    response = client.get("/api/jobs", params={"page": 1, "pageSize": 2})
    payload = response.json()
    assert payload["total_count"] == 3
    assert payload["page_size"] == 2
    assert len(payload["jobs"]) == 2

    response = client.get("/api/jobs", params={"status": "queued"})
    ids = [j["id"] for j in response.json()["jobs"]]
    assert first["id"] not in ids
    assert second["id"] in ids


@pytest.mark.asyncio
async def test_pause_resume_and_cancel(client: TestClient, store: InMemoryJobStore) -> None:
    job = _create(client)

    # Only running jobs can be paused.
    assert client.post(f"/api/jobs/{job['id']}/pause").status_code == 409

    await _start(store, job["id"])
    paused = client.post(f"/api/jobs/{job['id']}/pause").json()
    assert paused["status"] == "paused"
    assert paused["lease_owner"] is None and paused["lease_expires_at"] is None
    assert paused["paused_at"] is not None

    resumed = client.post(f"/api/jobs/{job['id']}/resume").json()
    assert resumed["status"] == "queued"
    assert resumed["paused_at"] is None

    canceled = client.post(f"/api/jobs/{job['id']}/cancel").json()
    assert canceled["status"] == "canceled"
    assert canceled["canceled_at"] is not None

    response = client.post(f"/api/jobs/{job['id']}/cancel")
    assert response.status_code == 409
    assert response.json()["detail"] == "Cannot cancel job with status canceled"


def test_retry_creates_new_job(client: TestClient) -> None:
    job = _create(client, sitemapUrl="https://shop.example/sitemap.xml", maxPages=10)

    assert client.post(f"/api/jobs/{job['id']}/retry").status_code == 409

    client.post(f"/api/jobs/{job['id']}/cancel")
    response = client.post(f"/api/jobs/{job['id']}/retry")

    assert response.status_code == 201
    retried = response.json()
    assert retried["id"] != job["id"]
    assert retried["status"] == "queued"
    assert retried["sitemap_url"] == "https://shop.example/sitemap.xml"
    assert retried["max_pages"] == 10
    assert client.get(f"/api/jobs/{job['id']}").json()["job"]["status"] == "canceled"


def test_delete_job_rules(client: TestClient) -> None:
    job = _create(client)

    assert client.delete(f"/api/jobs/{job['id']}").status_code == 409

    client.post(f"/api/jobs/{job['id']}/cancel")
    assert client.delete(f"/api/jobs/{job['id']}").status_code == 204
    assert client.get(f"/api/jobs/{job['id']}").status_code == 404
    assert client.delete(f"/api/jobs/{job['id']}").status_code == 404


@pytest.mark.asyncio
async def test_stats_counts_every_status(client: TestClient, store: InMemoryJobStore) -> None:
    running = _create(client)
    paused = _create(client)
    _create(client)
    await _start(store, running["id"])
    await _start(store, paused["id"])
    client.post(f"/api/jobs/{paused['id']}/pause")

    stats = client.get("/api/jobs/stats").json()

    assert stats == {
        "total": 3,
        "queued": 1,
        "running": 1,
        "paused": 1,
        "succeeded": 0,
        "failed": 0,
        "canceled": 0,
    }
