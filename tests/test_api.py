"""HTTP API tests through FastAPI's TestClient with a fake target site."""

import time

import pytest
from fastapi.testclient import TestClient

from app.main import create_app
from conftest import make_manager


@pytest.fixture
def client(scenario_a_site):
    app = create_app(make_manager(scenario_a_site))
    with TestClient(app) as c:
        yield c


def _poll_status(client, job_id, timeout_s=5.0):
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        body = client.get(f"/api/jobs/{job_id}").json()
        if body["status"] in ("completed", "failed", "cancelled"):
            return body
        time.sleep(0.01)
    raise AssertionError(f"job {job_id} did not finish")


class TestCrawlEndpoint:
    def test_home(self, client):
        assert client.get("/").json()["status"] == "ok"

    def test_crawl_returns_camel_case_result(self, client):
        resp = client.post(
            "/api/crawl",
            json={"startUrl": "https://example.com", "ventureId": "v1", "maxDepth": 1, "maxPages": 10},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["totalPages"] == 4
        assert len(body["results"]) == 4
        first = body["results"][0]
        assert first["url"] == "https://example.com"
        assert first["title"] == "Home"
        assert first["status"] == "success"
        assert first["depth"] == 0
        assert "scrapedAt" in first
        assert body["jobId"]

    def test_defaults_applied(self, client):
        body = client.post("/api/crawl", json={"startUrl": "https://example.com", "ventureId": "v1"}).json()
        # default maxDepth=2 reaches every page of the fixture site
        assert body["totalPages"] == 7

    @pytest.mark.parametrize(
        "payload",
        [
            {"ventureId": "v1"},
            {"startUrl": "https://example.com"},
            {"startUrl": "", "ventureId": "v1"},
        ],
    )
    def test_missing_fields_is_400(self, client, payload):
        resp = client.post("/api/crawl", json=payload)
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Missing required fields"
        assert client.get("/api/ventures/v1/jobs").json()["jobs"] == []

    def test_invalid_start_url_is_500(self, client):
        resp = client.post("/api/crawl", json={"startUrl": "example dot com", "ventureId": "v1"})
        assert resp.status_code == 500
        assert "Invalid start URL" in resp.json()["detail"]

        [job] = client.get("/api/ventures/v1/jobs").json()["jobs"]
        assert job["status"] == "failed"

    def test_unknown_job_id_is_400(self, client):
        resp = client.post(
            "/api/crawl", json={"startUrl": "https://example.com", "ventureId": "v1", "jobId": "missing"}
        )
        assert resp.status_code == 400


class TestJobEndpoints:
    def test_submit_poll_and_page_results(self, client):
        resp = client.post("/api/jobs", json={"startUrl": "https://example.com", "ventureId": "v1", "maxDepth": 1})
        assert resp.status_code == 200
        job_id = resp.json()["jobId"]

        status = _poll_status(client, job_id)
        assert status["status"] == "completed"
        assert status["resultsCount"] == 4
        assert status["progress"] == {"visited": 4, "queued": 0}
        assert status["config"] == {"maxDepth": 1, "maxPages": 50, "domainOnly": True}
        assert status["name"] == "Crawl example.com"
        assert status["startedAt"] and status["completedAt"]

        page_one = client.get(f"/api/jobs/{job_id}/results", params={"limit": 3}).json()
        page_two = client.get(f"/api/jobs/{job_id}/results", params={"offset": 3, "limit": 3}).json()
        assert page_one["totalReturned"] == 3
        assert page_two["totalReturned"] == 1
        assert page_two["results"][0]["url"] == "https://example.com/blog"

        jobs = client.get("/api/ventures/v1/jobs").json()["jobs"]
        assert [j["jobId"] for j in jobs] == [job_id]

    def test_submitted_job_cannot_be_crawled_again(self, client):
        job_id = client.post("/api/jobs", json={"startUrl": "https://example.com", "ventureId": "v1"}).json()["jobId"]

        resp = client.post("/api/crawl", json={"startUrl": "https://example.com", "ventureId": "v1", "jobId": job_id})
        assert resp.status_code == 400

        status = _poll_status(client, job_id)
        assert status["status"] == "completed"
        assert status["resultsCount"] == 7

    def test_submit_missing_fields_is_400(self, client):
        assert client.post("/api/jobs", json={"startUrl": "https://example.com"}).status_code == 400

    def test_cancel_finished_job(self, client):
        job_id = client.post(
            "/api/jobs", json={"startUrl": "https://example.com", "ventureId": "v1", "maxDepth": 0}
        ).json()["jobId"]
        _poll_status(client, job_id)

        body = client.post(f"/api/jobs/{job_id}/cancel").json()
        assert body == {"jobId": job_id, "cancelled": False}

    @pytest.mark.parametrize(
        "method,path",
        [
            ("get", "/api/jobs/nope"),
            ("get", "/api/jobs/nope/results"),
            ("post", "/api/jobs/nope/cancel"),
        ],
    )
    def test_unknown_job_is_404(self, client, method, path):
        assert getattr(client, method)(path).status_code == 404
