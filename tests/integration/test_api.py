"""HTTP surface tests through the FastAPI app."""
import sqlite3

import httpx
import pytest
from fastapi.testclient import TestClient

from formrunner.config import settings
from formrunner.main import create_app
from formrunner.repositories.form_repository import SqliteFormRepository
from formrunner.services.form_service import FormService
from formrunner.services.generation_service import ContentGenerator, ContentProvider
from formrunner.services.job_service import JobService
from formrunner.services.notifier import StatusNotifier
from formrunner.services.scheduler import AbstractScheduler
from formrunner.services.submission_service import SubmissionService

FORM_ID = "1FAIpQLSdT3stF0rm"
VIEW_URL = f"https://docs.google.com/forms/d/e/{FORM_ID}/viewform"


class RecordingScheduler(AbstractScheduler):
    def __init__(self):
        self.calls = []

    def schedule(self, job_id, stage, delay_ms):
        self.calls.append((job_id, stage, delay_ms))


class EchoProvider(ContentProvider):
    async def generate(self, prompt, schema, count):
        return [
            {
                "entry.1001": "Ada Lovelace",
                "entry.1002": "ada@example.com",
                "entry.1003": "Blue",
                "entry.1004": ["Olives"],
                "entry.1006": "",
            }
            for _ in range(count)
        ]


@pytest.fixture
def form_page(form_html):
    return {"status": 200, "html": form_html()}


@pytest.fixture
def client(db_path, form_page, monkeypatch):
    monkeypatch.setattr(settings, "DB_PATH", db_path)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(form_page["status"], text=form_page["html"])

    transport = httpx.MockTransport(handler)
    app = create_app()
    with TestClient(app, raise_server_exceptions=False) as c:
        # Override lifespan state directly
        repository = SqliteFormRepository(db_path)
        form_service = FormService(repository, transport=transport)
        generator = ContentGenerator(EchoProvider())
        scheduler = RecordingScheduler()
        app.state.repository = repository
        app.state.form_service = form_service
        app.state.generator = generator
        app.state.job_service = JobService(
            repository,
            form_service,
            generator,
            SubmissionService(transport=transport),
            scheduler,
            StatusNotifier(),
        )
        c.scheduler = scheduler
        yield c


def _load(client):
    response = client.post("/targets", json={"url": VIEW_URL})
    assert response.status_code == 200
    return response.json()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_load_target(client):
    data = _load(client)
    assert data["external_id"] == FORM_ID
    assert data["kind"] == "e"
    assert data["title"] == "Customer Survey"
    assert [field["entry_id"] for field in data["fields"]] == ["1001", "1002", "1003", "1004", "1006"]
    assert data["fields"][1]["validation_message"] == "Must be a valid email"
    assert data["latest_job"] is None


def test_load_target_invalid_url(client):
    response = client.post("/targets", json={"url": "https://example.com/form"})
    assert response.status_code == 422
    assert response.json()["status"] == "error"


def test_load_target_empty_url(client):
    response = client.post("/targets", json={"url": "   "})
    assert response.status_code == 422


def test_load_target_upstream_failure(client, form_page):
    form_page["status"] = 500
    response = client.post("/targets", json={"url": VIEW_URL})
    assert response.status_code == 502
    assert "HTTP 500" in response.json()["message"]


def test_unknown_target_and_job(client):
    assert client.get("/targets/missing").status_code == 404
    assert client.get("/jobs/missing").status_code == 404
    assert client.post("/jobs/missing/resume").status_code == 404
    response = client.post("/targets/missing/jobs", json={"count": 1})
    assert response.status_code == 404
    assert response.json() == {"status": "error", "message": "Target not found: missing"}


def test_update_field_configuration(client):
    data = _load(client)
    first, second = data["fields"][0], data["fields"][1]

    response = client.put(
        f"/targets/{data['id']}/fields",
        json={
            "fields": [
                {"id": first["id"], "strategy": "fixed", "fixed_value": "Ada", "position": 1},
                {"id": second["id"], "enabled": False, "position": 0},
            ]
        },
    )

    assert response.status_code == 200
    fields = response.json()["fields"]
    assert [field["entry_id"] for field in fields[:2]] == ["1002", "1001"]
    assert fields[0]["enabled"] is False
    assert fields[1]["fixed_value"] == "Ada"


def test_update_field_configuration_rejects_unknown_strategy(client):
    data = _load(client)
    response = client.put(
        f"/targets/{data['id']}/fields",
        json={"fields": [{"id": data["fields"][0]["id"], "strategy": "sequential"}]},
    )
    assert response.status_code == 422


def test_start_job_is_idempotent(client):
    data = _load(client)

    first = client.post(f"/targets/{data['id']}/jobs", json={"count": 900, "rate_limit": 0.1})
    second = client.post(f"/targets/{data['id']}/jobs", json={"count": 3, "rate_limit": 4})

    assert first.status_code == 200
    assert first.json()["created"] is True
    job = first.json()["job"]
    assert job["status"] == "preparing"
    assert job["count"] == 500
    assert job["rate_limit"] == 1
    assert second.json()["created"] is False
    assert second.json()["job"]["id"] == job["id"]
    assert client.scheduler.calls == [(job["id"], "prepare", 0)]

    target = client.get(f"/targets/{data['id']}").json()
    assert target["active_job_id"] == job["id"]
    assert target["latest_job"]["id"] == job["id"]


def test_job_status_and_items(client):
    data = _load(client)
    job = client.post(f"/targets/{data['id']}/jobs", json={"count": 2}).json()["job"]

    status = client.get(f"/jobs/{job['id']}")
    items = client.get(f"/jobs/{job['id']}/items")

    assert status.json()["prepared"] == 0
    assert [item["index"] for item in items.json()] == [0, 1]
    assert {item["status"] for item in items.json()} == {"preparing"}


def test_resume_before_first_claim_schedules_prepare(client):
    data = _load(client)
    job = client.post(f"/targets/{data['id']}/jobs", json={"count": 2}).json()["job"]
    client.scheduler.calls.clear()

    response = client.post(f"/jobs/{job['id']}/resume")

    assert response.status_code == 200
    # prepare starts the process stage once items are queued
    assert client.scheduler.calls == [(job["id"], "prepare", 0)]


def test_resume_running_job_schedules_both_stages(client, db_path):
    data = _load(client)
    job = client.post(f"/targets/{data['id']}/jobs", json={"count": 2}).json()["job"]
    conn = sqlite3.connect(db_path)
    conn.execute("UPDATE jobs SET status = 'running' WHERE id = ?", (job["id"],))
    conn.commit()
    conn.close()
    client.scheduler.calls.clear()

    response = client.post(f"/jobs/{job['id']}/resume")

    assert response.json()["status"] == "running"
    assert client.scheduler.calls == [(job["id"], "prepare", 0), (job["id"], "process", 0)]


def test_start_job_rejects_non_finite_rate_limit(client):
    data = _load(client)

    response = client.post(
        f"/targets/{data['id']}/jobs",
        content='{"count": 1, "rate_limit": NaN}',
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 422
    assert response.json()["status"] == "error"
    assert client.get(f"/targets/{data['id']}").json()["active_job_id"] is None
    assert client.scheduler.calls == []


def test_start_job_caps_huge_rate_limit(client):
    data = _load(client)

    response = client.post(f"/targets/{data['id']}/jobs", json={"count": 1, "rate_limit": 1e308})

    assert response.status_code == 200
    assert response.json()["job"]["rate_limit"] == 25


def test_preview_uses_unsaved_configuration(client):
    data = _load(client)
    name = data["fields"][0]

    response = client.post(
        f"/targets/{data['id']}/previews",
        json={"count": 2, "fields": [{"id": name["id"], "strategy": "fixed", "fixed_value": "Preview Name"}]},
    )

    assert response.status_code == 200
    samples = response.json()["samples"]
    assert len(samples) == 2
    assert samples[0]["entry.1001"] == "Preview Name"
    # preview does not persist configuration
    stored = client.get(f"/targets/{data['id']}").json()["fields"][0]
    assert stored["strategy"] == "random"


def test_events_stream_for_finished_job(client, db_path):
    data = _load(client)
    job = client.post(f"/targets/{data['id']}/jobs", json={"count": 1}).json()["job"]
    conn = sqlite3.connect(db_path)
    conn.execute("UPDATE jobs SET status = 'completed', submitted = 1 WHERE id = ?", (job["id"],))
    conn.commit()
    conn.close()

    with client.stream("GET", f"/jobs/{job['id']}/events") as response:
        body = "".join(response.iter_text())

    assert response.status_code == 200
    assert "event: status" in body
    assert '"status": "completed"' in body
