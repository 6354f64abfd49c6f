from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

from compose_engine.api.deps import build_services
from compose_engine.jobs.errors import RedeliveryRequested
from compose_engine.main import app

TASK_HEADERS = {"authorization": "Bearer test-task-secret"}


@pytest.fixture
def services(settings, repositories, recording_sleep):
  built = build_services(settings, repositories=repositories, sleep=recording_sleep)
  app.state.services = built
  yield built
  app.state.services = None


@pytest.fixture
async def client(services):
  async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
    yield ac


def _sections(*pairs):
  return [{"section_type": section_type, "source_ids": list(source_ids)} for section_type, source_ids in pairs]


@pytest.mark.anyio
async def test_health(client) -> None:
  response = await client.get("/health")

  assert response.status_code == 200
  assert response.json() == {"status": "ok", "version": "0.1.0"}
  assert response.headers["x-request-id"]


@pytest.mark.anyio
async def test_compose_job_runs_to_completion(client, services) -> None:
  body = {"sections": _sections(("introduction", ["src-1", "src-2"]), ("methods", ["src-3"])), "research_question": "Does X help?", "request_id": "req-1"}

  response = await client.post("/v1/projects/proj-1/compose", json=body)
  assert response.status_code == 202
  created = response.json()
  assert created["created"] is True
  assert created["status"] == "queued"
  await services.enqueuer.drain()

  status_response = await client.get(f"/v1/jobs/{created['job_id']}")
  assert status_response.status_code == 200
  job = status_response.json()
  assert job["status"] == "completed"
  assert job["progress"] == 1.0
  assert [section["status"] for section in job["sections"]] == ["completed", "completed"]
  assert job["error"] is None

  events = (await client.get(f"/v1/jobs/{created['job_id']}/events")).json()
  assert [event["event_type"] for event in events] == ["draft.section_generated", "draft.section_generated"]

  draft_id = job["sections"][0]["draft_section_id"]
  draft = (await client.get(f"/v1/projects/proj-1/drafts/{draft_id}")).json()
  assert draft["version"] == 1
  assert draft["section_type"] == "introduction"
  assert draft["source_ids"] == ["src-1", "src-2"]


@pytest.mark.anyio
async def test_resubmitting_a_completed_job_reuses_finished_sections(client, services) -> None:
  body = {"sections": _sections(("introduction", ["src-1"])), "request_id": "req-1"}
  first = (await client.post("/v1/projects/proj-1/compose", json=body)).json()
  await services.enqueuer.drain()

  body["sections"].append({"section_type": "methods", "source_ids": ["src-2"]})
  second = (await client.post("/v1/projects/proj-1/compose", json=body)).json()
  await services.enqueuer.drain()

  assert second["created"] is True
  assert second["resume_source_job_id"] == first["job_id"]
  first_job = (await client.get(f"/v1/jobs/{first['job_id']}")).json()
  second_job = (await client.get(f"/v1/jobs/{second['job_id']}")).json()
  assert first_job["superseded_by_job_id"] == second["job_id"]
  assert second_job["status"] == "completed"
  assert second_job["sections"][0]["draft_section_id"] == first_job["sections"][0]["draft_section_id"]
  assert second_job["sections"][0]["attempts"] == 0


@pytest.mark.anyio
async def test_draft_history_and_rollback(client, services) -> None:
  created = (await client.post("/v1/projects/proj-1/compose", json={"sections": _sections(("discussion", ["src-4"]))})).json()
  await services.enqueuer.drain()
  draft_id = (await client.get(f"/v1/jobs/{created['job_id']}")).json()["sections"][0]["draft_section_id"]
  original = (await client.get(f"/v1/projects/proj-1/drafts/{draft_id}")).json()["content"]
  edited = {"type": "doc", "content": [{"type": "paragraph", "content": [{"type": "text", "text": "Edited."}]}]}

  patched = await client.patch(f"/v1/projects/proj-1/drafts/{draft_id}", json={"content": edited})
  approved = await client.patch(f"/v1/projects/proj-1/drafts/{draft_id}", json={"status": "approved"})
  rolled_back = await client.post(f"/v1/projects/proj-1/drafts/{draft_id}/versions/rollback", json={"target_version": 1})

  assert patched.json()["version"] == 2
  assert approved.json()["status"] == "approved"
  assert approved.json()["approved_at"] is not None
  assert rolled_back.status_code == 200
  live = rolled_back.json()
  assert (live["version"], live["status"], live["content"]) == (4, "draft", original)
  versions = (await client.get(f"/v1/projects/proj-1/drafts/{draft_id}/versions")).json()
  assert [version["version"] for version in versions] == [4, 3, 2, 1]
  second = (await client.get(f"/v1/projects/proj-1/drafts/{draft_id}/versions/2")).json()
  assert second["content"] == edited


@pytest.mark.anyio
async def test_domain_errors_map_to_http_statuses(client) -> None:
  ambiguous = await client.post("/v1/projects/proj-1/compose", json={"sections": _sections(("introduction", ["src-1", "src-2"]), ("introduction", ["src-2", "src-1"]))})
  missing_job = await client.get("/v1/jobs/missing")
  missing_draft = await client.get("/v1/projects/proj-1/drafts/missing")
  missing_version = await client.post("/v1/projects/proj-1/drafts/missing/versions/rollback", json={"target_version": 1})

  assert ambiguous.status_code == 422
  assert ambiguous.json()["code"] == "ValidationError"
  assert missing_job.status_code == 404
  assert missing_job.json()["code"] == "NotFoundError"
  assert missing_draft.status_code == 404
  assert missing_version.status_code == 404


@pytest.mark.anyio
async def test_request_validation_errors(client) -> None:
  no_sections = await client.post("/v1/projects/proj-1/compose", json={"sections": []})
  extra_field = await client.post("/v1/projects/proj-1/compose", json={"sections": _sections(("introduction", ["src-1"])), "unexpected": True})
  empty_patch = await client.patch("/v1/projects/proj-1/drafts/any", json={})
  bad_rollback = await client.post("/v1/projects/proj-1/drafts/any/versions/rollback", json={"target_version": 0})

  assert no_sections.status_code == 422
  assert extra_field.status_code == 422
  assert empty_patch.status_code == 422
  assert bad_rollback.status_code == 422
  assert all("input" not in error for error in extra_field.json()["detail"])


@pytest.mark.anyio
async def test_citation_failures_are_visible_on_the_job(client, services) -> None:
  created = (await client.post("/v1/projects/proj-1/compose", json={"sections": _sections(("introduction", ["src-unverified"]))})).json()
  await services.enqueuer.drain()

  job = (await client.get(f"/v1/jobs/{created['job_id']}")).json()

  assert job["status"] == "failed"
  assert "UNVERIFIED_LOCATOR:src-unverified" in job["error"]
  assert job["sections"][0]["attempts"] == 1


@pytest.mark.anyio
async def test_task_endpoint_requires_the_shared_secret(client) -> None:
  body = {"job_id": "job-1", "job_type": "compose.literature_review", "payload": {}}

  missing = await client.post("/internal/tasks/process-job", json=body)
  wrong = await client.post("/internal/tasks/process-job", json=body, headers={"authorization": "Bearer nope"})

  assert missing.status_code == 403
  assert wrong.status_code == 403


@pytest.mark.anyio
async def test_task_endpoint_processes_a_delivery(client, services) -> None:
  payload = {"job_id": "job-direct", "request": {"project_id": "proj-1", "sections": _sections(("results", ["src-1"]))}}
  body = {"job_id": "job-direct", "job_type": "compose.literature_review", "payload": payload, "attempt": 1, "max_attempts": 2}

  response = await client.post("/internal/tasks/process-job", json=body, headers={"x-compose-task-secret": "test-task-secret"})

  assert response.status_code == 200
  assert response.json() == {"job_id": "job-direct", "status": "completed", "dropped": False}
  replay = await client.post("/internal/tasks/process-job", json=body, headers=TASK_HEADERS)
  assert replay.json()["status"] == "completed"
  events = await services.repositories.jobs.list_events(job_id="job-direct")
  assert len(events) == 1


@pytest.mark.anyio
async def test_task_endpoint_drops_undeliverable_jobs(client) -> None:
  body = {"job_id": "job-x", "job_type": "unknown.type", "payload": {}}

  response = await client.post("/internal/tasks/process-job", json=body, headers=TASK_HEADERS)

  assert response.status_code == 200
  assert response.json() == {"job_id": "job-x", "status": None, "dropped": True}


@pytest.mark.anyio
async def test_task_endpoint_asks_for_redelivery(client, services) -> None:
  body = {"job_id": "job-1", "job_type": "compose.literature_review", "payload": {}}

  with patch.object(services.worker, "handle", AsyncMock(side_effect=RedeliveryRequested("database unavailable"))):
    response = await client.post("/internal/tasks/process-job", json=body, headers=TASK_HEADERS)

  assert response.status_code == 503
  assert response.headers["retry-after"] == "1"
  assert "database unavailable" in response.json()["detail"]
