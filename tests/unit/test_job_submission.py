from __future__ import annotations

import asyncio
from typing import Any

import pytest

from compose_engine.jobs.errors import ConflictError, NotFoundError, ValidationError
from compose_engine.jobs.models import COMPOSE_JOB_TYPE, JobRecord, decode_payload, decode_state, encode_struct
from compose_engine.jobs.processor import ComposeJobProcessor
from compose_engine.jobs.state_machine import mark_completed, mark_processing
from compose_engine.services.jobs import get_job_status, submit_compose_job
from compose_engine.services.tasks.policy import Delivery
from compose_engine.storage.drafts_repo import SectionCommit
from compose_engine.storage.memory_store import InMemoryComposeStore
from compose_engine.writing.producer import TemplateSectionProducer


class FailingMethodsProducer(TemplateSectionProducer):
  async def produce(self, section, sources, context) -> dict[str, Any]:
    if section.section_type == "methods":
      raise RuntimeError("model unavailable")
    return await super().produce(section, sources, context)


async def _run_delivery(store, settings, enqueuer, producer, sleep):
  job_type, payload, policy = enqueuer.calls[-1]
  delivery = Delivery(job_id=payload["job_id"], job_type=job_type, payload=payload, attempt=1, max_attempts=policy.max_attempts)
  processor = ComposeJobProcessor(jobs_repo=store, sources_repo=store, producer=producer, settings=settings, sleep=sleep)
  return await processor.process(delivery)


@pytest.mark.anyio
async def test_first_submission_creates_and_enqueues_a_job(store, settings, recording_enqueuer, make_request) -> None:
  request = make_request(("introduction", ["src-1"]), ("methods", ["src-2"]), request_id="req-1")

  result = await submit_compose_job(request, jobs_repo=store, enqueuer=recording_enqueuer, settings=settings)

  assert result.created is True
  assert result.task_id == "task-1"
  assert result.job.status == "queued"
  assert result.job.progress == 0.0
  job_type, payload, policy = recording_enqueuer.calls[0]
  assert job_type == COMPOSE_JOB_TYPE
  assert decode_payload(payload).job_id == result.job.job_id
  assert (policy.max_attempts, policy.base_delay_ms) == (settings.queue_max_attempts, settings.queue_backoff_delay_ms)


@pytest.mark.anyio
async def test_resubmission_keeps_completed_sections(store, settings, recording_enqueuer, make_request) -> None:
  request = make_request(("introduction", ["src-1"]), ("methods", ["src-2"]), request_id="req-1")
  submitted = await submit_compose_job(request, jobs_repo=store, enqueuer=recording_enqueuer, settings=settings)
  # A worker completes the first section with draft D1.
  job = await store.get_job(submitted.job.job_id)
  state = decode_state(job.resumable_state)
  mark_processing(state, 0, max_attempts=3)
  mark_completed(state, 0, "D1")
  commit = SectionCommit(draft_section_id="D1", project_id="proj-1", section_type="introduction", content={"type": "doc", "content": []}, source_ids=["src-1"])
  await store.commit_section(job.job_id, expected_version=job.version, commit=commit, progress=0.5, resumable_state=encode_struct(state))

  again = await submit_compose_job(request, jobs_repo=store, enqueuer=recording_enqueuer, settings=settings)

  assert again.created is False
  assert again.job.job_id == submitted.job.job_id
  assert again.job.progress == 0.5
  merged = decode_state(again.job.resumable_state)
  assert [(section.status, section.draft_section_id) for section in merged.sections] == [("completed", "D1"), ("pending", None)]
  assert merged.revision == 1
  assert decode_payload(recording_enqueuer.calls[-1][1]).revision == 1


@pytest.mark.anyio
async def test_resubmitting_a_failed_job_starts_a_resumed_job(store, settings, recording_enqueuer, recording_sleep, make_request) -> None:
  request = make_request(("introduction", ["src-1"]), ("methods", ["src-2"]), request_id="req-1")
  first = await submit_compose_job(request, jobs_repo=store, enqueuer=recording_enqueuer, settings=settings)
  failed = await _run_delivery(store, settings, recording_enqueuer, FailingMethodsProducer(), recording_sleep)
  assert failed.status == "failed"
  original = decode_state((await store.get_job(first.job.job_id)).resumable_state)

  resumed = await submit_compose_job(request, jobs_repo=store, enqueuer=recording_enqueuer, settings=settings)

  assert resumed.created is True
  assert resumed.resumed_from_job_id == first.job.job_id
  assert resumed.job.job_id != first.job.job_id
  assert resumed.job.resume_source_job_id == first.job.job_id
  assert resumed.job.progress == 0.5
  old = await store.get_job(first.job.job_id)
  assert old.status == "failed"
  assert old.superseded_by_job_id == resumed.job.job_id
  state = decode_state(resumed.job.resumable_state)
  assert state.sections[0].status == "completed"
  assert state.sections[0].draft_section_id == original.sections[0].draft_section_id
  assert (state.sections[1].status, state.sections[1].attempts) == ("pending", 0)

  finished = await _run_delivery(store, settings, recording_enqueuer, TemplateSectionProducer(), recording_sleep)

  assert finished.job_id == resumed.job.job_id
  assert finished.status == "completed"


@pytest.mark.anyio
async def test_explicit_job_id_follows_the_supersede_chain(store, settings, recording_enqueuer, recording_sleep, make_request) -> None:
  request = make_request(("introduction", ["src-1"]), ("methods", ["src-2"]))
  first = await submit_compose_job(request, jobs_repo=store, enqueuer=recording_enqueuer, settings=settings)
  await _run_delivery(store, settings, recording_enqueuer, FailingMethodsProducer(), recording_sleep)
  resumed = await submit_compose_job(request, jobs_repo=store, enqueuer=recording_enqueuer, settings=settings, job_id=first.job.job_id)

  merged = await submit_compose_job(request, jobs_repo=store, enqueuer=recording_enqueuer, settings=settings, job_id=first.job.job_id)

  assert merged.created is False
  assert merged.job.job_id == resumed.job.job_id


@pytest.mark.anyio
async def test_explicit_job_id_must_exist_and_match_the_project(store, settings, recording_enqueuer, make_request) -> None:
  request = make_request(("introduction", ["src-1"]))
  created = await submit_compose_job(request, jobs_repo=store, enqueuer=recording_enqueuer, settings=settings)

  with pytest.raises(NotFoundError):
    await submit_compose_job(request, jobs_repo=store, enqueuer=recording_enqueuer, settings=settings, job_id="missing")
  with pytest.raises(ValidationError):
    await submit_compose_job(make_request(("introduction", ["src-1"]), project_id="proj-2"), jobs_repo=store, enqueuer=recording_enqueuer, settings=settings, job_id=created.job.job_id)


@pytest.mark.anyio
async def test_invalid_submissions_touch_nothing(store, settings, recording_enqueuer, make_request) -> None:
  request = make_request(("introduction", ["src-1", "src-2"]), ("introduction", ["src-2", "src-1"]), request_id="req-bad")

  with pytest.raises(ValidationError):
    await submit_compose_job(request, jobs_repo=store, enqueuer=recording_enqueuer, settings=settings)

  assert await store.find_by_idempotency_key(project_id="proj-1", job_type=COMPOSE_JOB_TYPE, idempotency_key="req-bad") is None
  assert recording_enqueuer.calls == []


@pytest.mark.anyio
async def test_enqueue_failure_marks_the_job_failed(store, settings, failing_enqueuer, make_request) -> None:
  request = make_request(("introduction", ["src-1"]), request_id="req-1")

  with pytest.raises(RuntimeError, match="broker unavailable"):
    await submit_compose_job(request, jobs_repo=store, enqueuer=failing_enqueuer, settings=settings)

  job = await store.find_by_idempotency_key(project_id="proj-1", job_type=COMPOSE_JOB_TYPE, idempotency_key="req-1")
  assert job.status == "failed"
  assert "Failed to enqueue job" in job.logs["error"]


@pytest.mark.anyio
async def test_status_view_exposes_sections_and_last_error(store, settings, recording_enqueuer, recording_sleep, make_request) -> None:
  request = make_request(("introduction", ["src-1"]), ("methods", ["src-2"]))
  submitted = await submit_compose_job(request, jobs_repo=store, enqueuer=recording_enqueuer, settings=settings)
  await _run_delivery(store, settings, recording_enqueuer, FailingMethodsProducer(), recording_sleep)

  view = await get_job_status(submitted.job.job_id, jobs_repo=store)

  assert view.status == "failed"
  assert view.progress == 0.5
  assert [section.status for section in view.sections] == ["completed", "failed"]
  assert view.error_section_key == view.sections[1].key
  assert "model unavailable" in view.error
  assert view.sections[1].attempts == settings.section_max_attempts
  assert view.logs


@pytest.mark.anyio
async def test_status_of_unknown_job_is_not_found(store) -> None:
  with pytest.raises(NotFoundError):
    await get_job_status("missing", jobs_repo=store)


@pytest.mark.anyio
async def test_widening_an_active_job_recomputes_progress(store, settings, recording_enqueuer, recording_sleep, make_request) -> None:
  narrow = make_request(("introduction", ["src-1"]), ("methods", ["src-2"]), request_id="req-1")
  submitted = await submit_compose_job(narrow, jobs_repo=store, enqueuer=recording_enqueuer, settings=settings)
  job = await store.get_job(submitted.job.job_id)
  state = decode_state(job.resumable_state)
  for index in (0, 1):
    mark_processing(state, index, max_attempts=3)
    mark_completed(state, index, f"D{index}")
  await store.update_job(job.job_id, expected_version=job.version, status="in_progress", progress=1.0, resumable_state=encode_struct(state))

  wide = make_request(("introduction", ["src-1"]), ("methods", ["src-2"]), ("results", ["src-3"]), ("discussion", ["src-4"]), request_id="req-1")
  again = await submit_compose_job(wide, jobs_repo=store, enqueuer=recording_enqueuer, settings=settings)

  assert again.created is False
  view = await get_job_status(job.job_id, jobs_repo=store)
  assert (view.status, view.progress) == ("in_progress", 0.5)
  assert [section.status for section in view.sections] == ["completed", "completed", "pending", "pending"]

  finished = await _run_delivery(store, settings, recording_enqueuer, TemplateSectionProducer(), recording_sleep)

  assert (finished.status, finished.progress, finished.completed_sections) == ("completed", 1.0, 4)


class InterleavingStore(InMemoryComposeStore):
  """Hands control to other submitters between the idempotency lookup and the insert."""

  async def find_by_idempotency_key(self, **kwargs):
    found = await super().find_by_idempotency_key(**kwargs)
    await asyncio.sleep(0)
    return found


@pytest.mark.anyio
async def test_concurrent_first_submissions_share_one_job(settings, recording_enqueuer, make_request) -> None:
  store = InterleavingStore()
  request = make_request(("introduction", ["src-1"]), ("methods", ["src-2"]), request_id="same-logical-job")

  first, second = await asyncio.gather(
    submit_compose_job(request, jobs_repo=store, enqueuer=recording_enqueuer, settings=settings),
    submit_compose_job(request, jobs_repo=store, enqueuer=recording_enqueuer, settings=settings),
  )

  assert first.job.job_id == second.job.job_id
  assert sorted([first.created, second.created]) == [False, True]
  assert {decode_payload(payload).job_id for _, payload, _ in recording_enqueuer.calls} == {first.job.job_id}


@pytest.mark.anyio
async def test_store_rejects_a_second_live_job_for_the_same_request(store) -> None:
  def record(job_id: str, **fields) -> JobRecord:
    return JobRecord(job_id=job_id, project_id="proj-1", job_type=COMPOSE_JOB_TYPE, status="queued", created_at="2026-01-01T00:00:00Z", updated_at="2026-01-01T00:00:00Z", idempotency_key="req-1", **fields)

  first = await store.create_job(record("job-a"))

  with pytest.raises(ConflictError):
    await store.create_job(record("job-b"))

  await store.update_job(first.job_id, expected_version=first.version, superseded_by_job_id="job-c")
  successor = await store.create_job(record("job-c", resume_source_job_id="job-a"))
  found = await store.find_by_idempotency_key(project_id="proj-1", job_type=COMPOSE_JOB_TYPE, idempotency_key="req-1")
  assert found.job_id == successor.job_id
