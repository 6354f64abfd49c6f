from __future__ import annotations

import pytest

from compose_engine.jobs.dispatch import JobProcessorRegistry, mark_job_failed, process_delivery
from compose_engine.jobs.errors import ConflictError, NotFoundError, RedeliveryRequested
from compose_engine.jobs.models import JobRecord
from compose_engine.jobs.processor import ComposeJobProcessor
from compose_engine.services.tasks.policy import Delivery
from compose_engine.writing.producer import TemplateSectionProducer


class RaisingHandler:
  def __init__(self, exc: Exception) -> None:
    self.exc = exc
    self.calls = 0

  async def process(self, delivery: Delivery):
    self.calls += 1
    raise self.exc


async def _queued_job(store, job_id: str = "job-1") -> JobRecord:
  return await store.create_job(JobRecord(job_id=job_id, project_id="proj-1", job_type="compose.literature_review", status="queued", created_at="2026-01-01T00:00:00Z", updated_at="2026-01-01T00:00:00Z"))


@pytest.mark.anyio
async def test_unknown_job_type_is_dropped_and_fails_the_job(store) -> None:
  await _queued_job(store)
  delivery = Delivery(job_id="job-1", job_type="unknown.type", payload={}, attempt=1, max_attempts=2)

  outcome = await process_delivery(delivery, JobProcessorRegistry({}), store)

  assert outcome.dropped is True
  assert "Unsupported job type" in outcome.reason
  job = await store.get_job("job-1")
  assert job.status == "failed"
  assert "Unsupported job type" in job.logs["error"]


@pytest.mark.anyio
async def test_malformed_payload_is_dropped(store, settings, recording_sleep) -> None:
  processor = ComposeJobProcessor(jobs_repo=store, sources_repo=store, producer=TemplateSectionProducer(), settings=settings, sleep=recording_sleep)
  registry = JobProcessorRegistry({"compose.literature_review": processor})
  delivery = Delivery(job_id="job-1", job_type="compose.literature_review", payload={"job_id": "job-1"}, attempt=1, max_attempts=2)

  outcome = await process_delivery(delivery, registry, store)

  assert outcome.dropped is True
  assert outcome.result is None


@pytest.mark.anyio
async def test_not_found_is_dropped_without_retry(store) -> None:
  handler = RaisingHandler(NotFoundError("gone"))
  delivery = Delivery(job_id="job-1", job_type="compose.literature_review", payload={}, attempt=1, max_attempts=3)

  outcome = await process_delivery(delivery, JobProcessorRegistry({"compose.literature_review": handler}), store)

  assert outcome.dropped is True
  assert handler.calls == 1


@pytest.mark.anyio
async def test_infrastructure_failures_request_redelivery_until_the_last_attempt(store) -> None:
  await _queued_job(store)
  handler = RaisingHandler(ConflictError("lost race"))
  registry = JobProcessorRegistry({"compose.literature_review": handler})

  with pytest.raises(RedeliveryRequested):
    await process_delivery(Delivery(job_id="job-1", job_type="compose.literature_review", payload={}, attempt=1, max_attempts=2), registry, store)
  assert (await store.get_job("job-1")).status == "queued"

  outcome = await process_delivery(Delivery(job_id="job-1", job_type="compose.literature_review", payload={}, attempt=2, max_attempts=2), registry, store)

  assert outcome.dropped is True
  assert (await store.get_job("job-1")).status == "failed"


@pytest.mark.anyio
async def test_mark_job_failed_leaves_terminal_and_missing_jobs_alone(store) -> None:
  job = await _queued_job(store)
  completed = await store.update_job(job.job_id, expected_version=job.version, status="completed", progress=1.0)

  await mark_job_failed(store, job.job_id, "late error")
  await mark_job_failed(store, "missing", "late error")

  after = await store.get_job(job.job_id)
  assert after.status == "completed"
  assert after.version == completed.version
