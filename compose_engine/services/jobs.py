"""Submission and status services for compose jobs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from compose_engine.config import Settings
from compose_engine.jobs.dispatch import mark_job_failed
from compose_engine.jobs.errors import ConflictError, NotFoundError, ValidationError
from compose_engine.jobs.identity import build_initial_state, merge_state
from compose_engine.jobs.models import COMPOSE_JOB_TYPE, ComposeJobPayload, ComposeJobState, ComposeRequest, JobRecord, JobStatus, decode_state, encode_struct
from compose_engine.jobs.progress import MAX_TRACKED_LOGS, build_logs_blob
from compose_engine.jobs.state_machine import calculate_progress, reset_failed_sections
from compose_engine.services.tasks.interface import TaskEnqueuer
from compose_engine.services.tasks.policy import RetryPolicy
from compose_engine.storage.jobs_repo import JobsRepository
from compose_engine.utils.ids import generate_job_id, now_iso

logger = logging.getLogger(__name__)

_MAX_SUPERSEDE_HOPS = 20


@dataclass(frozen=True)
class SubmissionResult:
  job: JobRecord
  task_id: str
  created: bool
  resumed_from_job_id: str | None = None


@dataclass(frozen=True)
class SectionStatusView:
  key: str
  section_type: str
  status: str
  attempts: int
  mandatory: bool
  draft_section_id: str | None
  last_error: str | None


@dataclass(frozen=True)
class JobStatusView:
  """Read-only projection of a job for polling clients."""

  job_id: str
  project_id: str
  job_type: str
  status: JobStatus
  progress: float
  version: int
  created_at: str
  updated_at: str
  completed_at: str | None
  error: str | None
  error_section_key: str | None
  logs: list[str]
  resume_source_job_id: str | None
  superseded_by_job_id: str | None
  sections: list[SectionStatusView] = field(default_factory=list)


async def _follow_supersede_chain(jobs_repo: JobsRepository, job: JobRecord) -> JobRecord:
  for _ in range(_MAX_SUPERSEDE_HOPS):
    if job.superseded_by_job_id is None:
      return job
    successor = await jobs_repo.get_job(job.superseded_by_job_id)
    if successor is None:
      return job
    job = successor
  return job


async def _resolve_existing(request: ComposeRequest, *, jobs_repo: JobsRepository, job_id: str | None) -> JobRecord | None:
  """Find the logical job a submission refers to, by explicit id or client request id."""
  if job_id is not None:
    job = await jobs_repo.get_job(job_id)
    if job is None:
      raise NotFoundError(f"Job {job_id} not found.")
    if job.project_id != request.project_id:
      raise ValidationError(f"Job {job_id} belongs to a different project.")
    return await _follow_supersede_chain(jobs_repo, job)

  if request.request_id:
    job = await jobs_repo.find_by_idempotency_key(project_id=request.project_id, job_type=COMPOSE_JOB_TYPE, idempotency_key=request.request_id)
    if job is not None:
      return await _follow_supersede_chain(jobs_repo, job)
  return None


async def _create_job(request: ComposeRequest, state: ComposeJobState, *, jobs_repo: JobsRepository, resume_source_job_id: str | None = None, new_job_id: str | None = None) -> JobRecord:
  timestamp = now_iso()
  message = f"{timestamp} Resumed from job {resume_source_job_id}." if resume_source_job_id else f"{timestamp} Job queued."
  record = JobRecord(
    job_id=new_job_id or generate_job_id(),
    project_id=request.project_id,
    job_type=COMPOSE_JOB_TYPE,
    status="queued",
    created_at=timestamp,
    updated_at=timestamp,
    progress=calculate_progress(state),
    request=encode_struct(request),
    resumable_state=encode_struct(state),
    logs=build_logs_blob([message]),
    idempotency_key=request.request_id,
    resume_source_job_id=resume_source_job_id,
  )
  return await jobs_repo.create_job(record)


async def _submit_once(request: ComposeRequest, initial: ComposeJobState, *, jobs_repo: JobsRepository, job_id: str | None) -> tuple[JobRecord, bool, str | None]:
  existing = await _resolve_existing(request, jobs_repo=jobs_repo, job_id=job_id)
  if existing is None:
    job = await _create_job(request, initial, jobs_repo=jobs_repo)
    logger.info("Created compose job %s for project %s (%d sections)", job.job_id, request.project_id, len(initial.sections))
    return job, True, None

  persisted = decode_state(existing.resumable_state)
  merged = merge_state(persisted, request)

  if not existing.is_terminal:
    merged.revision = (persisted.revision if persisted is not None else 0) + 1
    logs = dict(existing.logs or {})
    logs["messages"] = [*logs.get("messages", []), f"{now_iso()} Resubmitted (revision {merged.revision})."][-MAX_TRACKED_LOGS:]
    job = await jobs_repo.update_job(
      existing.job_id,
      expected_version=existing.version,
      request=encode_struct(request),
      resumable_state=encode_struct(merged),
      progress=calculate_progress(merged),
      logs=logs,
    )
    logger.info("Merged resubmission into active job %s (revision %d)", job.job_id, merged.revision)
    return job, False, None

  # Terminal jobs are immutable; carry their progress into a fresh job instead.
  reset_failed_sections(merged)
  merged.revision = 0
  new_job_id = generate_job_id()
  await jobs_repo.update_job(existing.job_id, expected_version=existing.version, superseded_by_job_id=new_job_id)
  job = await _create_job(request, merged, jobs_repo=jobs_repo, resume_source_job_id=existing.job_id, new_job_id=new_job_id)
  logger.info("Resumed terminal job %s as %s", existing.job_id, job.job_id)
  return job, True, existing.job_id


async def submit_compose_job(request: ComposeRequest, *, jobs_repo: JobsRepository, enqueuer: TaskEnqueuer, settings: Settings, job_id: str | None = None) -> SubmissionResult:
  """
  Accept a compose submission and hand it to the broker.

  The request is validated by building its initial state before any storage is
  touched. A submission that resolves to an active job is merged into it; one
  that resolves to a terminal job starts a new job seeded from the old state.
  """
  initial = build_initial_state(request)

  for attempt in range(1, settings.conflict_retry_limit + 1):
    try:
      job, created, resumed_from = await _submit_once(request, initial, jobs_repo=jobs_repo, job_id=job_id)
      break
    except ConflictError:
      logger.info("Submission for project %s lost a write race (attempt %d/%d)", request.project_id, attempt, settings.conflict_retry_limit)
      if attempt >= settings.conflict_retry_limit:
        raise

  state = decode_state(job.resumable_state) or initial
  payload = ComposeJobPayload(job_id=job.job_id, request=request, revision=state.revision)
  try:
    task_id = await enqueuer.enqueue(COMPOSE_JOB_TYPE, encode_struct(payload), RetryPolicy.for_queue(settings))
  except Exception as exc:
    logger.error("Failed to enqueue compose job %s", job.job_id, exc_info=True)
    await mark_job_failed(jobs_repo, job.job_id, f"Failed to enqueue job: {exc}")
    raise

  return SubmissionResult(job=job, task_id=task_id, created=created, resumed_from_job_id=resumed_from)


async def get_job_status(job_id: str, *, jobs_repo: JobsRepository) -> JobStatusView:
  """Build a status view from a single read; never takes locks."""
  job = await jobs_repo.get_job(job_id)
  if job is None:
    raise NotFoundError(f"Job {job_id} not found.")

  state = decode_state(job.resumable_state) or ComposeJobState()
  logs = job.logs or {}
  sections = [
    SectionStatusView(
      key=section.key,
      section_type=section.section_type,
      status=section.status,
      attempts=section.attempts,
      mandatory=section.mandatory,
      draft_section_id=section.draft_section_id,
      last_error=section.last_error,
    )
    for section in state.sections
  ]
  return JobStatusView(
    job_id=job.job_id,
    project_id=job.project_id,
    job_type=job.job_type,
    status=job.status,
    progress=job.progress,
    version=job.version,
    created_at=job.created_at,
    updated_at=job.updated_at,
    completed_at=job.completed_at,
    error=logs.get("error"),
    error_section_key=logs.get("section_key"),
    logs=[str(item) for item in logs.get("messages", [])],
    resume_source_job_id=job.resume_source_job_id,
    superseded_by_job_id=job.superseded_by_job_id,
    sections=sections,
  )
