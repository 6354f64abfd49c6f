"""Persisted progress and log tracking for compose jobs."""

from __future__ import annotations

import logging
from typing import Any

from compose_engine.jobs.errors import NotFoundError
from compose_engine.jobs.models import ComposeJobState, JobRecord, JobStatus, encode_struct
from compose_engine.jobs.state_machine import calculate_progress
from compose_engine.storage.drafts_repo import DraftSectionRecord, SectionCommit
from compose_engine.storage.jobs_repo import JobsRepository
from compose_engine.utils.ids import now_iso

MAX_TRACKED_LOGS = 100

logger = logging.getLogger(__name__)


def build_logs_blob(messages: list[str], *, error: str | None = None, section_key: str | None = None) -> dict[str, Any]:
  """Shape the opaque logs column: a rolling message window plus the last error."""
  return {"messages": list(messages)[-MAX_TRACKED_LOGS:], "error": error, "section_key": section_key}


class ComposeProgressTracker:
  """
  Write job state, progress and logs back to the repository.

  Every write is a compare-and-write against the last version this tracker
  observed. A ConflictError means another writer got there first; callers
  re-read with `refresh()` and rebuild their state from the winner's record.
  """

  def __init__(self, *, job: JobRecord, jobs_repo: JobsRepository) -> None:
    self._job = job
    self._jobs_repo = jobs_repo
    self._reset_from(job)

  @property
  def job(self) -> JobRecord:
    return self._job

  def _reset_from(self, job: JobRecord) -> None:
    logs = job.logs or {}
    self._messages: list[str] = [str(item) for item in logs.get("messages", [])][-MAX_TRACKED_LOGS:]
    self._error: str | None = logs.get("error")
    self._section_key: str | None = logs.get("section_key")

  def log(self, message: str) -> None:
    """Queue a log line for the next write."""
    self._messages.append(f"{now_iso()} {message}")
    self._messages = self._messages[-MAX_TRACKED_LOGS:]

  def record_error(self, *, section_key: str | None, error: str) -> None:
    self._error = error
    self._section_key = section_key

  def _logs_blob(self) -> dict[str, Any]:
    return build_logs_blob(self._messages, error=self._error, section_key=self._section_key)

  def _persisted_revision(self) -> int:
    blob = self._job.resumable_state or {}
    return int(blob.get("revision", 0))

  def _clamped_progress(self, state: ComposeJobState, status: JobStatus | None) -> float:
    progress = calculate_progress(state)
    effective_status = status or self._job.status
    # A resubmission changes the section count and starts a new baseline.
    if effective_status == "in_progress" and self._job.status == "in_progress" and state.revision == self._persisted_revision():
      return max(float(self._job.progress), progress)
    return progress

  async def refresh(self) -> JobRecord:
    """Reload the job after a lost compare-and-write."""
    job = await self._jobs_repo.get_job(self._job.job_id)
    if job is None:
      raise NotFoundError(f"Job {self._job.job_id} not found.")
    self._job = job
    self._reset_from(job)
    return job

  async def save(self, state: ComposeJobState, *, status: JobStatus | None = None, message: str | None = None, worker_id: str | None = None) -> JobRecord:
    """Persist the canonical state with recomputed progress."""
    if message:
      self.log(message)
    self._job = await self._jobs_repo.update_job(
      self._job.job_id,
      expected_version=self._job.version,
      status=status,
      progress=self._clamped_progress(state, status),
      logs=self._logs_blob(),
      resumable_state=encode_struct(state),
      worker_id=worker_id,
    )
    return self._job

  async def commit_section(self, state: ComposeJobState, commit: SectionCommit, *, message: str) -> DraftSectionRecord:
    """Write a produced section and the state that references it in one transaction."""
    self.log(message)
    self._job, draft = await self._jobs_repo.commit_section(
      self._job.job_id,
      expected_version=self._job.version,
      commit=commit,
      progress=self._clamped_progress(state, None),
      resumable_state=encode_struct(state),
      logs=self._logs_blob(),
    )
    return draft

  async def complete(self, state: ComposeJobState, *, message: str = "Compose job completed.") -> JobRecord:
    self.log(message)
    self._job = await self._jobs_repo.update_job(
      self._job.job_id,
      expected_version=self._job.version,
      status="completed",
      progress=1.0,
      logs=self._logs_blob(),
      resumable_state=encode_struct(state),
      completed_at=now_iso(),
    )
    return self._job

  async def fail(self, state: ComposeJobState | None, *, error: str, section_key: str | None = None) -> JobRecord:
    """Mark the job failed, exposing the error that ended it."""
    self.record_error(section_key=section_key, error=error)
    self.log(f"Compose job failed: {error}")
    logger.warning("Compose job %s failed: %s", self._job.job_id, error)
    self._job = await self._jobs_repo.update_job(
      self._job.job_id,
      expected_version=self._job.version,
      status="failed",
      progress=calculate_progress(state) if state is not None else None,
      logs=self._logs_blob(),
      resumable_state=encode_struct(state) if state is not None else None,
      completed_at=now_iso(),
    )
    return self._job
