"""Storage interfaces for compose jobs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from compose_engine.jobs.models import JobRecord, JobStatus
from compose_engine.storage.drafts_repo import DraftSectionRecord, SectionCommit


@dataclass(frozen=True)
class JobEventRecord:
  """Timeline entry attached to a job."""

  id: int
  job_id: str
  event_type: str
  message: str
  payload_json: dict[str, Any] | None
  created_at: str


class JobsRepository(Protocol):
  """Repository contract for job persistence.

  Every update is a compare-and-write when `expected_version` is given: the
  row is written only if its version still matches, otherwise ConflictError
  is raised and nothing changes.
  """

  async def create_job(self, record: JobRecord) -> JobRecord:
    """Persist an initial job record."""

  async def get_job(self, job_id: str) -> JobRecord | None:
    """Fetch a job by identifier."""

  async def find_by_idempotency_key(self, *, project_id: str, job_type: str, idempotency_key: str) -> JobRecord | None:
    """Return the most recent job created for a client request id."""

  async def update_job(
    self,
    job_id: str,
    *,
    expected_version: int | None = None,
    status: JobStatus | None = None,
    progress: float | None = None,
    logs: dict[str, Any] | None = None,
    resumable_state: dict[str, Any] | None = None,
    request: dict[str, Any] | None = None,
    worker_id: str | None = None,
    superseded_by_job_id: str | None = None,
    completed_at: str | None = None,
  ) -> JobRecord:
    """Apply partial updates to a job and bump its version."""

  async def commit_section(
    self,
    job_id: str,
    *,
    expected_version: int,
    commit: SectionCommit,
    progress: float,
    resumable_state: dict[str, Any],
    logs: dict[str, Any] | None = None,
  ) -> tuple[JobRecord, DraftSectionRecord]:
    """Atomically write generated section content and the job state that references it."""

  async def append_event(self, *, job_id: str, event_type: str, message: str, payload_json: dict[str, Any] | None = None) -> None:
    """Append one timeline event for a job."""

  async def list_events(self, *, job_id: str, limit: int = 100) -> list[JobEventRecord]:
    """List recent events for a job, oldest first."""
