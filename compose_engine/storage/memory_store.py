"""In-memory store implementing the jobs, drafts and sources repositories.

Used for local single-process runs and tests. Records are copied on the way in
and out so callers can never mutate stored state without going through a
repository method, and every write is serialized by one lock so compare-and-write
and the atomic section commit behave like their Postgres counterparts.
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import replace
from typing import Any

from compose_engine.jobs.errors import ArtifactOwnershipError, ConflictError, NotFoundError, ValidationError
from compose_engine.jobs.models import JobRecord, JobStatus
from compose_engine.storage.drafts_repo import DraftSectionRecord, DraftSectionVersionRecord, DraftStatus, SectionCommit
from compose_engine.storage.jobs_repo import JobEventRecord
from compose_engine.storage.sources_repo import SourceRecord
from compose_engine.utils.ids import now_iso


class InMemoryComposeStore:
  """Process-local implementation of every storage contract."""

  def __init__(self) -> None:
    self._lock = asyncio.Lock()
    self._jobs: dict[str, JobRecord] = {}
    self._events: dict[str, list[JobEventRecord]] = {}
    self._event_seq = 0
    self._drafts: dict[str, DraftSectionRecord] = {}
    self._versions: dict[str, dict[int, DraftSectionVersionRecord]] = {}
    self._links: dict[str, dict[str, Any]] = {}
    self._sources: dict[str, SourceRecord] = {}

  # Sources

  def add_source(self, source: SourceRecord) -> None:
    """Seed a source entry."""
    self._sources[source.id] = source

  async def fetch_sources(self, project_id: str, source_ids: list[str]) -> list[SourceRecord]:
    found = (self._sources.get(source_id) for source_id in source_ids)
    return [source for source in found if source is not None and source.project_id == project_id]

  # Jobs

  async def create_job(self, record: JobRecord) -> JobRecord:
    async with self._lock:
      if record.job_id in self._jobs:
        raise ConflictError(f"Job {record.job_id} already exists.")
      if record.idempotency_key is not None and self._live_job_for(record) is not None:
        raise ConflictError(f"Job {record.job_id} collides with an existing job for request {record.idempotency_key}.")
      self._jobs[record.job_id] = copy.deepcopy(record)
      return copy.deepcopy(record)

  def _live_job_for(self, record: JobRecord) -> JobRecord | None:
    for existing in self._jobs.values():
      same_request = (existing.project_id, existing.job_type, existing.idempotency_key) == (record.project_id, record.job_type, record.idempotency_key)
      if same_request and existing.superseded_by_job_id is None:
        return existing
    return None

  async def get_job(self, job_id: str) -> JobRecord | None:
    record = self._jobs.get(job_id)
    return copy.deepcopy(record) if record is not None else None

  async def find_by_idempotency_key(self, *, project_id: str, job_type: str, idempotency_key: str) -> JobRecord | None:
    matches = [
      record for record in self._jobs.values() if record.project_id == project_id and record.job_type == job_type and record.idempotency_key == idempotency_key
    ]
    if not matches:
      return None
    # Insertion order doubles as creation order; the live head wins.
    live = [record for record in matches if record.superseded_by_job_id is None]
    return copy.deepcopy((live or matches)[-1])

  async def update_job(  # pylint: disable=too-many-arguments
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
    values = {
      "status": status,
      "progress": progress,
      "logs": logs,
      "resumable_state": resumable_state,
      "request": request,
      "worker_id": worker_id,
      "superseded_by_job_id": superseded_by_job_id,
      "completed_at": completed_at,
    }
    async with self._lock:
      updated = self._compare_and_write(job_id, expected_version=expected_version, values=values)
      return copy.deepcopy(updated)

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
    async with self._lock:
      # Validate the guard first so a losing writer leaves the drafts untouched.
      self._check_version(job_id, expected_version)
      draft = self._save_generated_content(commit)
      updated = self._compare_and_write(job_id, expected_version=expected_version, values={"progress": progress, "resumable_state": resumable_state, "logs": logs})
      return copy.deepcopy(updated), copy.deepcopy(draft)

  async def append_event(self, *, job_id: str, event_type: str, message: str, payload_json: dict[str, Any] | None = None) -> None:
    async with self._lock:
      self._event_seq += 1
      event = JobEventRecord(id=self._event_seq, job_id=job_id, event_type=event_type, message=message, payload_json=copy.deepcopy(payload_json), created_at=now_iso())
      self._events.setdefault(job_id, []).append(event)

  async def list_events(self, *, job_id: str, limit: int = 100) -> list[JobEventRecord]:
    return list(self._events.get(job_id, [])[-limit:])

  def _check_version(self, job_id: str, expected_version: int | None) -> JobRecord:
    current = self._jobs.get(job_id)
    if current is None:
      raise NotFoundError(f"Job {job_id} not found.")
    if expected_version is not None and current.version != expected_version:
      raise ConflictError(f"Job {job_id} was modified concurrently (expected version {expected_version}, found {current.version}).")
    return current

  def _compare_and_write(self, job_id: str, *, expected_version: int | None, values: dict[str, Any]) -> JobRecord:
    current = self._check_version(job_id, expected_version)
    changes = {key: copy.deepcopy(value) for key, value in values.items() if value is not None}
    updated = replace(current, **changes, version=current.version + 1, updated_at=now_iso())
    self._jobs[job_id] = updated
    return updated

  # Drafts

  async def get_draft_section(self, project_id: str, section_id: str) -> DraftSectionRecord | None:
    draft = self._drafts.get(section_id)
    if draft is None or draft.project_id != project_id:
      return None
    return copy.deepcopy(draft)

  async def list_versions(self, section_id: str) -> list[DraftSectionVersionRecord]:
    versions = self._versions.get(section_id, {})
    return [copy.deepcopy(versions[number]) for number in sorted(versions, reverse=True)]

  async def get_version(self, section_id: str, version: int) -> DraftSectionVersionRecord | None:
    return copy.deepcopy(self._versions.get(section_id, {}).get(version))

  async def snapshot(self, section_id: str) -> bool:
    async with self._lock:
      draft = self._drafts.get(section_id)
      if draft is None:
        raise NotFoundError(f"Draft section {section_id} not found.")
      return self._snapshot(draft)

  async def rollback(self, project_id: str, section_id: str, target_version: int) -> DraftSectionRecord:
    async with self._lock:
      draft = self._drafts.get(section_id)
      if draft is None or draft.project_id != project_id:
        raise NotFoundError(f"Draft section {section_id} not found.")
      target = self._versions.get(section_id, {}).get(target_version)
      if target is None:
        raise NotFoundError(f"Version {target_version} of draft section {section_id} not found.")
      return copy.deepcopy(self._bump(draft, content=copy.deepcopy(target.content), status=target.status))

  async def update_draft_section(self, project_id: str, section_id: str, *, content: dict[str, Any] | None = None, status: DraftStatus | None = None) -> DraftSectionRecord:
    if content is None and status is None:
      raise ValidationError("Draft update requires content or status.")
    async with self._lock:
      draft = self._drafts.get(section_id)
      if draft is None or draft.project_id != project_id:
        raise NotFoundError(f"Draft section {section_id} not found.")
      next_content = copy.deepcopy(content) if content is not None else draft.content
      return copy.deepcopy(self._bump(draft, content=next_content, status=status or draft.status))

  async def list_source_links(self, section_id: str) -> list[str]:
    return sorted(self._links.get(section_id, {}))

  def _snapshot(self, draft: DraftSectionRecord) -> bool:
    versions = self._versions.setdefault(draft.id, {})
    if draft.version in versions:
      return False
    versions[draft.version] = DraftSectionVersionRecord(draft_section_id=draft.id, version=draft.version, status=draft.status, content=copy.deepcopy(draft.content), created_at=now_iso())
    return True

  def _bump(self, draft: DraftSectionRecord, *, content: dict[str, Any], status: DraftStatus) -> DraftSectionRecord:
    self._snapshot(draft)
    timestamp = now_iso()
    updated = replace(draft, content=content, status=status, version=draft.version + 1, updated_at=timestamp, approved_at=timestamp if status == "approved" else None)
    self._drafts[draft.id] = updated
    self._snapshot(updated)
    return updated

  def _save_generated_content(self, commit: SectionCommit) -> DraftSectionRecord:
    existing = self._drafts.get(commit.draft_section_id)
    if existing is None:
      timestamp = now_iso()
      draft = DraftSectionRecord(
        id=commit.draft_section_id,
        project_id=commit.project_id,
        section_type=commit.section_type,
        content=copy.deepcopy(commit.content),
        status="draft",
        version=1,
        created_at=timestamp,
        updated_at=timestamp,
      )
      self._drafts[draft.id] = draft
      self._snapshot(draft)
    else:
      if existing.project_id != commit.project_id:
        raise ArtifactOwnershipError(f"Draft section {commit.draft_section_id} belongs to a different project.")
      draft = self._bump(existing, content=copy.deepcopy(commit.content), status="draft")
    self._links[draft.id] = {source_id: copy.deepcopy(commit.locators.get(source_id)) for source_id in commit.source_ids}
    return draft
