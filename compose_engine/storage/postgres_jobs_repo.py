"""Postgres-backed repository for compose jobs using SQLAlchemy."""

from __future__ import annotations

from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from compose_engine.core.database import get_session_factory
from compose_engine.jobs.errors import ConflictError, NotFoundError
from compose_engine.jobs.models import JobRecord, JobStatus
from compose_engine.schema.jobs import ComposeJob, ComposeJobEvent
from compose_engine.storage.drafts_repo import DraftSectionRecord, SectionCommit
from compose_engine.storage.jobs_repo import JobEventRecord, JobsRepository
from compose_engine.storage.postgres_drafts_repo import draft_to_record, save_generated_content_in_session
from compose_engine.utils.db_retry import execute_with_retry
from compose_engine.utils.ids import now_iso


class PostgresJobsRepository(JobsRepository):
  """Persist compose jobs and their events to Postgres using SQLAlchemy."""

  def __init__(self) -> None:
    self._session_factory = get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  async def create_job(self, record: JobRecord) -> JobRecord:
    async with self._session_factory() as session:
      job = ComposeJob(
        job_id=record.job_id,
        project_id=record.project_id,
        job_type=record.job_type,
        status=record.status,
        progress=record.progress,
        version=record.version,
        request_json=record.request,
        resumable_state=record.resumable_state,
        logs=record.logs,
        worker_id=record.worker_id,
        idempotency_key=record.idempotency_key,
        resume_source_job_id=record.resume_source_job_id,
        superseded_by_job_id=record.superseded_by_job_id,
        created_at=record.created_at,
        updated_at=record.updated_at,
        completed_at=record.completed_at,
      )
      session.add(job)
      try:
        await session.commit()
      except IntegrityError as exc:
        await session.rollback()
        raise ConflictError(f"Job {record.job_id} collides with an existing job for request {record.idempotency_key}.") from exc
      await session.refresh(job)
      return self._model_to_record(job)

  async def get_job(self, job_id: str) -> JobRecord | None:
    async with self._session_factory() as session:
      row = await session.get(ComposeJob, job_id)
      if row is None:
        return None
      return self._model_to_record(row)

  async def find_by_idempotency_key(self, *, project_id: str, job_type: str, idempotency_key: str) -> JobRecord | None:
    async with self._session_factory() as session:
      stmt = (
        select(ComposeJob)
        .where(ComposeJob.project_id == project_id, ComposeJob.job_type == job_type, ComposeJob.idempotency_key == idempotency_key)
        .order_by(ComposeJob.superseded_by_job_id.is_(None).desc(), ComposeJob.created_at.desc(), ComposeJob.version.desc())
        .limit(1)
      )
      row = (await session.execute(stmt)).scalar_one_or_none()
      if row is None:
        return None
      return self._model_to_record(row)

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
    values: dict[str, Any] = {}
    if status is not None:
      values["status"] = status
    if progress is not None:
      values["progress"] = progress
    if logs is not None:
      values["logs"] = logs
    if resumable_state is not None:
      values["resumable_state"] = resumable_state
    if request is not None:
      values["request_json"] = request
    if worker_id is not None:
      values["worker_id"] = worker_id
    if superseded_by_job_id is not None:
      values["superseded_by_job_id"] = superseded_by_job_id
    if completed_at is not None:
      values["completed_at"] = completed_at

    async def _update() -> JobRecord:
      async with self._session_factory() as session:
        async with session.begin():
          row = await self._compare_and_write(session, job_id=job_id, expected_version=expected_version, values=values)
          return self._model_to_record(row)

    return await execute_with_retry(operation_name="compose_job_update", func=_update)

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
    values: dict[str, Any] = {"progress": progress, "resumable_state": resumable_state}
    if logs is not None:
      values["logs"] = logs

    async def _commit() -> tuple[JobRecord, DraftSectionRecord]:
      async with self._session_factory() as session:
        async with session.begin():
          # A version mismatch raises before commit, discarding the draft write with it.
          draft = await save_generated_content_in_session(session, commit)
          row = await self._compare_and_write(session, job_id=job_id, expected_version=expected_version, values=values)
          return self._model_to_record(row), draft_to_record(draft)

    return await execute_with_retry(operation_name="compose_section_commit", func=_commit)

  async def append_event(self, *, job_id: str, event_type: str, message: str, payload_json: dict[str, Any] | None = None) -> None:
    async with self._session_factory() as session:
      session.add(ComposeJobEvent(job_id=job_id, event_type=event_type, message=message, payload_json=payload_json))
      await session.commit()

  async def list_events(self, *, job_id: str, limit: int = 100) -> list[JobEventRecord]:
    async with self._session_factory() as session:
      stmt = select(ComposeJobEvent).where(ComposeJobEvent.job_id == job_id).order_by(ComposeJobEvent.created_at.desc(), ComposeJobEvent.id.desc()).limit(limit)
      rows = (await session.execute(stmt)).scalars().all()
      return [self._event_to_record(row) for row in reversed(rows)]

  async def _compare_and_write(self, session: AsyncSession, *, job_id: str, expected_version: int | None, values: dict[str, Any]) -> ComposeJob:
    stmt = update(ComposeJob).where(ComposeJob.job_id == job_id)
    if expected_version is not None:
      stmt = stmt.where(ComposeJob.version == expected_version)
    stmt = stmt.values(**values, version=ComposeJob.version + 1, updated_at=now_iso()).returning(ComposeJob).execution_options(synchronize_session=False)
    row = (await session.execute(stmt)).scalar_one_or_none()
    if row is not None:
      return row

    current = await session.get(ComposeJob, job_id)
    if current is None:
      raise NotFoundError(f"Job {job_id} not found.")
    raise ConflictError(f"Job {job_id} was modified concurrently (expected version {expected_version}, found {current.version}).")

  def _event_to_record(self, row: ComposeJobEvent) -> JobEventRecord:
    created_at = row.created_at.isoformat() if row.created_at is not None else now_iso()
    return JobEventRecord(id=int(row.id), job_id=row.job_id, event_type=row.event_type, message=row.message, payload_json=row.payload_json, created_at=created_at)

  def _model_to_record(self, row: ComposeJob) -> JobRecord:
    return JobRecord(
      job_id=row.job_id,
      project_id=row.project_id,
      job_type=row.job_type,
      status=row.status,
      created_at=row.created_at,
      updated_at=row.updated_at,
      progress=float(row.progress or 0.0),
      version=int(row.version),
      request=row.request_json,
      resumable_state=row.resumable_state,
      logs=dict(row.logs or {}),
      worker_id=row.worker_id,
      idempotency_key=row.idempotency_key,
      resume_source_job_id=row.resume_source_job_id,
      superseded_by_job_id=row.superseded_by_job_id,
      completed_at=row.completed_at,
    )
