"""Postgres-backed repository for draft sections and their version history."""

from __future__ import annotations

from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from compose_engine.core.database import get_session_factory
from compose_engine.jobs.errors import ArtifactOwnershipError, NotFoundError, ValidationError
from compose_engine.schema.drafts import DraftSection, DraftSectionSource, DraftSectionVersion
from compose_engine.storage.drafts_repo import DraftSectionRecord, DraftSectionVersionRecord, DraftsRepository, DraftStatus, SectionCommit
from compose_engine.utils.db_retry import execute_with_retry
from compose_engine.utils.ids import now_iso


async def snapshot_in_session(session: AsyncSession, row: DraftSection) -> bool:
  """Insert the live (id, version) pair unless it is already stored."""
  stmt = select(DraftSectionVersion.id).where(DraftSectionVersion.draft_section_id == row.id, DraftSectionVersion.version == row.version).limit(1)
  existing = (await session.execute(stmt)).scalar_one_or_none()
  if existing is not None:
    return False
  session.add(DraftSectionVersion(draft_section_id=row.id, version=row.version, status=row.status, content=row.content, created_at=now_iso()))
  await session.flush()
  return True


async def _bump_in_session(session: AsyncSession, row: DraftSection, *, content: dict[str, Any], status: str) -> DraftSection:
  # The outgoing version must be on record before the live row moves forward.
  await snapshot_in_session(session, row)
  timestamp = now_iso()
  row.content = content
  row.status = status
  row.version = int(row.version) + 1
  row.updated_at = timestamp
  row.approved_at = timestamp if status == "approved" else None
  session.add(row)
  await session.flush()
  await snapshot_in_session(session, row)
  return row


async def save_generated_content_in_session(session: AsyncSession, commit: SectionCommit) -> DraftSection:
  """Write generated content onto a draft section within the caller's transaction."""
  row = await session.get(DraftSection, commit.draft_section_id, with_for_update=True)
  if row is None:
    timestamp = now_iso()
    row = DraftSection(
      id=commit.draft_section_id,
      project_id=commit.project_id,
      section_type=commit.section_type,
      content=commit.content,
      status="draft",
      version=1,
      created_at=timestamp,
      updated_at=timestamp,
    )
    session.add(row)
    await session.flush()
    await snapshot_in_session(session, row)
  else:
    if row.project_id != commit.project_id:
      raise ArtifactOwnershipError(f"Draft section {commit.draft_section_id} belongs to a different project.")
    row = await _bump_in_session(session, row, content=commit.content, status="draft")

  await session.execute(delete(DraftSectionSource).where(DraftSectionSource.draft_section_id == row.id))
  for source_id in commit.source_ids:
    session.add(DraftSectionSource(draft_section_id=row.id, source_id=source_id, locator=commit.locators.get(source_id)))
  await session.flush()
  return row


def draft_to_record(row: DraftSection) -> DraftSectionRecord:
  return DraftSectionRecord(
    id=row.id,
    project_id=row.project_id,
    section_type=row.section_type,
    content=dict(row.content or {}),
    status=row.status,
    version=int(row.version),
    created_at=row.created_at,
    updated_at=row.updated_at,
    approved_at=row.approved_at,
  )


def _version_to_record(row: DraftSectionVersion) -> DraftSectionVersionRecord:
  return DraftSectionVersionRecord(draft_section_id=row.draft_section_id, version=int(row.version), status=row.status, content=dict(row.content or {}), created_at=row.created_at)


class PostgresDraftsRepository(DraftsRepository):
  """Persist draft sections and append-only versions to Postgres using SQLAlchemy."""

  def __init__(self) -> None:
    self._session_factory = get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  async def get_draft_section(self, project_id: str, section_id: str) -> DraftSectionRecord | None:
    async with self._session_factory() as session:
      row = await session.get(DraftSection, section_id)
      if row is None or row.project_id != project_id:
        return None
      return draft_to_record(row)

  async def list_versions(self, section_id: str) -> list[DraftSectionVersionRecord]:
    async with self._session_factory() as session:
      stmt = select(DraftSectionVersion).where(DraftSectionVersion.draft_section_id == section_id).order_by(DraftSectionVersion.version.desc())
      rows = (await session.execute(stmt)).scalars().all()
      return [_version_to_record(row) for row in rows]

  async def get_version(self, section_id: str, version: int) -> DraftSectionVersionRecord | None:
    async with self._session_factory() as session:
      stmt = select(DraftSectionVersion).where(DraftSectionVersion.draft_section_id == section_id, DraftSectionVersion.version == version).limit(1)
      row = (await session.execute(stmt)).scalar_one_or_none()
      if row is None:
        return None
      return _version_to_record(row)

  async def snapshot(self, section_id: str) -> bool:
    async def _snapshot() -> bool:
      async with self._session_factory() as session:
        async with session.begin():
          row = await session.get(DraftSection, section_id, with_for_update=True)
          if row is None:
            raise NotFoundError(f"Draft section {section_id} not found.")
          return await snapshot_in_session(session, row)

    return await execute_with_retry(operation_name="draft_snapshot", func=_snapshot)

  async def rollback(self, project_id: str, section_id: str, target_version: int) -> DraftSectionRecord:
    async def _rollback() -> DraftSectionRecord:
      async with self._session_factory() as session:
        async with session.begin():
          row = await session.get(DraftSection, section_id, with_for_update=True)
          if row is None or row.project_id != project_id:
            raise NotFoundError(f"Draft section {section_id} not found.")
          stmt = select(DraftSectionVersion).where(DraftSectionVersion.draft_section_id == section_id, DraftSectionVersion.version == target_version).limit(1)
          target = (await session.execute(stmt)).scalar_one_or_none()
          if target is None:
            raise NotFoundError(f"Version {target_version} of draft section {section_id} not found.")
          row = await _bump_in_session(session, row, content=dict(target.content or {}), status=target.status)
          return draft_to_record(row)

    return await execute_with_retry(operation_name="draft_rollback", func=_rollback)

  async def update_draft_section(self, project_id: str, section_id: str, *, content: dict[str, Any] | None = None, status: DraftStatus | None = None) -> DraftSectionRecord:
    if content is None and status is None:
      raise ValidationError("Draft update requires content or status.")

    async def _update() -> DraftSectionRecord:
      async with self._session_factory() as session:
        async with session.begin():
          row = await session.get(DraftSection, section_id, with_for_update=True)
          if row is None or row.project_id != project_id:
            raise NotFoundError(f"Draft section {section_id} not found.")
          next_content = content if content is not None else dict(row.content or {})
          next_status = status if status is not None else row.status
          row = await _bump_in_session(session, row, content=next_content, status=next_status)
          return draft_to_record(row)

    return await execute_with_retry(operation_name="draft_update", func=_update)

  async def list_source_links(self, section_id: str) -> list[str]:
    async with self._session_factory() as session:
      stmt = select(DraftSectionSource.source_id).where(DraftSectionSource.draft_section_id == section_id).order_by(DraftSectionSource.source_id.asc())
      return [str(item) for item in (await session.execute(stmt)).scalars().all()]
