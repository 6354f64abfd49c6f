"""Postgres-backed source lookups."""

from __future__ import annotations

from sqlalchemy import select

from compose_engine.core.database import get_session_factory
from compose_engine.schema.sources import SourceEntry
from compose_engine.storage.sources_repo import SourceRecord, SourcesRepository


class PostgresSourcesRepository(SourcesRepository):
  def __init__(self) -> None:
    self._session_factory = get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  async def fetch_sources(self, project_id: str, source_ids: list[str]) -> list[SourceRecord]:
    if not source_ids:
      return []
    async with self._session_factory() as session:
      stmt = select(SourceEntry).where(SourceEntry.project_id == project_id, SourceEntry.id.in_(source_ids))
      rows = (await session.execute(stmt)).scalars().all()
      by_id = {row.id: row for row in rows}
      # Preserve the caller's order so rendered paragraphs follow the section's source list.
      return [
        SourceRecord(
          id=row.id,
          project_id=row.project_id,
          citation_key=row.citation_key,
          metadata=dict(row.metadata_json or {}),
          locators=list(row.locators or []),
          verified_by_human=bool(row.verified_by_human),
        )
        for row in (by_id.get(source_id) for source_id in source_ids)
        if row is not None
      ]
