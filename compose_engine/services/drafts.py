"""Project-scoped access to draft sections and their version history."""

from __future__ import annotations

import logging
from typing import Any

from compose_engine.jobs.errors import NotFoundError, ValidationError
from compose_engine.storage.drafts_repo import DraftSectionRecord, DraftSectionVersionRecord, DraftsRepository, DraftStatus

logger = logging.getLogger(__name__)


async def get_draft_section(project_id: str, section_id: str, *, drafts_repo: DraftsRepository) -> DraftSectionRecord:
  draft = await drafts_repo.get_draft_section(project_id, section_id)
  if draft is None:
    raise NotFoundError(f"Draft section {section_id} not found.")
  return draft


async def list_versions(project_id: str, section_id: str, *, drafts_repo: DraftsRepository) -> list[DraftSectionVersionRecord]:
  """List stored versions newest first, after checking the section belongs to the project."""
  await get_draft_section(project_id, section_id, drafts_repo=drafts_repo)
  return await drafts_repo.list_versions(section_id)


async def get_version(project_id: str, section_id: str, version: int, *, drafts_repo: DraftsRepository) -> DraftSectionVersionRecord:
  await get_draft_section(project_id, section_id, drafts_repo=drafts_repo)
  record = await drafts_repo.get_version(section_id, version)
  if record is None:
    raise NotFoundError(f"Version {version} of draft section {section_id} not found.")
  return record


async def update_draft_section(project_id: str, section_id: str, *, drafts_repo: DraftsRepository, content: dict[str, Any] | None = None, status: DraftStatus | None = None) -> DraftSectionRecord:
  """Apply a manual edit or approval; every change lands as a new version."""
  if content is None and status is None:
    raise ValidationError("Draft update requires content or status.")
  draft = await drafts_repo.update_draft_section(project_id, section_id, content=content, status=status)
  logger.info("Draft section %s updated to version %d (status=%s)", section_id, draft.version, draft.status)
  return draft


async def rollback_draft_section(project_id: str, section_id: str, target_version: int, *, drafts_repo: DraftsRepository) -> DraftSectionRecord:
  """Restore a stored version as the next forward version."""
  if target_version < 1:
    raise ValidationError("Target version must be a positive integer.")
  draft = await drafts_repo.rollback(project_id, section_id, target_version)
  logger.info("Draft section %s rolled back to version %d as version %d", section_id, target_version, draft.version)
  return draft
