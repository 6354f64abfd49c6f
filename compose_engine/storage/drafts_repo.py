"""Storage interfaces for draft sections and their version history."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

DraftStatus = Literal["draft", "approved"]


@dataclass(frozen=True)
class DraftSectionRecord:
  """Live draft section produced by a compose job."""

  id: str
  project_id: str
  section_type: str
  content: dict[str, Any]
  status: DraftStatus
  version: int
  created_at: str
  updated_at: str
  approved_at: str | None = None


@dataclass(frozen=True)
class DraftSectionVersionRecord:
  """Immutable snapshot of a draft section at one version."""

  draft_section_id: str
  version: int
  status: DraftStatus
  content: dict[str, Any]
  created_at: str


@dataclass(frozen=True)
class SectionCommit:
  """Generated content to write onto a draft section together with job state."""

  draft_section_id: str
  project_id: str
  section_type: str
  content: dict[str, Any]
  source_ids: list[str]
  locators: dict[str, Any] = field(default_factory=dict)


class DraftsRepository(Protocol):
  """Repository contract for draft sections and append-only versions."""

  async def get_draft_section(self, project_id: str, section_id: str) -> DraftSectionRecord | None:
    """Fetch a live draft section scoped to a project."""

  async def list_versions(self, section_id: str) -> list[DraftSectionVersionRecord]:
    """List stored versions, newest first."""

  async def get_version(self, section_id: str, version: int) -> DraftSectionVersionRecord | None:
    """Fetch one stored version."""

  async def snapshot(self, section_id: str) -> bool:
    """Record the live (id, version) pair if it is not stored yet."""

  async def rollback(self, project_id: str, section_id: str, target_version: int) -> DraftSectionRecord:
    """Restore a stored version as a new forward version."""

  async def update_draft_section(self, project_id: str, section_id: str, *, content: dict[str, Any] | None = None, status: DraftStatus | None = None) -> DraftSectionRecord:
    """Apply a manual edit or approval as a new version."""

  async def list_source_links(self, section_id: str) -> list[str]:
    """Return the source ids linked to a draft section."""
