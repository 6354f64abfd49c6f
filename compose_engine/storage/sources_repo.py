"""Storage interface for curated source material."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class SourceRecord:
  """A curated source entry a section may cite."""

  id: str
  project_id: str
  citation_key: str
  metadata: dict[str, Any] = field(default_factory=dict)
  locators: list[Any] = field(default_factory=list)
  verified_by_human: bool = False

  @property
  def primary_locator(self) -> Any | None:
    return self.locators[0] if self.locators else None


class SourcesRepository(Protocol):
  """Repository contract for source lookups."""

  async def fetch_sources(self, project_id: str, source_ids: list[str]) -> list[SourceRecord]:
    """Return the sources of a project matching the ids; unknown ids are omitted."""
