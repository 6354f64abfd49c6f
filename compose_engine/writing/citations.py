"""Citation checks run before a section is produced."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Literal

from compose_engine.jobs.errors import CitationValidationError
from compose_engine.storage.sources_repo import SourceRecord

CitationIssueCode = Literal["MISSING_LEDGER_ENTRY", "UNVERIFIED_LOCATOR"]


@dataclass(frozen=True)
class CitationIssue:
  code: CitationIssueCode
  source_id: str

  def describe(self) -> str:
    return f"{self.code}:{self.source_id}"


@dataclass(frozen=True)
class CitationValidationResult:
  valid: bool
  errors: list[CitationIssue]


def has_verified_locator(source: SourceRecord) -> bool:
  """A source is citable only once a human verified it and it has a locator."""
  return bool(source.verified_by_human) and len(source.locators or []) > 0


def validate_citations(cited_source_ids: Iterable[str], sources: Iterable[SourceRecord]) -> CitationValidationResult:
  """Check each cited id against the fetched source entries."""
  by_id = {source.id: source for source in sources}
  errors: list[CitationIssue] = []
  for source_id in cited_source_ids:
    source = by_id.get(source_id)
    if source is None:
      errors.append(CitationIssue(code="MISSING_LEDGER_ENTRY", source_id=source_id))
      continue
    if not has_verified_locator(source):
      errors.append(CitationIssue(code="UNVERIFIED_LOCATOR", source_id=source_id))
  return CitationValidationResult(valid=not errors, errors=errors)


def assert_citations_valid(cited_source_ids: Iterable[str], sources: Iterable[SourceRecord]) -> None:
  """Raise CitationValidationError listing every offending source."""
  result = validate_citations(cited_source_ids, sources)
  if not result.valid:
    message = ", ".join(issue.describe() for issue in result.errors)
    raise CitationValidationError(f"Compose blocked by citation validation errors: {message}", errors=[{"code": issue.code, "source_id": issue.source_id} for issue in result.errors])
