"""Section content producers.

The processor treats production as an opaque call that returns a document or
raises. `TemplateSectionProducer` renders a deterministic document from the
section's sources; a model-backed producer can replace it behind the same
protocol.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from compose_engine.jobs.models import NarrativeVoice, SectionState
from compose_engine.storage.sources_repo import SourceRecord

_DEFAULT_HEADINGS = {
  "literature_review": "Literature Review",
  "introduction": "Introduction",
  "methods": "Methods",
  "results": "Results",
  "discussion": "Discussion",
  "conclusion": "Conclusion",
}

_VOICE_PREFIXES = {
  "confident": "The evidence strongly suggests that",
  "cautious": "The available evidence indicates that",
}


@dataclass(frozen=True)
class ProductionContext:
  """Job-level inputs shared by every section of a compose job."""

  job_id: str
  project_id: str
  research_question: str | None = None
  narrative_voice: NarrativeVoice | None = None


class SectionProducer(Protocol):
  async def produce(self, section: SectionState, sources: list[SourceRecord], context: ProductionContext) -> dict[str, Any]:
    """Return the document content for one section."""


def default_heading(section_type: str) -> str:
  return _DEFAULT_HEADINGS.get(section_type, "Draft Section")


def _metadata_text(metadata: dict[str, Any], key: str) -> str | None:
  value = metadata.get(key)
  if isinstance(value, str) and value.strip():
    return value.strip()
  return None


def _source_paragraph(source: SourceRecord, index: int, context: ProductionContext) -> str:
  metadata = source.metadata or {}
  study_title = _metadata_text(metadata, "title") or f"Source {index + 1}"
  hints = [hint for hint in (_metadata_text(metadata, "journal"), _metadata_text(metadata, "published_at")) if hint]
  citation_hint = f" ({', '.join(hints)})" if hints else ""
  voice_prefix = _VOICE_PREFIXES.get(context.narrative_voice or "")
  prefix = f"{voice_prefix} " if voice_prefix else ""
  suffix = f" This evidence relates to the research question: {context.research_question.strip()}." if context.research_question and context.research_question.strip() else ""
  return f"{prefix}{study_title}{citation_hint} contributes to the literature review.{suffix} [{source.citation_key}]"


def build_draft_content(section: SectionState, sources: list[SourceRecord], context: ProductionContext) -> dict[str, Any]:
  """Render a heading followed by one cited paragraph per source."""
  heading = section.requested.title or default_heading(section.section_type)
  content: list[dict[str, Any]] = [{"type": "heading", "attrs": {"level": 2}, "content": [{"type": "text", "text": heading}]}]
  for index, source in enumerate(sources):
    content.append({"type": "paragraph", "content": [{"type": "text", "text": _source_paragraph(source, index, context)}]})
  return {"type": "doc", "content": content}


class TemplateSectionProducer:
  """Deterministic producer used when no generation provider is wired in."""

  async def produce(self, section: SectionState, sources: list[SourceRecord], context: ProductionContext) -> dict[str, Any]:
    return build_draft_content(section, sources, context)
