from __future__ import annotations

import pytest

from compose_engine.jobs.errors import CitationValidationError
from compose_engine.jobs.identity import build_initial_state
from compose_engine.storage.sources_repo import SourceRecord
from compose_engine.writing.citations import assert_citations_valid, has_verified_locator, validate_citations
from compose_engine.writing.producer import ProductionContext, TemplateSectionProducer, build_draft_content, default_heading


def test_verified_sources_pass(make_source) -> None:
  result = validate_citations(["src-1", "src-2"], [make_source("src-1"), make_source("src-2")])

  assert result.valid is True
  assert result.errors == []


def test_missing_and_unverified_sources_are_reported(make_source) -> None:
  unverified = SourceRecord(id="src-2", project_id="proj-1", citation_key="k2", locators=[{"page": 3}], verified_by_human=False)
  no_locator = SourceRecord(id="src-3", project_id="proj-1", citation_key="k3", verified_by_human=True)

  result = validate_citations(["src-1", "src-2", "src-3", "src-9"], [make_source("src-1"), unverified, no_locator])

  assert result.valid is False
  assert [(issue.code, issue.source_id) for issue in result.errors] == [
    ("UNVERIFIED_LOCATOR", "src-2"),
    ("UNVERIFIED_LOCATOR", "src-3"),
    ("MISSING_LEDGER_ENTRY", "src-9"),
  ]
  assert not has_verified_locator(no_locator)


def test_assert_citations_valid_carries_structured_errors() -> None:
  with pytest.raises(CitationValidationError) as excinfo:
    assert_citations_valid(["src-9"], [])

  assert excinfo.value.errors == [{"code": "MISSING_LEDGER_ENTRY", "source_id": "src-9"}]
  assert "MISSING_LEDGER_ENTRY:src-9" in str(excinfo.value)


def test_draft_content_has_heading_and_cited_paragraphs(make_request, make_source) -> None:
  section = build_initial_state(make_request({"section_type": "discussion", "source_ids": ["src-1", "src-2"], "title": "What it means"})).sections[0]
  context = ProductionContext(job_id="job-1", project_id="proj-1", research_question="Does X help?", narrative_voice="cautious")

  content = build_draft_content(section, [make_source("src-1", title="Trial A"), make_source("src-2")], context)

  heading, first, second = content["content"]
  assert content["type"] == "doc"
  assert heading["content"][0]["text"] == "What it means"
  text = first["content"][0]["text"]
  assert text.startswith("The available evidence indicates that Trial A (Journal of Tests)")
  assert "Does X help?" in text
  assert text.endswith("[key-src-1]")
  assert second["content"][0]["text"].endswith("[key-src-2]")


@pytest.mark.anyio
async def test_template_producer_uses_default_headings(make_request, make_source) -> None:
  section = build_initial_state(make_request(("methods", ["src-1"]))).sections[0]

  content = await TemplateSectionProducer().produce(section, [make_source("src-1")], ProductionContext(job_id="job-1", project_id="proj-1"))

  assert content["content"][0]["content"][0]["text"] == "Methods"
  assert default_heading("custom") == "Draft Section"
