from __future__ import annotations

import pytest

from compose_engine.jobs.errors import ValidationError
from compose_engine.jobs.identity import build_initial_state, merge_state, normalize_source_ids, section_identity_key
from compose_engine.jobs.state_machine import mark_completed, mark_processing, record_failure


def test_identity_key_ignores_source_order_duplicates_and_whitespace() -> None:
  first = section_identity_key("introduction", ["src-2", "src-1"])
  second = section_identity_key("introduction", [" src-1", "src-2", "src-1 "])

  assert first == second
  assert first.startswith("introduction:")
  assert len(first.split(":", 1)[1]) == 16


def test_identity_key_depends_on_type_and_sources() -> None:
  base = section_identity_key("introduction", ["src-1"])

  assert section_identity_key("methods", ["src-1"]) != base
  assert section_identity_key("introduction", ["src-1", "src-2"]) != base


def test_identity_key_requires_sources_and_type() -> None:
  with pytest.raises(ValidationError):
    section_identity_key("introduction", [])
  with pytest.raises(ValidationError):
    section_identity_key("introduction", ["  "])
  with pytest.raises(ValidationError):
    section_identity_key(" ", ["src-1"])


def test_normalize_source_ids_sorts_and_deduplicates() -> None:
  assert normalize_source_ids(["b", "a", "b", ""]) == ["a", "b"]


def test_initial_state_follows_submitted_order(make_request) -> None:
  request = make_request(("methods", ["src-2"]), ("introduction", ["src-1"]))

  state = build_initial_state(request)

  assert [section.section_type for section in state.sections] == ["methods", "introduction"]
  assert all(section.status == "pending" and section.attempts == 0 for section in state.sections)
  assert state.cursor == 0
  assert state.revision == 0


def test_merge_preserves_progress_across_reorder_and_field_changes(make_request) -> None:
  original = make_request(("introduction", ["src-1", "src-2"]), ("methods", ["src-3"]))
  state = build_initial_state(original)
  mark_processing(state, 0, max_attempts=3)
  mark_completed(state, 0, "draft-a")
  mark_processing(state, 1, max_attempts=3)
  record_failure(state, 1, "timeout", max_attempts=3)

  resubmitted = make_request(
    {"section_type": "methods", "source_ids": ["src-3"], "title": "Study design"},
    {"section_type": "introduction", "source_ids": ["src-2", "src-1"], "instructions": "Keep it short."},
  )
  merged = merge_state(state, resubmitted)

  methods, introduction = merged.sections
  assert methods.key == state.sections[1].key
  assert methods.attempts == 1
  assert methods.last_error == "timeout"
  assert methods.requested.title == "Study design"
  assert introduction.status == "completed"
  assert introduction.draft_section_id == "draft-a"
  assert introduction.requested.instructions == "Keep it short."
  # The merge is pure; the persisted state is left untouched.
  assert state.sections[0].requested.instructions is None


def test_merge_never_regresses_completed_sections(make_request) -> None:
  request = make_request(("introduction", ["src-1"]), ("methods", ["src-2"]))
  state = build_initial_state(request)
  mark_processing(state, 0, max_attempts=3)
  mark_completed(state, 0, "draft-a")

  for _ in range(3):
    state = merge_state(state, request)

  assert state.sections[0].status == "completed"
  assert state.sections[0].draft_section_id == "draft-a"
  assert state.cursor == 1


def test_merge_drops_sections_missing_from_the_submission(make_request) -> None:
  state = build_initial_state(make_request(("introduction", ["src-1"]), ("methods", ["src-2"])))
  mark_processing(state, 0, max_attempts=3)
  mark_completed(state, 0, "draft-a")

  merged = merge_state(state, make_request(("methods", ["src-2"]), ("results", ["src-3"])))

  assert [section.section_type for section in merged.sections] == ["methods", "results"]
  assert merged.find(state.sections[0].key) is None
  assert merged.cursor == 0


def test_merge_rejects_ambiguous_identities(make_request) -> None:
  request = make_request(("introduction", ["src-1", "src-2"]), ("introduction", ["src-2", "src-1"]))

  with pytest.raises(ValidationError, match="same identity"):
    build_initial_state(request)


def test_merge_rejects_empty_submissions(make_request) -> None:
  with pytest.raises(ValidationError):
    build_initial_state(make_request())


def test_merge_fills_missing_artifact_reference_but_never_replaces_one(make_request) -> None:
  state = build_initial_state(make_request({"section_type": "introduction", "source_ids": ["src-1"]}))
  assert state.sections[0].draft_section_id is None

  filled = merge_state(state, make_request({"section_type": "introduction", "source_ids": ["src-1"], "draft_section_id": "draft-x"}))
  kept = merge_state(filled, make_request({"section_type": "introduction", "source_ids": ["src-1"], "draft_section_id": "draft-y"}))

  assert filled.sections[0].draft_section_id == "draft-x"
  assert kept.sections[0].draft_section_id == "draft-x"


def test_merge_refreshes_optional_flag(make_request) -> None:
  state = build_initial_state(make_request(("discussion", ["src-4"])))
  assert state.sections[0].mandatory is True

  merged = merge_state(state, make_request({"section_type": "discussion", "source_ids": ["src-4"], "optional": True}))

  assert merged.sections[0].mandatory is False


def test_merge_keeps_persisted_revision(make_request) -> None:
  state = build_initial_state(make_request(("introduction", ["src-1"])))
  state.revision = 4

  assert merge_state(state, make_request(("introduction", ["src-1"]))).revision == 4
