"""Section identity keys and reconciliation of submissions with persisted state."""

from __future__ import annotations

import hashlib
from collections.abc import Iterable

from compose_engine.jobs.errors import ValidationError
from compose_engine.jobs.models import ComposeJobState, ComposeRequest, RequestedFields, SectionRequest, SectionState, clone_state

_KEY_DIGEST_CHARS = 16


def normalize_source_ids(source_ids: Iterable[str]) -> list[str]:
  """Return the sorted, de-duplicated set of non-blank source ids."""
  return sorted({str(source_id).strip() for source_id in source_ids if str(source_id).strip()})


def section_identity_key(section_type: str, source_ids: Iterable[str]) -> str:
  """Derive the stable identity of a section from its type and cited sources."""
  normalized = normalize_source_ids(source_ids)
  if not section_type or not section_type.strip():
    raise ValidationError("Section type is required to derive a section identity.")
  if not normalized:
    raise ValidationError(f"Section of type {section_type} must reference at least one source.")

  digest = hashlib.sha256("\n".join(normalized).encode("utf-8")).hexdigest()[:_KEY_DIGEST_CHARS]
  return f"{section_type.strip()}:{digest}"


def _requested_fields(section: SectionRequest) -> RequestedFields:
  return RequestedFields(title=section.title, instructions=section.instructions, outline=list(section.outline) if section.outline is not None else None, target_word_count=section.target_word_count)


def _first_open_index(sections: list[SectionState]) -> int:
  for index, section in enumerate(sections):
    if section.status != "completed":
      return index
  return len(sections)


def merge_state(persisted: ComposeJobState | None, request: ComposeRequest) -> ComposeJobState:
  """
  Reconcile a submission with previously persisted section state.

  Matching is by identity key, never by position. Matched sections keep their
  status, attempts, artifact reference and last error; only the non-identity
  request fields are refreshed. Sections missing from the submission are
  dropped. The output follows the submitted order and the cursor points at the
  first section that is not completed.
  """
  if not request.sections:
    raise ValidationError("A compose request must include at least one section.")

  previous = clone_state(persisted) if persisted is not None else ComposeJobState()
  by_key = {section.key: section for section in previous.sections}

  merged: list[SectionState] = []
  seen: dict[str, int] = {}
  for index, submitted in enumerate(request.sections):
    key = section_identity_key(submitted.section_type, submitted.source_ids)
    if key in seen:
      raise ValidationError(f"Sections {seen[key] + 1} and {index + 1} resolve to the same identity ({key}).")
    seen[key] = index

    existing = by_key.get(key)
    if existing is None:
      merged.append(
        SectionState(
          key=key,
          section_type=submitted.section_type,
          source_ids=normalize_source_ids(submitted.source_ids),
          mandatory=not submitted.optional,
          draft_section_id=submitted.draft_section_id,
          requested=_requested_fields(submitted),
        )
      )
      continue

    existing.requested = _requested_fields(submitted)
    existing.mandatory = not submitted.optional
    # Fill a missing artifact reference; never replace one that already exists.
    if existing.draft_section_id is None and submitted.draft_section_id:
      existing.draft_section_id = submitted.draft_section_id
    merged.append(existing)

  return ComposeJobState(sections=merged, cursor=_first_open_index(merged), revision=previous.revision)


def build_initial_state(request: ComposeRequest) -> ComposeJobState:
  """Build the canonical state for a first submission."""
  return merge_state(None, request)
