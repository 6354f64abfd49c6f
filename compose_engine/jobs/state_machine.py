"""Per-section state transitions, cursor advancement, and progress aggregation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from compose_engine.jobs.errors import StateTransitionError
from compose_engine.jobs.models import ComposeJobState, SectionState, SectionStatus
from compose_engine.utils.ids import now_iso

JobOutcome = Literal["running", "completed", "failed"]

_TRANSITIONS: dict[SectionStatus, frozenset[SectionStatus]] = {
  "pending": frozenset({"processing", "failed"}),
  "processing": frozenset({"completed", "pending", "failed"}),
  "failed": frozenset({"processing"}),
  "completed": frozenset(),
}


@dataclass(frozen=True)
class FailurePolicy:
  """Decides whether exhausted optional sections fail the whole job."""

  optional_failures_fail_job: bool = False


def is_retryable(section: SectionState, max_attempts: int) -> bool:
  """
  Return True when the section may still be attempted.

  A failed section is measured against the budget in force now, so raising
  COMPOSE_SECTION_MAX_ATTEMPTS lets a later delivery pick it up again through
  failed -> processing. Fatal failures clear `retryable` and never come back.
  """
  if section.status in ("pending", "processing"):
    return True
  return section.status == "failed" and section.retryable and section.attempts < max_attempts


def _transition(section: SectionState, target: SectionStatus, *, max_attempts: int | None = None) -> None:
  if target not in _TRANSITIONS[section.status]:
    raise StateTransitionError(f"Section {section.key} cannot move from {section.status} to {target}.")
  if section.status == "failed" and (max_attempts is None or not is_retryable(section, max_attempts)):
    raise StateTransitionError(f"Section {section.key} has no attempts left ({section.attempts}).")
  section.status = target
  section.last_updated_at = now_iso()


def advance(state: ComposeJobState, max_attempts: int) -> int | None:
  """
  Select the next section to attempt, starting at the cursor.

  Completed and exhausted sections are skipped. Sections left in processing by
  a crashed attempt are eligible again. The scan wraps around so a section
  before the cursor is never stranded. Returns None when nothing is left.
  """
  total = len(state.sections)
  if total == 0:
    state.cursor = 0
    return None

  start = min(max(state.cursor, 0), total)
  for index in [*range(start, total), *range(0, start)]:
    if is_retryable(state.sections[index], max_attempts):
      state.cursor = index
      return index

  state.cursor = total
  return None


def mark_processing(state: ComposeJobState, index: int, *, max_attempts: int) -> SectionState:
  """Mark a section as in flight; re-entering processing after a crash is allowed."""
  section = state.sections[index]
  if section.status != "processing":
    _transition(section, "processing", max_attempts=max_attempts)
  else:
    section.last_updated_at = now_iso()
  state.cursor = index
  return section


def mark_completed(state: ComposeJobState, index: int, draft_section_id: str) -> SectionState:
  """Record a produced artifact for a section."""
  section = state.sections[index]
  _transition(section, "completed")
  section.draft_section_id = draft_section_id
  section.last_error = None
  state.cursor = index + 1
  return section


def record_failure(state: ComposeJobState, index: int, message: str, *, max_attempts: int, fatal: bool = False) -> SectionState:
  """Count a failed attempt and decide whether the section may be retried."""
  section = state.sections[index]
  section.attempts += 1
  section.last_error = message
  if fatal or section.attempts >= max_attempts:
    _transition(section, "failed")
    section.retryable = not fatal
  else:
    _transition(section, "pending")
  return section


def reset_failed_sections(state: ComposeJobState) -> int:
  """Give failed sections a fresh attempt budget when a terminal job is resumed."""
  reset = 0
  for section in state.sections:
    if section.status == "failed":
      section.status = "pending"
      section.attempts = 0
      section.retryable = True
      section.last_updated_at = now_iso()
      reset += 1
  state.cursor = next((index for index, section in enumerate(state.sections) if section.status != "completed"), len(state.sections))
  return reset


def completed_count(state: ComposeJobState) -> int:
  return sum(1 for section in state.sections if section.status == "completed")


def calculate_progress(state: ComposeJobState) -> float:
  """Return the completed fraction of sections."""
  total = len(state.sections)
  if total == 0:
    return 1.0
  return min(1.0, completed_count(state) / total)


def resolve_outcome(state: ComposeJobState, max_attempts: int, policy: FailurePolicy) -> JobOutcome:
  """Derive the job outcome from section states."""
  exhausted = [section for section in state.sections if section.status == "failed" and not is_retryable(section, max_attempts)]
  if any(section.mandatory for section in exhausted):
    return "failed"
  if exhausted and policy.optional_failures_fail_job:
    return "failed"
  if any(is_retryable(section, max_attempts) for section in state.sections):
    return "running"
  return "completed"


def last_section_error(state: ComposeJobState) -> tuple[str | None, str | None]:
  """Return the (section key, error) of the most recently failed section."""
  failed = [section for section in state.sections if section.status == "failed" and section.last_error]
  if not failed:
    return None, None
  latest = max(failed, key=lambda section: section.last_updated_at or "")
  return latest.key, latest.last_error
