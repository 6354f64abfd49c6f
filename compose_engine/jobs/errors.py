"""Error taxonomy for compose jobs, draft history, and task delivery."""

from __future__ import annotations


class ComposeError(Exception):
  """Base class for domain errors raised by the compose engine."""


class ValidationError(ComposeError):
  """Malformed or ambiguous submission, rejected before persisted state is touched."""


class CitationValidationError(ValidationError):
  """A section cites sources that are missing or not verified with a locator."""

  def __init__(self, message: str, *, errors: list[dict[str, str]] | None = None) -> None:
    super().__init__(message)
    self.errors = list(errors or [])


class ArtifactOwnershipError(ValidationError):
  """A draft section referenced by a job belongs to a different project."""


class NotFoundError(ComposeError):
  """A job, draft section, or draft version does not exist."""


class ConflictError(ComposeError):
  """A compare-and-write lost a race; the caller must re-read and retry."""


class StateTransitionError(ComposeError):
  """A section status change is not allowed by the state machine."""


class TransientProductionError(ComposeError):
  """The content producer failed; the section may be attempted again."""


class TerminalUnitFailure(ComposeError):
  """A mandatory section exhausted its attempt budget."""

  def __init__(self, section_key: str, message: str) -> None:
    super().__init__(f"Section {section_key} failed permanently: {message}")
    self.section_key = section_key
    self.last_error = message


class RedeliveryRequested(ComposeError):
  """Processing yielded back to the broker and the delivery should be retried."""
