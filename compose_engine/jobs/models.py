"""Domain models for resumable compose jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Any, Literal

import msgspec

from compose_engine.jobs.errors import ValidationError

JobStatus = Literal["queued", "in_progress", "completed", "failed"]
SectionStatus = Literal["pending", "processing", "completed", "failed"]
SectionType = Literal["literature_review", "introduction", "methods", "results", "discussion", "conclusion", "custom"]
NarrativeVoice = Literal["neutral", "confident", "cautious"]

TERMINAL_JOB_STATUSES: frozenset[str] = frozenset({"completed", "failed"})
ACTIVE_JOB_STATUSES: frozenset[str] = frozenset({"queued", "in_progress"})

COMPOSE_JOB_TYPE = "compose.literature_review"


@dataclass
class JobRecord:
  """Represents a persisted compose job row."""

  job_id: str
  project_id: str
  job_type: str
  status: JobStatus
  created_at: str
  updated_at: str
  progress: float = 0.0
  version: int = 1
  request: dict[str, Any] | None = None
  resumable_state: dict[str, Any] | None = None
  logs: dict[str, Any] = field(default_factory=dict)
  worker_id: str | None = None
  idempotency_key: str | None = None
  resume_source_job_id: str | None = None
  superseded_by_job_id: str | None = None
  completed_at: str | None = None

  @property
  def is_terminal(self) -> bool:
    return self.status in TERMINAL_JOB_STATUSES


class SectionRequest(msgspec.Struct, kw_only=True):
  """One requested section; only the type and source ids define its identity."""

  section_type: SectionType
  source_ids: list[str]
  title: str | None = None
  instructions: str | None = None
  outline: Annotated[list[str], msgspec.Meta(max_length=12)] | None = None
  target_word_count: Annotated[int, msgspec.Meta(ge=100, le=4000)] | None = None
  draft_section_id: str | None = None
  optional: bool = False


class ComposeRequest(msgspec.Struct, kw_only=True):
  """A submitted compose job: ordered sections plus narrative options."""

  project_id: str
  sections: list[SectionRequest]
  mode: Literal["literature_review"] = "literature_review"
  research_question: str | None = None
  narrative_voice: NarrativeVoice | None = None
  request_id: str | None = None


class RequestedFields(msgspec.Struct, kw_only=True):
  """Non-identity fields carried over from the latest submission."""

  title: str | None = None
  instructions: str | None = None
  outline: list[str] | None = None
  target_word_count: int | None = None


class SectionState(msgspec.Struct, kw_only=True):
  """Tracked progress for one section of a compose job."""

  key: str
  section_type: SectionType
  source_ids: list[str]
  status: SectionStatus = "pending"
  attempts: int = 0
  retryable: bool = True
  mandatory: bool = True
  draft_section_id: str | None = None
  last_error: str | None = None
  last_updated_at: str | None = None
  requested: RequestedFields = msgspec.field(default_factory=RequestedFields)


class ComposeJobState(msgspec.Struct, kw_only=True):
  """Canonical, ordered per-section state of a job."""

  sections: list[SectionState] = msgspec.field(default_factory=list)
  cursor: int = 0
  revision: int = 0

  def find(self, key: str) -> SectionState | None:
    for section in self.sections:
      if section.key == key:
        return section
    return None


class ComposeJobPayload(msgspec.Struct, kw_only=True):
  """Queue payload delivered to the processing entrypoint."""

  job_id: str
  request: ComposeRequest
  revision: int = 0
  job_type: str = COMPOSE_JOB_TYPE


def encode_struct(value: msgspec.Struct) -> dict[str, Any]:
  """Serialize a struct into a JSON-compatible dict for persistence."""
  return msgspec.to_builtins(value)


def decode_state(blob: Any) -> ComposeJobState | None:
  """Decode a persisted state blob, or return None when nothing was stored."""
  if blob is None:
    return None
  try:
    return msgspec.convert(blob, type=ComposeJobState)
  except msgspec.ValidationError as exc:
    raise ValidationError(f"Persisted compose state is malformed: {exc}") from exc


def decode_request(blob: Any) -> ComposeRequest:
  """Decode a submitted request from builtins."""
  try:
    return msgspec.convert(blob, type=ComposeRequest)
  except msgspec.ValidationError as exc:
    raise ValidationError(f"Compose request is malformed: {exc}") from exc


def decode_payload(blob: Any) -> ComposeJobPayload:
  """Decode a queue payload from builtins."""
  try:
    return msgspec.convert(blob, type=ComposeJobPayload)
  except msgspec.ValidationError as exc:
    raise ValidationError(f"Compose job payload is malformed: {exc}") from exc


def clone_state(state: ComposeJobState) -> ComposeJobState:
  """Return a deep copy that shares no mutable members with the original."""
  return msgspec.convert(msgspec.to_builtins(state), type=ComposeJobState)
