from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictStr, model_validator

from compose_engine.jobs.models import JobStatus, NarrativeVoice, SectionType


class SectionInput(BaseModel):
  """One requested section; its identity is the section type plus the set of source ids."""

  section_type: SectionType
  source_ids: list[StrictStr] = Field(min_length=1, description="Curated source entries this section draws on.")
  title: StrictStr | None = Field(default=None, min_length=1, max_length=200)
  instructions: StrictStr | None = Field(default=None, max_length=2000)
  outline: list[StrictStr] | None = Field(default=None, max_length=12)
  target_word_count: int | None = Field(default=None, ge=100, le=4000)
  draft_section_id: StrictStr | None = Field(default=None, description="Existing draft section to write new versions onto.")
  optional: bool = Field(default=False, description="Optional sections do not fail the job when they fail.")
  model_config = ConfigDict(extra="forbid")


class ComposeSubmitRequest(BaseModel):
  """Request payload for submitting or resubmitting a compose job."""

  sections: list[SectionInput] = Field(min_length=1, max_length=20)
  mode: Literal["literature_review"] = "literature_review"
  research_question: StrictStr | None = Field(default=None, max_length=500)
  narrative_voice: NarrativeVoice | None = None
  request_id: StrictStr | None = Field(default=None, description="Client request id; resubmissions with the same id resolve to the same logical job.")
  job_id: StrictStr | None = Field(default=None, description="Explicit job to resubmit into.")
  model_config = ConfigDict(extra="forbid")


class JobCreateResponse(BaseModel):
  job_id: str
  status: JobStatus
  progress: float
  task_id: str
  created: bool
  resume_source_job_id: str | None = None


class SectionStatusResponse(BaseModel):
  key: str
  section_type: str
  status: str
  attempts: int
  mandatory: bool
  draft_section_id: str | None = None
  last_error: str | None = None


class JobStatusResponse(BaseModel):
  job_id: str
  project_id: str
  job_type: str
  status: JobStatus
  progress: float = Field(ge=0.0, le=1.0)
  version: int
  created_at: str
  updated_at: str
  completed_at: str | None = None
  error: str | None = None
  error_section_key: str | None = None
  logs: list[str] = Field(default_factory=list)
  resume_source_job_id: str | None = None
  superseded_by_job_id: str | None = None
  sections: list[SectionStatusResponse] = Field(default_factory=list)


class JobEventResponse(BaseModel):
  id: int
  event_type: str
  message: str
  payload: dict[str, Any] | None = None
  created_at: str


class DraftSectionResponse(BaseModel):
  id: str
  project_id: str
  section_type: str
  content: dict[str, Any]
  status: Literal["draft", "approved"]
  version: int
  created_at: str
  updated_at: str
  approved_at: str | None = None
  source_ids: list[str] = Field(default_factory=list)


class DraftVersionResponse(BaseModel):
  draft_section_id: str
  version: int
  status: Literal["draft", "approved"]
  content: dict[str, Any]
  created_at: str


class DraftUpdateRequest(BaseModel):
  """Manual edit or approval of a draft section."""

  content: dict[str, Any] | None = None
  status: Literal["draft", "approved"] | None = None
  model_config = ConfigDict(extra="forbid")

  @model_validator(mode="after")
  def require_change(self) -> DraftUpdateRequest:
    if self.content is None and self.status is None:
      raise ValueError("Provide content, status, or both.")
    return self


class RollbackRequest(BaseModel):
  target_version: int = Field(ge=1)
  model_config = ConfigDict(extra="forbid")


class TaskDeliveryRequest(BaseModel):
  """Broker delivery of one job attempt."""

  job_id: StrictStr = Field(min_length=1)
  job_type: StrictStr = Field(min_length=1)
  payload: dict[str, Any]
  attempt: int = Field(default=1, ge=1)
  max_attempts: int = Field(default=1, ge=1)
