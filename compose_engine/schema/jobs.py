from __future__ import annotations

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, String, Text, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from compose_engine.core.database import Base

_UTC_NOW_ISO = text("""to_char((now() AT TIME ZONE 'UTC'), 'YYYY-MM-DD"T"HH24:MI:SS"Z"')""")


class ComposeJob(Base):
  __tablename__ = "compose_jobs"
  # One live job per client request id; superseded jobs drop out of the index.
  __table_args__ = (
    Index(
      "ux_compose_jobs_live_idempotency",
      "project_id",
      "job_type",
      "idempotency_key",
      unique=True,
      postgresql_where=text("superseded_by_job_id IS NULL"),
    ),
  )

  job_id: Mapped[str] = mapped_column(String, primary_key=True)
  project_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  job_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
  status: Mapped[str] = mapped_column(String, nullable=False, index=True)
  progress: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
  version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
  request_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  resumable_state: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  logs: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
  worker_id: Mapped[str | None] = mapped_column(String, nullable=True)
  idempotency_key: Mapped[str | None] = mapped_column(String, nullable=True)
  resume_source_job_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  superseded_by_job_id: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[str] = mapped_column(String, nullable=False, server_default=_UTC_NOW_ISO)
  updated_at: Mapped[str] = mapped_column(String, nullable=False, server_default=_UTC_NOW_ISO)
  completed_at: Mapped[str | None] = mapped_column(String, nullable=True)


class ComposeJobEvent(Base):
  __tablename__ = "compose_job_events"

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  job_id: Mapped[str] = mapped_column(ForeignKey("compose_jobs.job_id", ondelete="CASCADE"), nullable=False, index=True)
  event_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
  message: Mapped[str] = mapped_column(Text, nullable=False)
  payload_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
