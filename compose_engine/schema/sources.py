from __future__ import annotations

from sqlalchemy import Boolean, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from compose_engine.core.database import Base


class SourceEntry(Base):
  __tablename__ = "source_entries"

  id: Mapped[str] = mapped_column(String, primary_key=True)
  project_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  citation_key: Mapped[str] = mapped_column(String, nullable=False)
  metadata_json: Mapped[dict] = mapped_column("metadata", JSONB, nullable=False, default=dict)
  locators: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
  verified_by_human: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
