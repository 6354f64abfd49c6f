from __future__ import annotations

from sqlalchemy import ForeignKey, Integer, String, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from compose_engine.core.database import Base

_UTC_NOW_ISO = text("""to_char((now() AT TIME ZONE 'UTC'), 'YYYY-MM-DD"T"HH24:MI:SS"Z"')""")


class DraftSection(Base):
  __tablename__ = "draft_sections"

  id: Mapped[str] = mapped_column(String, primary_key=True)
  project_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  section_type: Mapped[str] = mapped_column(String, nullable=False)
  content: Mapped[dict] = mapped_column(JSONB, nullable=False)
  status: Mapped[str] = mapped_column(String, nullable=False, default="draft")
  version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
  approved_at: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[str] = mapped_column(String, nullable=False, server_default=_UTC_NOW_ISO)
  updated_at: Mapped[str] = mapped_column(String, nullable=False, server_default=_UTC_NOW_ISO)


class DraftSectionVersion(Base):
  """Append-only history; rows are inserted once and never updated."""

  __tablename__ = "draft_section_versions"
  __table_args__ = (UniqueConstraint("draft_section_id", "version", name="ux_draft_section_versions_section_version"),)

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  draft_section_id: Mapped[str] = mapped_column(ForeignKey("draft_sections.id", ondelete="CASCADE"), nullable=False, index=True)
  version: Mapped[int] = mapped_column(Integer, nullable=False)
  status: Mapped[str] = mapped_column(String, nullable=False)
  content: Mapped[dict] = mapped_column(JSONB, nullable=False)
  created_at: Mapped[str] = mapped_column(String, nullable=False, server_default=_UTC_NOW_ISO)


class DraftSectionSource(Base):
  __tablename__ = "draft_section_sources"

  draft_section_id: Mapped[str] = mapped_column(ForeignKey("draft_sections.id", ondelete="CASCADE"), primary_key=True)
  source_id: Mapped[str] = mapped_column(ForeignKey("source_entries.id", ondelete="CASCADE"), primary_key=True)
  locator: Mapped[dict | list | None] = mapped_column(JSONB, nullable=True)
