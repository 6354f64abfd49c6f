"""Create compose job, draft and source tables.

Revision ID: 7f3a2c91d4e0
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "7f3a2c91d4e0"
down_revision = None
branch_labels = None
depends_on = None

_UTC_NOW_ISO = sa.text("""to_char((now() AT TIME ZONE 'UTC'), 'YYYY-MM-DD"T"HH24:MI:SS"Z"')""")


def upgrade() -> None:
  """Upgrade schema."""
  op.create_table(
    "source_entries",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("project_id", sa.String(), nullable=False),
    sa.Column("citation_key", sa.String(), nullable=False),
    sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("locators", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("verified_by_human", sa.Boolean(), nullable=False),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index(op.f("ix_source_entries_project_id"), "source_entries", ["project_id"], unique=False)

  op.create_table(
    "draft_sections",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("project_id", sa.String(), nullable=False),
    sa.Column("section_type", sa.String(), nullable=False),
    sa.Column("content", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("status", sa.String(), nullable=False),
    sa.Column("version", sa.Integer(), nullable=False),
    sa.Column("approved_at", sa.String(), nullable=True),
    sa.Column("created_at", sa.String(), server_default=_UTC_NOW_ISO, nullable=False),
    sa.Column("updated_at", sa.String(), server_default=_UTC_NOW_ISO, nullable=False),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index(op.f("ix_draft_sections_project_id"), "draft_sections", ["project_id"], unique=False)

  op.create_table(
    "draft_section_versions",
    sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
    sa.Column("draft_section_id", sa.String(), nullable=False),
    sa.Column("version", sa.Integer(), nullable=False),
    sa.Column("status", sa.String(), nullable=False),
    sa.Column("content", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("created_at", sa.String(), server_default=_UTC_NOW_ISO, nullable=False),
    sa.ForeignKeyConstraint(["draft_section_id"], ["draft_sections.id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("id"),
    sa.UniqueConstraint("draft_section_id", "version", name="ux_draft_section_versions_section_version"),
  )
  op.create_index(op.f("ix_draft_section_versions_draft_section_id"), "draft_section_versions", ["draft_section_id"], unique=False)

  op.create_table(
    "draft_section_sources",
    sa.Column("draft_section_id", sa.String(), nullable=False),
    sa.Column("source_id", sa.String(), nullable=False),
    sa.Column("locator", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.ForeignKeyConstraint(["draft_section_id"], ["draft_sections.id"], ondelete="CASCADE"),
    sa.ForeignKeyConstraint(["source_id"], ["source_entries.id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("draft_section_id", "source_id"),
  )

  op.create_table(
    "compose_jobs",
    sa.Column("job_id", sa.String(), nullable=False),
    sa.Column("project_id", sa.String(), nullable=False),
    sa.Column("job_type", sa.String(), nullable=False),
    sa.Column("status", sa.String(), nullable=False),
    sa.Column("progress", sa.Float(), nullable=False),
    sa.Column("version", sa.Integer(), nullable=False),
    sa.Column("request_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("resumable_state", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("logs", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("worker_id", sa.String(), nullable=True),
    sa.Column("idempotency_key", sa.String(), nullable=True),
    sa.Column("resume_source_job_id", sa.String(), nullable=True),
    sa.Column("superseded_by_job_id", sa.String(), nullable=True),
    sa.Column("created_at", sa.String(), server_default=_UTC_NOW_ISO, nullable=False),
    sa.Column("updated_at", sa.String(), server_default=_UTC_NOW_ISO, nullable=False),
    sa.Column("completed_at", sa.String(), nullable=True),
    sa.PrimaryKeyConstraint("job_id"),
  )
  op.create_index(op.f("ix_compose_jobs_project_id"), "compose_jobs", ["project_id"], unique=False)
  op.create_index(op.f("ix_compose_jobs_job_type"), "compose_jobs", ["job_type"], unique=False)
  op.create_index(op.f("ix_compose_jobs_status"), "compose_jobs", ["status"], unique=False)
  op.create_index(op.f("ix_compose_jobs_resume_source_job_id"), "compose_jobs", ["resume_source_job_id"], unique=False)
  op.create_index(
    "ux_compose_jobs_live_idempotency",
    "compose_jobs",
    ["project_id", "job_type", "idempotency_key"],
    unique=True,
    postgresql_where=sa.text("superseded_by_job_id IS NULL"),
  )

  op.create_table(
    "compose_job_events",
    sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
    sa.Column("job_id", sa.String(), nullable=False),
    sa.Column("event_type", sa.String(), nullable=False),
    sa.Column("message", sa.Text(), nullable=False),
    sa.Column("payload_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.ForeignKeyConstraint(["job_id"], ["compose_jobs.job_id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index(op.f("ix_compose_job_events_job_id"), "compose_job_events", ["job_id"], unique=False)
  op.create_index(op.f("ix_compose_job_events_event_type"), "compose_job_events", ["event_type"], unique=False)


def downgrade() -> None:
  """Downgrade schema."""
  op.drop_index(op.f("ix_compose_job_events_event_type"), table_name="compose_job_events")
  op.drop_index(op.f("ix_compose_job_events_job_id"), table_name="compose_job_events")
  op.drop_table("compose_job_events")
  op.drop_index("ux_compose_jobs_live_idempotency", table_name="compose_jobs")
  op.drop_index(op.f("ix_compose_jobs_resume_source_job_id"), table_name="compose_jobs")
  op.drop_index(op.f("ix_compose_jobs_status"), table_name="compose_jobs")
  op.drop_index(op.f("ix_compose_jobs_job_type"), table_name="compose_jobs")
  op.drop_index(op.f("ix_compose_jobs_project_id"), table_name="compose_jobs")
  op.drop_table("compose_jobs")
  op.drop_table("draft_section_sources")
  op.drop_index(op.f("ix_draft_section_versions_draft_section_id"), table_name="draft_section_versions")
  op.drop_table("draft_section_versions")
  op.drop_index(op.f("ix_draft_sections_project_id"), table_name="draft_sections")
  op.drop_table("draft_sections")
  op.drop_index(op.f("ix_source_entries_project_id"), table_name="source_entries")
  op.drop_table("source_entries")
