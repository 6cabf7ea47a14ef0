"""Create memo, job queue and usage tables.

Revision ID: 3f2a9c1d7e40
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

revision = "3f2a9c1d7e40"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
  """Upgrade schema."""
  _create_memos()
  _create_jobs()
  _create_usage()


def _create_memos() -> None:
  op.create_table(
    "memos",
    sa.Column("memo_id", sa.String(), nullable=False),
    sa.Column("account_id", sa.String(), nullable=False),
    sa.Column("title", sa.String(), nullable=False),
    sa.Column("meeting_date", sa.Date(), nullable=True),
    sa.Column("participants", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("language", sa.String(), nullable=False),
    sa.Column("status", sa.String(), nullable=False),
    sa.Column("processing_attempt", sa.Integer(), nullable=False),
    sa.Column("error_message", sa.Text(), nullable=True),
    sa.Column("duration_seconds", sa.Integer(), nullable=True),
    sa.Column("audio_storage_key", sa.String(), nullable=True),
    sa.Column("audio_url", sa.String(), nullable=True),
    sa.Column("content_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    sa.CheckConstraint("status IN ('UPLOADING', 'TRANSCRIBING', 'GENERATING', 'COMPLETED', 'FAILED')", name="ck_memos_status"),
    sa.PrimaryKeyConstraint("memo_id"),
  )
  op.create_index("ix_memos_account_created", "memos", ["account_id", "created_at"], unique=False)
  op.create_index("ix_memos_status_updated", "memos", ["status", "updated_at"], unique=False)

  op.create_table(
    "memo_transcripts",
    sa.Column("memo_id", sa.String(), nullable=False),
    sa.Column("processing_attempt", sa.Integer(), nullable=False),
    sa.Column("text", sa.Text(), nullable=False),
    sa.Column("segments_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("language", sa.String(), nullable=False),
    sa.Column("duration_seconds", sa.Float(), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    sa.ForeignKeyConstraint(["memo_id"], ["memos.memo_id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("memo_id"),
  )

  op.create_table(
    "memo_status_events",
    sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
    sa.Column("memo_id", sa.String(), nullable=False),
    sa.Column("processing_attempt", sa.Integer(), nullable=False),
    sa.Column("from_status", sa.String(), nullable=True),
    sa.Column("to_status", sa.String(), nullable=False),
    sa.Column("error_message", sa.Text(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    sa.ForeignKeyConstraint(["memo_id"], ["memos.memo_id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index("ix_memo_status_events_memo_id", "memo_status_events", ["memo_id"], unique=False)


def _create_jobs() -> None:
  op.create_table(
    "jobs",
    sa.Column("job_id", sa.String(), nullable=False),
    sa.Column("stage", sa.String(), nullable=False),
    sa.Column("memo_id", sa.String(), nullable=False),
    sa.Column("processing_attempt", sa.Integer(), nullable=False),
    sa.Column("payload_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("priority", sa.Integer(), nullable=False),
    sa.Column("state", sa.String(), nullable=False),
    sa.Column("attempts", sa.Integer(), nullable=False),
    sa.Column("max_attempts", sa.Integer(), nullable=False),
    sa.Column("last_error", sa.Text(), nullable=True),
    sa.Column("errors_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("lease_owner", sa.String(), nullable=True),
    sa.Column("lease_token", sa.String(), nullable=True),
    sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    sa.Column("available_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    sa.PrimaryKeyConstraint("job_id"),
  )
  op.create_index("ix_jobs_memo_id", "jobs", ["memo_id"], unique=False)
  op.create_index("ix_jobs_lease_order", "jobs", ["stage", "priority", "available_at", "created_at"], unique=False)
  op.create_index("ix_jobs_leased_expiry", "jobs", ["lease_expires_at"], unique=False, postgresql_where=sa.text("state = 'leased'"))

  op.create_table(
    "job_dead_letters",
    sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
    sa.Column("job_id", sa.String(), nullable=False),
    sa.Column("stage", sa.String(), nullable=False),
    sa.Column("memo_id", sa.String(), nullable=False),
    sa.Column("processing_attempt", sa.Integer(), nullable=False),
    sa.Column("payload_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("state", sa.String(), nullable=False),
    sa.Column("attempts", sa.Integer(), nullable=False),
    sa.Column("max_attempts", sa.Integer(), nullable=False),
    sa.Column("last_error", sa.Text(), nullable=True),
    sa.Column("errors_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("archived_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index("ix_job_dead_letters_job_id", "job_dead_letters", ["job_id"], unique=False)
  op.create_index("ix_job_dead_letters_memo_stage", "job_dead_letters", ["memo_id", "stage"], unique=False)


def _create_usage() -> None:
  op.create_table(
    "usage_accounts",
    sa.Column("account_id", sa.String(), nullable=False),
    sa.Column("tier", sa.String(), nullable=False),
    sa.Column("monthly_minutes_override", sa.Integer(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    sa.PrimaryKeyConstraint("account_id"),
  )

  op.create_table(
    "usage_counters",
    sa.Column("account_id", sa.String(), nullable=False),
    sa.Column("period_start", sa.Date(), nullable=False),
    sa.Column("minutes_used", sa.Integer(), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    sa.PrimaryKeyConstraint("account_id", "period_start", name="pk_usage_counters"),
  )

  op.create_table(
    "usage_logs",
    sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
    sa.Column("idempotency_key", sa.String(), nullable=False),
    sa.Column("account_id", sa.String(), nullable=False),
    sa.Column("memo_id", sa.String(), nullable=False),
    sa.Column("period_start", sa.Date(), nullable=False),
    sa.Column("minutes", sa.Integer(), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    sa.PrimaryKeyConstraint("id"),
    sa.UniqueConstraint("idempotency_key"),
  )
  op.create_index("ix_usage_logs_account_id", "usage_logs", ["account_id"], unique=False)
  op.create_index("ix_usage_logs_memo_id", "usage_logs", ["memo_id"], unique=False)


def downgrade() -> None:
  """Downgrade schema."""
  for table in ("usage_logs", "usage_counters", "usage_accounts", "job_dead_letters", "jobs", "memo_status_events", "memo_transcripts", "memos"):
    op.drop_table(table)
