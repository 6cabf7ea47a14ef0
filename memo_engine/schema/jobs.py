from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from memo_engine.core.database import Base


class Job(Base):
  """Active (queued or leased) pipeline job; the primary key enforces one per memo and stage."""

  __tablename__ = "jobs"
  __table_args__ = (
    Index("ix_jobs_lease_order", "stage", "priority", "available_at", "created_at"),
    Index("ix_jobs_leased_expiry", "lease_expires_at", postgresql_where=text("state = 'leased'")),
  )

  job_id: Mapped[str] = mapped_column(String, primary_key=True)
  stage: Mapped[str] = mapped_column(String, nullable=False)
  memo_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  processing_attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
  payload_json: Mapped[dict] = mapped_column(JSONB, nullable=False)
  priority: Mapped[int] = mapped_column(Integer, nullable=False)
  state: Mapped[str] = mapped_column(String, nullable=False)
  attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
  last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
  errors_json: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
  lease_owner: Mapped[str | None] = mapped_column(String, nullable=True)
  lease_token: Mapped[str | None] = mapped_column(String, nullable=True)
  lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class JobDeadLetter(Base):
  """Archive of jobs that exhausted their attempts or were canceled."""

  __tablename__ = "job_dead_letters"
  __table_args__ = (Index("ix_job_dead_letters_memo_stage", "memo_id", "stage"),)

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  job_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  stage: Mapped[str] = mapped_column(String, nullable=False)
  memo_id: Mapped[str] = mapped_column(String, nullable=False)
  processing_attempt: Mapped[int] = mapped_column(Integer, nullable=False)
  payload_json: Mapped[dict] = mapped_column(JSONB, nullable=False)
  state: Mapped[str] = mapped_column(String, nullable=False)
  attempts: Mapped[int] = mapped_column(Integer, nullable=False)
  max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
  last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
  errors_json: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
  archived_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
