from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import CheckConstraint, Date, DateTime, Float, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from memo_engine.core.database import Base


class Memo(Base):
  __tablename__ = "memos"
  __table_args__ = (
    CheckConstraint("status IN ('UPLOADING', 'TRANSCRIBING', 'GENERATING', 'COMPLETED', 'FAILED')", name="ck_memos_status"),
    Index("ix_memos_account_created", "account_id", "created_at"),
    Index("ix_memos_status_updated", "status", "updated_at"),
  )

  memo_id: Mapped[str] = mapped_column(String, primary_key=True)
  account_id: Mapped[str] = mapped_column(String, nullable=False)
  title: Mapped[str] = mapped_column(String, nullable=False)
  meeting_date: Mapped[date | None] = mapped_column(Date, nullable=True)
  participants: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
  language: Mapped[str] = mapped_column(String, nullable=False, default="en")
  status: Mapped[str] = mapped_column(String, nullable=False)
  processing_attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
  error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
  duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
  audio_storage_key: Mapped[str | None] = mapped_column(String, nullable=True)
  audio_url: Mapped[str | None] = mapped_column(String, nullable=True)
  content_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class MemoTranscript(Base):
  """One transcript per memo; a re-run of transcription replaces the row."""

  __tablename__ = "memo_transcripts"

  memo_id: Mapped[str] = mapped_column(ForeignKey("memos.memo_id", ondelete="CASCADE"), primary_key=True)
  processing_attempt: Mapped[int] = mapped_column(Integer, nullable=False)
  text: Mapped[str] = mapped_column(Text, nullable=False)
  segments_json: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
  language: Mapped[str] = mapped_column(String, nullable=False)
  duration_seconds: Mapped[float] = mapped_column(Float, nullable=False)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class MemoStatusEvent(Base):
  __tablename__ = "memo_status_events"

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  memo_id: Mapped[str] = mapped_column(ForeignKey("memos.memo_id", ondelete="CASCADE"), nullable=False, index=True)
  processing_attempt: Mapped[int] = mapped_column(Integer, nullable=False)
  from_status: Mapped[str | None] = mapped_column(String, nullable=True)
  to_status: Mapped[str] = mapped_column(String, nullable=False)
  error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
