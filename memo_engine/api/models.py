from __future__ import annotations

import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictStr, field_validator

from memo_engine.jobs.models import DeadLetterRecord, JobRecord, Stage
from memo_engine.pipeline.state import MemoStatus
from memo_engine.services.memos import MemoStatusView
from memo_engine.services.usage import UsageSnapshot
from memo_engine.storage.memos_repo import MemoRecord, StatusEvent, TranscriptRecord

MAX_PARTICIPANTS = 50


def _validate_meeting_date(value: datetime.date | None) -> datetime.date | None:
  # Memos describe meetings that already happened.
  if value is not None and value > datetime.datetime.now(datetime.UTC).date():
    raise ValueError("Meeting date cannot be in the future.")
  return value


def _normalize_participants(value: list[str] | None) -> list[str] | None:
  if value is None:
    return None
  cleaned = [name.strip() for name in value if name.strip()]
  return list(dict.fromkeys(cleaned))


class CreateMemoRequest(BaseModel):
  """Request payload for creating a memo before its audio is uploaded."""

  title: StrictStr = Field(min_length=1, max_length=200, description="Meeting title.", examples=["Weekly standup"])
  meeting_date: datetime.date | None = Field(default=None, description="Date the meeting took place (not in the future).")
  participants: list[StrictStr] = Field(default_factory=list, max_length=MAX_PARTICIPANTS, description="Names of people in the meeting.")
  language: Literal["en", "de", "es", "fr", "ur"] = Field(default="en", description="Spoken language hint for transcription.")
  model_config = ConfigDict(extra="forbid")

  @field_validator("title")
  @classmethod
  def strip_title(cls, value: str) -> str:
    stripped = value.strip()
    if not stripped:
      raise ValueError("Title cannot be blank.")
    return stripped

  @field_validator("meeting_date")
  @classmethod
  def meeting_date_not_future(cls, value: datetime.date | None) -> datetime.date | None:
    return _validate_meeting_date(value)

  @field_validator("participants")
  @classmethod
  def clean_participants(cls, value: list[str]) -> list[str]:
    return _normalize_participants(value) or []


class UpdateMemoRequest(BaseModel):
  """Partial update of descriptive memo fields."""

  title: StrictStr | None = Field(default=None, min_length=1, max_length=200)
  meeting_date: datetime.date | None = None
  participants: list[StrictStr] | None = Field(default=None, max_length=MAX_PARTICIPANTS)
  model_config = ConfigDict(extra="forbid")

  @field_validator("meeting_date")
  @classmethod
  def meeting_date_not_future(cls, value: datetime.date | None) -> datetime.date | None:
    return _validate_meeting_date(value)

  @field_validator("participants")
  @classmethod
  def clean_participants(cls, value: list[str] | None) -> list[str] | None:
    return _normalize_participants(value)


class CreateJobRequest(BaseModel):
  stage: Stage
  model_config = ConfigDict(extra="forbid")


class MemoResponse(BaseModel):
  id: str
  title: str
  status: MemoStatus
  processing_attempt: int
  meeting_date: datetime.date | None = None
  participants: list[str] = Field(default_factory=list)
  language: str
  duration_seconds: int | None = None
  audio_url: str | None = None
  error_message: str | None = None
  content: dict[str, Any] | None = None
  created_at: datetime.datetime
  updated_at: datetime.datetime

  @classmethod
  def from_record(cls, memo: MemoRecord) -> MemoResponse:
    return cls(
      id=memo.memo_id,
      title=memo.title,
      status=memo.status,
      processing_attempt=memo.processing_attempt,
      meeting_date=memo.meeting_date,
      participants=list(memo.participants),
      language=memo.language,
      duration_seconds=memo.duration_seconds,
      audio_url=memo.audio_url,
      error_message=memo.error_message,
      content=memo.content,
      created_at=memo.created_at,
      updated_at=memo.updated_at,
    )


class MemoListResponse(BaseModel):
  items: list[MemoResponse]
  total: int
  limit: int
  offset: int


class MemoStatusResponse(BaseModel):
  """Lightweight status for client polling."""

  id: str
  status: MemoStatus
  processing_attempt: int
  error_message: str | None = None

  @classmethod
  def from_view(cls, view: MemoStatusView) -> MemoStatusResponse:
    return cls(id=view.memo_id, status=view.status, processing_attempt=view.processing_attempt, error_message=view.error_message)


class StatusEventResponse(BaseModel):
  processing_attempt: int
  from_status: MemoStatus | None = None
  to_status: MemoStatus
  error_message: str | None = None
  created_at: datetime.datetime

  @classmethod
  def from_event(cls, event: StatusEvent) -> StatusEventResponse:
    return cls(processing_attempt=event.processing_attempt, from_status=event.from_status, to_status=event.to_status, error_message=event.error_message, created_at=event.created_at)


class TranscriptResponse(BaseModel):
  memo_id: str
  processing_attempt: int
  text: str
  segments: list[dict[str, Any]]
  language: str
  duration_seconds: float

  @classmethod
  def from_record(cls, record: TranscriptRecord) -> TranscriptResponse:
    return cls(memo_id=record.memo_id, processing_attempt=record.processing_attempt, text=record.text, segments=list(record.segments), language=record.language, duration_seconds=record.duration_seconds)


class UsageResponse(BaseModel):
  account_id: str
  tier: str
  period_start: datetime.date
  minutes_used: int
  monthly_allotment: int | None = None
  remaining: int | None = None

  @classmethod
  def from_snapshot(cls, snapshot: UsageSnapshot) -> UsageResponse:
    return cls(account_id=snapshot.account_id, tier=snapshot.tier, period_start=snapshot.period_start, minutes_used=snapshot.minutes_used, monthly_allotment=snapshot.monthly_allotment, remaining=snapshot.remaining)


class JobCreateResponse(BaseModel):
  job_id: str


class JobResponse(BaseModel):
  """Active job as exposed to operators."""

  job_id: str
  stage: Stage
  memo_id: str
  processing_attempt: int
  state: str
  attempts: int
  max_attempts: int
  available_at: datetime.datetime
  lease_owner: str | None = None
  lease_expires_at: datetime.datetime | None = None
  last_error: str | None = None

  @classmethod
  def from_record(cls, job: JobRecord) -> JobResponse:
    return cls(
      job_id=job.job_id,
      stage=job.stage,
      memo_id=job.memo_id,
      processing_attempt=job.processing_attempt,
      state=job.state,
      attempts=job.attempts,
      max_attempts=job.max_attempts,
      available_at=job.available_at,
      lease_owner=job.lease_owner,
      lease_expires_at=job.lease_expires_at,
      last_error=job.last_error,
    )


class DeadLetterResponse(BaseModel):
  job_id: str
  stage: Stage
  memo_id: str
  processing_attempt: int
  state: str
  attempts: int
  max_attempts: int
  last_error: str | None = None
  errors: list[str]
  archived_at: datetime.datetime

  @classmethod
  def from_record(cls, record: DeadLetterRecord) -> DeadLetterResponse:
    return cls(
      job_id=record.job_id,
      stage=record.stage,
      memo_id=record.memo_id,
      processing_attempt=record.payload.processing_attempt,
      state=record.state,
      attempts=record.attempts,
      max_attempts=record.max_attempts,
      last_error=record.last_error,
      errors=list(record.errors),
      archived_at=record.archived_at,
    )
