"""Job records and payloads for the staged memo pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, ClassVar, Literal


class Stage(str, Enum):
  """Pipeline stage a job belongs to."""

  TRANSCRIBE = "transcribe"
  GENERATE = "generate"


class Priority(IntEnum):
  """Fixed two-class priority; lower values are leased first."""

  HIGH = 1
  NORMAL = 2


STAGE_PRIORITY: dict[Stage, Priority] = {Stage.TRANSCRIBE: Priority.HIGH, Stage.GENERATE: Priority.NORMAL}

JobState = Literal["queued", "leased"]
ArchiveState = Literal["dead", "canceled"]


@dataclass(frozen=True)
class TranscribePayload:
  """Transcribe the uploaded audio of one memo processing attempt."""

  stage: ClassVar[Stage] = Stage.TRANSCRIBE
  memo_id: str
  processing_attempt: int


@dataclass(frozen=True)
class GeneratePayload:
  """Generate structured memo content from the persisted transcript."""

  stage: ClassVar[Stage] = Stage.GENERATE
  memo_id: str
  processing_attempt: int


JobPayload = TranscribePayload | GeneratePayload

_PAYLOAD_TYPES: dict[Stage, type[TranscribePayload] | type[GeneratePayload]] = {Stage.TRANSCRIBE: TranscribePayload, Stage.GENERATE: GeneratePayload}


def job_id_for(stage: Stage, memo_id: str) -> str:
  """Derive the deterministic job id; one active job per memo and stage."""
  return f"{stage.value}:{memo_id}"


def build_payload(stage: Stage, memo_id: str, processing_attempt: int) -> JobPayload:
  return _PAYLOAD_TYPES[stage](memo_id=memo_id, processing_attempt=processing_attempt)


def payload_to_json(payload: JobPayload) -> dict[str, Any]:
  return {"stage": payload.stage.value, "memo_id": payload.memo_id, "processing_attempt": payload.processing_attempt}


def payload_from_json(data: dict[str, Any]) -> JobPayload:
  """Rebuild a typed payload from its stored JSON form."""
  stage = Stage(str(data["stage"]))
  return build_payload(stage, str(data["memo_id"]), int(data.get("processing_attempt") or 1))


@dataclass(frozen=True)
class JobRecord:
  """Active job as seen by workers and inspection APIs."""

  job_id: str
  stage: Stage
  payload: JobPayload
  priority: int
  state: JobState
  attempts: int
  max_attempts: int
  created_at: datetime
  available_at: datetime
  lease_owner: str | None = None
  lease_token: str | None = None
  lease_expires_at: datetime | None = None
  last_error: str | None = None
  errors: tuple[str, ...] = ()

  @property
  def memo_id(self) -> str:
    return self.payload.memo_id

  @property
  def processing_attempt(self) -> int:
    return self.payload.processing_attempt

  def lease_expired(self, now: datetime) -> bool:
    return self.state == "leased" and self.lease_expires_at is not None and self.lease_expires_at <= now

  def is_eligible(self, now: datetime) -> bool:
    """True when the job may be leased at ``now``."""
    if self.available_at > now:
      return False
    return self.state == "queued" or self.lease_expired(now)


@dataclass(frozen=True)
class DeadLetterRecord:
  """Archived job that exhausted its attempts or was canceled, with full failure detail."""

  job_id: str
  stage: Stage
  payload: JobPayload
  state: ArchiveState
  attempts: int
  max_attempts: int
  last_error: str | None
  errors: tuple[str, ...]
  created_at: datetime
  archived_at: datetime

  @property
  def memo_id(self) -> str:
    return self.payload.memo_id


class FailOutcome(str, Enum):
  """What the job store did with a reported failure."""

  RETRY_SCHEDULED = "retry_scheduled"
  DEAD_LETTERED = "dead_lettered"
  STALE = "stale"


@dataclass(frozen=True)
class FailResult:
  outcome: FailOutcome
  job_id: str
  attempts: int
  next_available_at: datetime | None = None
  dead_letter: DeadLetterRecord | None = None

  @property
  def exhausted(self) -> bool:
    """True when the memo should be marked FAILED."""
    return self.outcome is FailOutcome.DEAD_LETTERED
