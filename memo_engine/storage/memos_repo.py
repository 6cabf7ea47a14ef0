"""Status ledger contract: memo records, transcripts and status history."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Protocol

from memo_engine.pipeline.state import InvalidStateError, MemoStatus


class MemoNotFoundError(LookupError):
  def __init__(self, memo_id: str) -> None:
    super().__init__(f"Memo {memo_id} not found")
    self.memo_id = memo_id


@dataclass(frozen=True)
class MemoRecord:
  memo_id: str
  account_id: str
  title: str
  status: MemoStatus
  processing_attempt: int
  created_at: datetime
  updated_at: datetime
  meeting_date: date | None = None
  participants: tuple[str, ...] = ()
  language: str = "en"
  error_message: str | None = None
  duration_seconds: int | None = None
  audio_storage_key: str | None = None
  audio_url: str | None = None
  content: dict[str, Any] | None = field(default=None, hash=False)


@dataclass(frozen=True)
class TranscriptRecord:
  memo_id: str
  processing_attempt: int
  text: str
  segments: tuple[dict[str, Any], ...]
  language: str
  duration_seconds: float
  created_at: datetime


@dataclass(frozen=True)
class StatusEvent:
  memo_id: str
  processing_attempt: int
  from_status: MemoStatus | None
  to_status: MemoStatus
  error_message: str | None
  created_at: datetime


class StatusLedger(Protocol):
  """Persisted memo status; the single source of truth clients poll.

  ``transition`` is a compare-and-set on ``expected`` (and on ``processing_attempt`` when given),
  so two writers can never both advance the same memo. Artifact writes reject stale attempts.
  """

  async def create_memo(self, *, account_id: str, title: str, meeting_date: date | None = None, participants: Iterable[str] = (), language: str = "en") -> MemoRecord:
    """Create a memo in UPLOADING and record the initial status event."""

  async def get_memo(self, memo_id: str) -> MemoRecord | None:
    """Return the memo or None."""

  async def list_memos(self, account_id: str, *, status: MemoStatus | None = None, limit: int = 20, offset: int = 0) -> tuple[list[MemoRecord], int]:
    """Return one page of an account's memos (newest first) and the total count."""

  async def update_details(self, memo_id: str, *, title: str | None = None, meeting_date: date | None = None, participants: Iterable[str] | None = None) -> MemoRecord:
    """Update descriptive fields; status is never touched here."""

  async def transition(self, memo_id: str, *, expected: MemoStatus, target: MemoStatus, processing_attempt: int | None = None, error_message: str | None = None) -> MemoRecord:
    """Move the memo along a legal edge if it is still in ``expected``."""

  async def set_audio(self, memo_id: str, *, storage_key: str, url: str, processing_attempt: int | None = None) -> MemoRecord:
    """Attach the uploaded audio blob; only valid in UPLOADING before any audio is attached."""

  async def save_transcript(self, memo_id: str, *, processing_attempt: int, text: str, segments: Iterable[dict[str, Any]], language: str, duration_seconds: float) -> TranscriptRecord:
    """Replace the memo transcript and set the memo duration and language."""

  async def get_transcript(self, memo_id: str) -> TranscriptRecord | None:
    """Return the current transcript, if one was persisted."""

  async def save_content(self, memo_id: str, *, processing_attempt: int, content: dict[str, Any]) -> MemoRecord:
    """Persist generated memo content for the attempt."""

  async def restart(self, memo_id: str) -> MemoRecord:
    """Open a new processing attempt from a terminal status, clearing prior artifacts."""

  async def delete_memo(self, memo_id: str) -> MemoRecord | None:
    """Delete the memo with its transcript and history; returns the deleted record."""

  async def list_history(self, memo_id: str) -> list[StatusEvent]:
    """Return status events oldest first."""

  async def find_stalled(self, *, statuses: Iterable[MemoStatus], updated_before: datetime, limit: int = 100) -> list[MemoRecord]:
    """Return memos sitting in one of ``statuses`` since before ``updated_before``."""


def ensure_current_attempt(memo: MemoRecord, processing_attempt: int | None) -> None:
  """Reject writes from a job that belongs to an earlier processing attempt."""
  if processing_attempt is not None and memo.processing_attempt != processing_attempt:
    raise InvalidStateError(f"Memo {memo.memo_id} is on processing attempt {memo.processing_attempt}, not {processing_attempt}", memo_id=memo.memo_id, status=memo.status)


def ensure_expected_status(memo: MemoRecord, expected: MemoStatus) -> None:
  if memo.status is not expected:
    raise InvalidStateError(f"Memo {memo.memo_id} is {memo.status.value}, expected {expected.value}", memo_id=memo.memo_id, status=memo.status)


def ensure_audio_unset(memo: MemoRecord) -> None:
  # The first upload of an attempt wins; later ones must not replace its blob.
  if memo.audio_storage_key is not None:
    raise InvalidStateError(f"Memo {memo.memo_id} already has audio for attempt {memo.processing_attempt}", memo_id=memo.memo_id, status=memo.status)
