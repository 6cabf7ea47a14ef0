"""In-process status ledger for tests and single-process local runs."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import replace
from datetime import date, datetime
from typing import Any

from memo_engine.pipeline.state import InvalidStateError, MemoStatus, can_restart, ensure_transition
from memo_engine.storage.memos_repo import MemoNotFoundError, MemoRecord, StatusEvent, StatusLedger, TranscriptRecord, ensure_audio_unset, ensure_current_attempt, ensure_expected_status
from memo_engine.utils.clock import Clock, utc_now
from memo_engine.utils.ids import generate_memo_id


class InMemoryStatusLedger(StatusLedger):
  def __init__(self, *, clock: Clock | None = None) -> None:
    self._clock = clock or utc_now
    self._memos: dict[str, MemoRecord] = {}
    self._transcripts: dict[str, TranscriptRecord] = {}
    self._history: dict[str, list[StatusEvent]] = {}
    self._lock = asyncio.Lock()

  async def create_memo(self, *, account_id: str, title: str, meeting_date: date | None = None, participants: Iterable[str] = (), language: str = "en") -> MemoRecord:
    now = self._clock()
    record = MemoRecord(memo_id=generate_memo_id(), account_id=account_id, title=title, status=MemoStatus.UPLOADING, processing_attempt=1, created_at=now, updated_at=now, meeting_date=meeting_date, participants=tuple(participants), language=language)
    async with self._lock:
      self._memos[record.memo_id] = record
      self._history[record.memo_id] = [StatusEvent(memo_id=record.memo_id, processing_attempt=1, from_status=None, to_status=MemoStatus.UPLOADING, error_message=None, created_at=now)]
    return record

  async def get_memo(self, memo_id: str) -> MemoRecord | None:
    return self._memos.get(memo_id)

  async def list_memos(self, account_id: str, *, status: MemoStatus | None = None, limit: int = 20, offset: int = 0) -> tuple[list[MemoRecord], int]:
    matches = [memo for memo in self._memos.values() if memo.account_id == account_id and (status is None or memo.status is status)]
    matches.sort(key=lambda memo: memo.created_at, reverse=True)
    return matches[offset : offset + limit], len(matches)

  async def update_details(self, memo_id: str, *, title: str | None = None, meeting_date: date | None = None, participants: Iterable[str] | None = None) -> MemoRecord:
    async with self._lock:
      memo = self._require(memo_id)
      changes: dict[str, Any] = {"updated_at": self._clock()}
      if title is not None:
        changes["title"] = title
      if meeting_date is not None:
        changes["meeting_date"] = meeting_date
      if participants is not None:
        changes["participants"] = tuple(participants)
      updated = replace(memo, **changes)
      self._memos[memo_id] = updated
      return updated

  async def transition(self, memo_id: str, *, expected: MemoStatus, target: MemoStatus, processing_attempt: int | None = None, error_message: str | None = None) -> MemoRecord:
    ensure_transition(memo_id, expected, target)
    async with self._lock:
      memo = self._require(memo_id)
      ensure_current_attempt(memo, processing_attempt)
      ensure_expected_status(memo, expected)
      now = self._clock()
      message = error_message if target is MemoStatus.FAILED else None
      updated = replace(memo, status=target, error_message=message, updated_at=now)
      self._memos[memo_id] = updated
      self._history[memo_id].append(StatusEvent(memo_id=memo_id, processing_attempt=memo.processing_attempt, from_status=expected, to_status=target, error_message=message, created_at=now))
      return updated

  async def set_audio(self, memo_id: str, *, storage_key: str, url: str, processing_attempt: int | None = None) -> MemoRecord:
    async with self._lock:
      memo = self._require(memo_id)
      ensure_current_attempt(memo, processing_attempt)
      ensure_expected_status(memo, MemoStatus.UPLOADING)
      ensure_audio_unset(memo)
      updated = replace(memo, audio_storage_key=storage_key, audio_url=url, updated_at=self._clock())
      self._memos[memo_id] = updated
      return updated

  async def save_transcript(self, memo_id: str, *, processing_attempt: int, text: str, segments: Iterable[dict[str, Any]], language: str, duration_seconds: float) -> TranscriptRecord:
    async with self._lock:
      memo = self._require(memo_id)
      ensure_current_attempt(memo, processing_attempt)
      ensure_expected_status(memo, MemoStatus.TRANSCRIBING)
      now = self._clock()
      transcript = TranscriptRecord(memo_id=memo_id, processing_attempt=processing_attempt, text=text, segments=tuple(dict(segment) for segment in segments), language=language, duration_seconds=duration_seconds, created_at=now)
      self._transcripts[memo_id] = transcript
      self._memos[memo_id] = replace(memo, duration_seconds=int(duration_seconds), language=language, updated_at=now)
      return transcript

  async def get_transcript(self, memo_id: str) -> TranscriptRecord | None:
    return self._transcripts.get(memo_id)

  async def save_content(self, memo_id: str, *, processing_attempt: int, content: dict[str, Any]) -> MemoRecord:
    async with self._lock:
      memo = self._require(memo_id)
      ensure_current_attempt(memo, processing_attempt)
      ensure_expected_status(memo, MemoStatus.GENERATING)
      updated = replace(memo, content=dict(content), updated_at=self._clock())
      self._memos[memo_id] = updated
      return updated

  async def restart(self, memo_id: str) -> MemoRecord:
    async with self._lock:
      memo = self._require(memo_id)
      if not can_restart(memo.status):
        raise InvalidStateError(f"Memo {memo_id} is {memo.status.value}; only completed or failed memos can be restarted", memo_id=memo_id, status=memo.status)
      now = self._clock()
      attempt = memo.processing_attempt + 1
      updated = replace(memo, status=MemoStatus.UPLOADING, processing_attempt=attempt, error_message=None, duration_seconds=None, audio_storage_key=None, audio_url=None, content=None, updated_at=now)
      self._memos[memo_id] = updated
      self._transcripts.pop(memo_id, None)
      self._history[memo_id].append(StatusEvent(memo_id=memo_id, processing_attempt=attempt, from_status=memo.status, to_status=MemoStatus.UPLOADING, error_message=None, created_at=now))
      return updated

  async def delete_memo(self, memo_id: str) -> MemoRecord | None:
    async with self._lock:
      self._transcripts.pop(memo_id, None)
      self._history.pop(memo_id, None)
      return self._memos.pop(memo_id, None)

  async def list_history(self, memo_id: str) -> list[StatusEvent]:
    return list(self._history.get(memo_id, ()))

  async def find_stalled(self, *, statuses: Iterable[MemoStatus], updated_before: datetime, limit: int = 100) -> list[MemoRecord]:
    wanted = set(statuses)
    stalled = [memo for memo in self._memos.values() if memo.status in wanted and memo.updated_at < updated_before]
    stalled.sort(key=lambda memo: memo.updated_at)
    return stalled[:limit]

  def _require(self, memo_id: str) -> MemoRecord:
    memo = self._memos.get(memo_id)
    if memo is None:
      raise MemoNotFoundError(memo_id)
    return memo
