"""Postgres-backed status ledger using SQLAlchemy."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from memo_engine.core.database import require_session_factory
from memo_engine.pipeline.state import InvalidStateError, MemoStatus, can_restart, ensure_transition
from memo_engine.schema.memos import Memo, MemoStatusEvent, MemoTranscript
from memo_engine.storage.memos_repo import MemoNotFoundError, MemoRecord, StatusEvent, StatusLedger, TranscriptRecord, ensure_audio_unset, ensure_current_attempt, ensure_expected_status
from memo_engine.utils.clock import Clock, utc_now
from memo_engine.utils.ids import generate_memo_id


class PostgresStatusLedger(StatusLedger):
  """Persist memos, transcripts and status history; status writes are conditional updates."""

  def __init__(self, *, clock: Clock | None = None, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._clock = clock or utc_now
    self._session_factory = session_factory or require_session_factory()

  async def create_memo(self, *, account_id: str, title: str, meeting_date: date | None = None, participants: Iterable[str] = (), language: str = "en") -> MemoRecord:
    now = self._clock()
    async with self._session_factory() as session:
      row = Memo(memo_id=generate_memo_id(), account_id=account_id, title=title, meeting_date=meeting_date, participants=list(participants), language=language, status=MemoStatus.UPLOADING.value, processing_attempt=1, created_at=now, updated_at=now)
      session.add(row)
      session.add(MemoStatusEvent(memo_id=row.memo_id, processing_attempt=1, from_status=None, to_status=MemoStatus.UPLOADING.value, created_at=now))
      await session.commit()
      return _memo_to_record(row)

  async def get_memo(self, memo_id: str) -> MemoRecord | None:
    async with self._session_factory() as session:
      row = await session.get(Memo, memo_id)
      return _memo_to_record(row) if row is not None else None

  async def list_memos(self, account_id: str, *, status: MemoStatus | None = None, limit: int = 20, offset: int = 0) -> tuple[list[MemoRecord], int]:
    async with self._session_factory() as session:
      filters: list[Any] = [Memo.account_id == account_id]
      if status is not None:
        filters.append(Memo.status == status.value)
      total = (await session.execute(select(func.count()).select_from(Memo).where(*filters))).scalar_one()
      stmt = select(Memo).where(*filters).order_by(Memo.created_at.desc()).limit(limit).offset(offset)
      rows = (await session.execute(stmt)).scalars().all()
      return [_memo_to_record(row) for row in rows], int(total)

  async def update_details(self, memo_id: str, *, title: str | None = None, meeting_date: date | None = None, participants: Iterable[str] | None = None) -> MemoRecord:
    async with self._session_factory() as session:
      row = await self._locked_memo(session, memo_id)
      if title is not None:
        row.title = title
      if meeting_date is not None:
        row.meeting_date = meeting_date
      if participants is not None:
        row.participants = list(participants)
      row.updated_at = self._clock()
      await session.commit()
      return _memo_to_record(row)

  async def transition(self, memo_id: str, *, expected: MemoStatus, target: MemoStatus, processing_attempt: int | None = None, error_message: str | None = None) -> MemoRecord:
    ensure_transition(memo_id, expected, target)
    now = self._clock()
    message = error_message if target is MemoStatus.FAILED else None
    async with self._session_factory() as session:
      filters: list[Any] = [Memo.memo_id == memo_id, Memo.status == expected.value]
      if processing_attempt is not None:
        filters.append(Memo.processing_attempt == processing_attempt)
      stmt = update(Memo).where(*filters).values(status=target.value, error_message=message, updated_at=now).returning(Memo)
      row = (await session.execute(stmt)).scalar_one_or_none()
      if row is None:
        await session.rollback()
        # Re-read to report why the compare-and-set missed.
        current = await self.get_memo(memo_id)
        if current is None:
          raise MemoNotFoundError(memo_id)
        ensure_current_attempt(current, processing_attempt)
        ensure_expected_status(current, expected)
        raise InvalidStateError(f"Memo {memo_id} changed concurrently", memo_id=memo_id, status=current.status)
      session.add(MemoStatusEvent(memo_id=memo_id, processing_attempt=row.processing_attempt, from_status=expected.value, to_status=target.value, error_message=message, created_at=now))
      await session.commit()
      return _memo_to_record(row)

  async def set_audio(self, memo_id: str, *, storage_key: str, url: str, processing_attempt: int | None = None) -> MemoRecord:
    async with self._session_factory() as session:
      row = await self._locked_memo(session, memo_id)
      memo = _memo_to_record(row)
      ensure_current_attempt(memo, processing_attempt)
      ensure_expected_status(memo, MemoStatus.UPLOADING)
      ensure_audio_unset(memo)
      row.audio_storage_key = storage_key
      row.audio_url = url
      row.updated_at = self._clock()
      await session.commit()
      return _memo_to_record(row)

  async def save_transcript(self, memo_id: str, *, processing_attempt: int, text: str, segments: Iterable[dict[str, Any]], language: str, duration_seconds: float) -> TranscriptRecord:
    now = self._clock()
    async with self._session_factory() as session:
      row = await self._locked_memo(session, memo_id)
      memo = _memo_to_record(row)
      ensure_current_attempt(memo, processing_attempt)
      ensure_expected_status(memo, MemoStatus.TRANSCRIBING)
      transcript = await session.get(MemoTranscript, memo_id)
      if transcript is None:
        transcript = MemoTranscript(memo_id=memo_id)
        session.add(transcript)
      transcript.processing_attempt = processing_attempt
      transcript.text = text
      transcript.segments_json = [dict(segment) for segment in segments]
      transcript.language = language
      transcript.duration_seconds = duration_seconds
      transcript.created_at = now
      row.duration_seconds = int(duration_seconds)
      row.language = language
      row.updated_at = now
      await session.commit()
      return _transcript_to_record(transcript)

  async def get_transcript(self, memo_id: str) -> TranscriptRecord | None:
    async with self._session_factory() as session:
      row = await session.get(MemoTranscript, memo_id)
      return _transcript_to_record(row) if row is not None else None

  async def save_content(self, memo_id: str, *, processing_attempt: int, content: dict[str, Any]) -> MemoRecord:
    async with self._session_factory() as session:
      row = await self._locked_memo(session, memo_id)
      memo = _memo_to_record(row)
      ensure_current_attempt(memo, processing_attempt)
      ensure_expected_status(memo, MemoStatus.GENERATING)
      row.content_json = dict(content)
      row.updated_at = self._clock()
      await session.commit()
      return _memo_to_record(row)

  async def restart(self, memo_id: str) -> MemoRecord:
    now = self._clock()
    async with self._session_factory() as session:
      row = await self._locked_memo(session, memo_id)
      previous = MemoStatus(row.status)
      if not can_restart(previous):
        raise InvalidStateError(f"Memo {memo_id} is {previous.value}; only completed or failed memos can be restarted", memo_id=memo_id, status=previous)
      row.status = MemoStatus.UPLOADING.value
      row.processing_attempt = row.processing_attempt + 1
      row.error_message = None
      row.duration_seconds = None
      row.audio_storage_key = None
      row.audio_url = None
      row.content_json = None
      row.updated_at = now
      await session.execute(delete(MemoTranscript).where(MemoTranscript.memo_id == memo_id))
      session.add(MemoStatusEvent(memo_id=memo_id, processing_attempt=row.processing_attempt, from_status=previous.value, to_status=MemoStatus.UPLOADING.value, created_at=now))
      await session.commit()
      return _memo_to_record(row)

  async def delete_memo(self, memo_id: str) -> MemoRecord | None:
    async with self._session_factory() as session:
      row = await session.get(Memo, memo_id)
      if row is None:
        return None
      record = _memo_to_record(row)
      await session.delete(row)
      await session.commit()
      return record

  async def list_history(self, memo_id: str) -> list[StatusEvent]:
    async with self._session_factory() as session:
      stmt = select(MemoStatusEvent).where(MemoStatusEvent.memo_id == memo_id).order_by(MemoStatusEvent.id.asc())
      rows = (await session.execute(stmt)).scalars().all()
      return [
        StatusEvent(memo_id=row.memo_id, processing_attempt=row.processing_attempt, from_status=MemoStatus(row.from_status) if row.from_status else None, to_status=MemoStatus(row.to_status), error_message=row.error_message, created_at=row.created_at)
        for row in rows
      ]

  async def find_stalled(self, *, statuses: Iterable[MemoStatus], updated_before: datetime, limit: int = 100) -> list[MemoRecord]:
    async with self._session_factory() as session:
      stmt = select(Memo).where(Memo.status.in_([status.value for status in statuses]), Memo.updated_at < updated_before).order_by(Memo.updated_at.asc()).limit(limit)
      rows = (await session.execute(stmt)).scalars().all()
      return [_memo_to_record(row) for row in rows]

  async def _locked_memo(self, session: AsyncSession, memo_id: str) -> Memo:
    stmt = select(Memo).where(Memo.memo_id == memo_id).with_for_update()
    row = (await session.execute(stmt)).scalar_one_or_none()
    if row is None:
      raise MemoNotFoundError(memo_id)
    return row


def _memo_to_record(row: Memo) -> MemoRecord:
  return MemoRecord(
    memo_id=row.memo_id,
    account_id=row.account_id,
    title=row.title,
    status=MemoStatus(row.status),
    processing_attempt=row.processing_attempt,
    created_at=row.created_at,
    updated_at=row.updated_at,
    meeting_date=row.meeting_date,
    participants=tuple(row.participants or ()),
    language=row.language,
    error_message=row.error_message,
    duration_seconds=row.duration_seconds,
    audio_storage_key=row.audio_storage_key,
    audio_url=row.audio_url,
    content=row.content_json,
  )


def _transcript_to_record(row: MemoTranscript) -> TranscriptRecord:
  return TranscriptRecord(memo_id=row.memo_id, processing_attempt=row.processing_attempt, text=row.text, segments=tuple(row.segments_json or ()), language=row.language, duration_seconds=row.duration_seconds, created_at=row.created_at)
