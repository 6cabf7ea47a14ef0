"""Memo lifecycle operations exposed to the HTTP layer."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date

from memo_engine.jobs.dispatch import DispatchTrigger
from memo_engine.jobs.models import Stage, job_id_for
from memo_engine.pipeline.state import STAGE_ACTIVE_STATUS, InvalidStateError, MemoStatus
from memo_engine.services.storage_client import BlobStore, audio_object_key
from memo_engine.services.usage import UsageAccounting, UsageSnapshot
from memo_engine.storage.jobs_repo import JobStore
from memo_engine.storage.memos_repo import MemoNotFoundError, MemoRecord, StatusEvent, StatusLedger, TranscriptRecord
from memo_engine.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)


class AudioTooLargeError(ValueError):
  def __init__(self, size: int, limit: int) -> None:
    super().__init__(f"Audio upload of {size} bytes exceeds the {limit} byte limit")
    self.size = size
    self.limit = limit


class EmptyAudioError(ValueError):
  def __init__(self) -> None:
    super().__init__("Audio upload is empty")


@dataclass(frozen=True)
class MemoStatusView:
  memo_id: str
  status: MemoStatus
  processing_attempt: int
  error_message: str | None = None


class MemoService:
  """Coordinates the ledger, job store, blob store and usage accounting for one request."""

  def __init__(self, *, ledger: StatusLedger, job_store: JobStore, blob_store: BlobStore, usage: UsageAccounting, dispatch: DispatchTrigger, max_audio_bytes: int, clock: Clock | None = None) -> None:
    self._ledger = ledger
    self._job_store = job_store
    self._blob_store = blob_store
    self._usage = usage
    self._dispatch = dispatch
    self._max_audio_bytes = max_audio_bytes
    self._clock = clock or utc_now

  async def create_memo(self, account_id: str, *, title: str, meeting_date: date | None = None, participants: Iterable[str] = (), language: str = "en") -> MemoRecord:
    # Admission runs before anything is persisted so a rejected request leaves no trace.
    await self._usage.check_admission(account_id)
    memo = await self._ledger.create_memo(account_id=account_id, title=title, meeting_date=meeting_date, participants=participants, language=language)
    logger.info("Created memo %s for account %s", memo.memo_id, account_id)
    return memo

  async def upload_audio(self, account_id: str, memo_id: str, data: bytes, *, content_type: str = "audio/mpeg") -> MemoRecord:
    """Store the recording, move the memo to TRANSCRIBING and enqueue transcription."""
    memo = await self.get_memo(account_id, memo_id)
    if memo.status is not MemoStatus.UPLOADING:
      raise InvalidStateError(f"Memo {memo_id} is {memo.status.value}; audio can only be uploaded while UPLOADING", memo_id=memo_id, status=memo.status)
    if not data:
      raise EmptyAudioError()
    if len(data) > self._max_audio_bytes:
      raise AudioTooLargeError(len(data), self._max_audio_bytes)

    stored = await self._blob_store.put(data, key=audio_object_key(memo_id, now=self._clock()), content_type=content_type)
    try:
      await self._ledger.set_audio(memo_id, storage_key=stored.key, url=stored.url, processing_attempt=memo.processing_attempt)
      updated = await self._ledger.transition(memo_id, expected=MemoStatus.UPLOADING, target=MemoStatus.TRANSCRIBING, processing_attempt=memo.processing_attempt)
    except (InvalidStateError, MemoNotFoundError):
      # A concurrent upload, restart or delete won; the blob written here belongs to nobody.
      logger.warning("Upload for memo %s lost to a concurrent change; removing %s", memo_id, stored.key)
      await self._blob_store.delete(stored.key)
      raise
    # A crash between the transition and the enqueue is repaired by the reconciliation sweep.
    await self._dispatch.dispatch(Stage.TRANSCRIBE, memo_id, updated.processing_attempt)
    logger.info("Uploaded %d bytes of audio for memo %s", len(data), memo_id)
    return updated

  async def create_job(self, stage: Stage, memo_id: str) -> str:
    """Enqueue ``stage`` for the memo's current attempt.

    The memo must already sit in the stage's active status (InvalidStateError otherwise).
    Raises AlreadyQueuedError when a job for the stage is still active.
    """
    memo = await self._ledger.get_memo(memo_id)
    if memo is None:
      raise MemoNotFoundError(memo_id)
    required = STAGE_ACTIVE_STATUS[stage]
    if memo.status is not required:
      raise InvalidStateError(f"Memo {memo_id} is {memo.status.value}; {stage.value} needs {required.value}", memo_id=memo_id, status=memo.status)
    return await self._job_store.enqueue(stage, memo_id, processing_attempt=memo.processing_attempt)

  async def get_status(self, account_id: str, memo_id: str) -> MemoStatusView:
    memo = await self.get_memo(account_id, memo_id)
    return MemoStatusView(memo_id=memo.memo_id, status=memo.status, processing_attempt=memo.processing_attempt, error_message=memo.error_message)

  async def get_memo(self, account_id: str, memo_id: str) -> MemoRecord:
    memo = await self._ledger.get_memo(memo_id)
    # Memos of other accounts are reported as missing so ids cannot be probed.
    if memo is None or memo.account_id != account_id:
      raise MemoNotFoundError(memo_id)
    return memo

  async def list_memos(self, account_id: str, *, status: MemoStatus | None = None, limit: int = 20, offset: int = 0) -> tuple[list[MemoRecord], int]:
    return await self._ledger.list_memos(account_id, status=status, limit=limit, offset=offset)

  async def update_memo(self, account_id: str, memo_id: str, *, title: str | None = None, meeting_date: date | None = None, participants: Iterable[str] | None = None) -> MemoRecord:
    await self.get_memo(account_id, memo_id)
    return await self._ledger.update_details(memo_id, title=title, meeting_date=meeting_date, participants=participants)

  async def get_transcript(self, account_id: str, memo_id: str) -> TranscriptRecord | None:
    await self.get_memo(account_id, memo_id)
    return await self._ledger.get_transcript(memo_id)

  async def get_history(self, account_id: str, memo_id: str) -> list[StatusEvent]:
    await self.get_memo(account_id, memo_id)
    return await self._ledger.list_history(memo_id)

  async def restart_memo(self, account_id: str, memo_id: str) -> MemoRecord:
    """Open a new processing attempt; the caller uploads audio again to start it."""
    memo = await self.get_memo(account_id, memo_id)
    await self._usage.check_admission(account_id)
    restarted = await self._ledger.restart(memo_id)
    if memo.audio_storage_key:
      await self._blob_store.delete(memo.audio_storage_key)
    logger.info("Restarted memo %s at attempt %d", memo_id, restarted.processing_attempt)
    return restarted

  async def delete_memo(self, account_id: str, memo_id: str) -> None:
    memo = await self.get_memo(account_id, memo_id)
    for stage in Stage:
      canceled = await self._job_store.cancel(job_id_for(stage, memo_id), "Memo deleted")
      if canceled is not None:
        logger.info("Canceled job %s for deleted memo", canceled.job_id)
    await self._ledger.delete_memo(memo_id)
    if memo.audio_storage_key:
      await self._blob_store.delete(memo.audio_storage_key)
    logger.info("Deleted memo %s", memo_id)

  async def usage(self, account_id: str) -> UsageSnapshot:
    return await self._usage.snapshot(account_id)

