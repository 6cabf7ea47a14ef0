"""Transcription stage: audio blob to persisted transcript, duration and usage."""

from __future__ import annotations

import logging

from memo_engine.ai.providers.base import TranscriptionProvider
from memo_engine.jobs.dispatch import StageResult
from memo_engine.jobs.models import JobRecord, Stage
from memo_engine.pipeline.guards import load_memo_for_job
from memo_engine.pipeline.state import InvalidStateError, MemoStatus
from memo_engine.services.storage_client import BlobStore
from memo_engine.services.usage import UsageAccounting
from memo_engine.storage.memos_repo import StatusLedger

logger = logging.getLogger(__name__)


class TranscriptionStage:
  """Runs one transcription job.

  Order matters for crash safety: the transcript is replaced and usage is recorded under an
  idempotency key before the status moves to GENERATING, so a re-run after a crash repeats the
  provider call but never double counts minutes or appends a second transcript.
  """

  stage = Stage.TRANSCRIBE

  def __init__(self, *, ledger: StatusLedger, blob_store: BlobStore, provider: TranscriptionProvider, usage: UsageAccounting) -> None:
    self._ledger = ledger
    self._blob_store = blob_store
    self._provider = provider
    self._usage = usage

  async def process(self, job: JobRecord) -> StageResult:
    memo = await load_memo_for_job(self._ledger, job)
    if memo.status in {MemoStatus.GENERATING, MemoStatus.COMPLETED}:
      logger.info("Memo %s already past transcription (%s); skipping job %s", memo.memo_id, memo.status.value, job.job_id)
      next_stage = Stage.GENERATE if memo.status is MemoStatus.GENERATING else None
      return StageResult(memo_id=memo.memo_id, processing_attempt=memo.processing_attempt, next_stage=next_stage, skipped=True)
    if memo.status is not MemoStatus.TRANSCRIBING:
      raise InvalidStateError(f"Memo {memo.memo_id} is {memo.status.value}; transcription needs TRANSCRIBING", memo_id=memo.memo_id, status=memo.status)
    if not memo.audio_storage_key:
      raise InvalidStateError(f"Memo {memo.memo_id} has no uploaded audio", memo_id=memo.memo_id, status=memo.status)

    audio = await self._blob_store.get(memo.audio_storage_key)
    result = await self._provider.transcribe(audio, language=memo.language)

    await self._ledger.save_transcript(memo.memo_id, processing_attempt=memo.processing_attempt, text=result.text, segments=[segment.to_dict() for segment in result.segments], language=result.language, duration_seconds=result.duration_seconds)
    await self._usage.record_transcription(account_id=memo.account_id, memo_id=memo.memo_id, processing_attempt=memo.processing_attempt, duration_minutes=result.duration_minutes)
    await self._ledger.transition(memo.memo_id, expected=MemoStatus.TRANSCRIBING, target=MemoStatus.GENERATING, processing_attempt=memo.processing_attempt)
    logger.info("Transcribed memo %s: %d minutes, %d segments", memo.memo_id, result.duration_minutes, len(result.segments))
    return StageResult(memo_id=memo.memo_id, processing_attempt=memo.processing_attempt, next_stage=Stage.GENERATE)
