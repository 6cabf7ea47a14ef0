"""Generation stage: transcript to validated, persisted memo content."""

from __future__ import annotations

import logging

from memo_engine.ai.providers.base import GenerationMetadata, GenerationProvider
from memo_engine.jobs.dispatch import StageResult
from memo_engine.jobs.models import JobRecord, Stage
from memo_engine.pipeline.contracts import parse_memo_content, validate_transcript
from memo_engine.pipeline.guards import load_memo_for_job
from memo_engine.pipeline.state import InvalidStateError, MemoStatus
from memo_engine.storage.memos_repo import StatusLedger

logger = logging.getLogger(__name__)


class GenerationStage:
  stage = Stage.GENERATE

  def __init__(self, *, ledger: StatusLedger, provider: GenerationProvider) -> None:
    self._ledger = ledger
    self._provider = provider

  async def process(self, job: JobRecord) -> StageResult:
    memo = await load_memo_for_job(self._ledger, job)
    if memo.status is MemoStatus.COMPLETED:
      logger.info("Memo %s already completed; skipping job %s", memo.memo_id, job.job_id)
      return StageResult(memo_id=memo.memo_id, processing_attempt=memo.processing_attempt, skipped=True)
    if memo.status is not MemoStatus.GENERATING:
      raise InvalidStateError(f"Memo {memo.memo_id} is {memo.status.value}; generation needs GENERATING", memo_id=memo.memo_id, status=memo.status)

    transcript = await self._ledger.get_transcript(memo.memo_id)
    if transcript is None or transcript.processing_attempt != memo.processing_attempt:
      raise InvalidStateError(f"Memo {memo.memo_id} has no transcript for attempt {memo.processing_attempt}", memo_id=memo.memo_id, status=memo.status)
    text = validate_transcript(transcript.text)

    metadata = GenerationMetadata(title=memo.title, meeting_date=memo.meeting_date, participants=memo.participants)
    raw = await self._provider.generate(text, metadata)
    content = parse_memo_content(raw)

    await self._ledger.save_content(memo.memo_id, processing_attempt=memo.processing_attempt, content=content.to_storage())
    await self._ledger.transition(memo.memo_id, expected=MemoStatus.GENERATING, target=MemoStatus.COMPLETED, processing_attempt=memo.processing_attempt)
    logger.info("Generated memo %s: %d key points, %d action items", memo.memo_id, len(content.key_points), len(content.action_items))
    return StageResult(memo_id=memo.memo_id, processing_attempt=memo.processing_attempt)
