"""Checks shared by stage handlers before they touch a memo."""

from __future__ import annotations

from memo_engine.jobs.dispatch import StaleJobError
from memo_engine.jobs.models import JobRecord
from memo_engine.pipeline.state import MemoStatus
from memo_engine.storage.memos_repo import MemoNotFoundError, MemoRecord, StatusLedger


async def load_memo_for_job(ledger: StatusLedger, job: JobRecord) -> MemoRecord:
  """Return the memo a job works on, or raise when the job no longer applies to it."""
  memo = await ledger.get_memo(job.memo_id)
  if memo is None:
    raise MemoNotFoundError(job.memo_id)
  if memo.processing_attempt != job.processing_attempt:
    raise StaleJobError(f"Job {job.job_id} belongs to attempt {job.processing_attempt}; memo is on attempt {memo.processing_attempt}")
  if memo.status is MemoStatus.FAILED:
    raise StaleJobError(f"Memo {memo.memo_id} already failed")
  return memo
