"""Reconciliation sweep: recover expired leases and memos whose next stage was never enqueued."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta

from memo_engine.jobs.dispatch import DispatchTrigger
from memo_engine.jobs.models import job_id_for
from memo_engine.pipeline.state import ACTIVE_STATUS_STAGE, InvalidStateError, MemoStatus, failure_message
from memo_engine.storage.jobs_repo import JobStore
from memo_engine.storage.memos_repo import MemoNotFoundError, MemoRecord, StatusLedger
from memo_engine.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepReport:
  reaped: int = 0
  requeued: int = 0
  failed: int = 0


class Sweeper:
  """Closes the gap between a status commit and the enqueue that should follow it.

  A process can die after moving a memo to TRANSCRIBING or GENERATING but before the job for that
  stage exists. Such a memo has no active job and no dead letter for its attempt; the sweep
  re-dispatches it. A memo whose job was dead-lettered without the FAILED write landing is failed here.
  """

  def __init__(self, *, job_store: JobStore, ledger: StatusLedger, dispatch: DispatchTrigger, stall_grace_seconds: float = 120.0, clock: Clock | None = None, batch_size: int = 100) -> None:
    self._job_store = job_store
    self._ledger = ledger
    self._dispatch = dispatch
    self._stall_grace = timedelta(seconds=stall_grace_seconds)
    self._clock = clock or utc_now
    self._batch_size = batch_size

  async def sweep(self) -> SweepReport:
    reaped = await self._job_store.reap_expired_leases()
    if reaped:
      logger.warning("Requeued %d jobs whose leases expired", reaped)

    stalled = await self._ledger.find_stalled(statuses=ACTIVE_STATUS_STAGE.keys(), updated_before=self._clock() - self._stall_grace, limit=self._batch_size)
    requeued = 0
    failed = 0
    for memo in stalled:
      outcome = await self._reconcile(memo)
      if outcome == "requeued":
        requeued += 1
      elif outcome == "failed":
        failed += 1
    return SweepReport(reaped=reaped, requeued=requeued, failed=failed)

  async def _reconcile(self, memo: MemoRecord) -> str | None:
    stage = ACTIVE_STATUS_STAGE[memo.status]
    if await self._job_store.get_job(job_id_for(stage, memo.memo_id)) is not None:
      return None

    dead_letters = await self._job_store.list_dead_letters(stage=stage, memo_id=memo.memo_id, limit=self._batch_size)
    exhausted = next((record for record in dead_letters if record.state == "dead" and record.payload.processing_attempt == memo.processing_attempt), None)
    if exhausted is not None:
      message = failure_message(stage, exhausted.last_error or "retries exhausted")
      try:
        await self._ledger.transition(memo.memo_id, expected=memo.status, target=MemoStatus.FAILED, processing_attempt=memo.processing_attempt, error_message=message)
      except (InvalidStateError, MemoNotFoundError) as exc:
        logger.info("Memo %s moved on before the sweep could fail it: %s", memo.memo_id, exc)
        return None
      logger.warning("Marked memo %s failed from dead letter %s", memo.memo_id, exhausted.job_id)
      return "failed"

    await self._dispatch.dispatch(stage, memo.memo_id, memo.processing_attempt)
    logger.warning("Re-dispatched stalled memo %s at %s (attempt %d)", memo.memo_id, memo.status.value, memo.processing_attempt)
    return "requeued"

  async def run(self, stop_event: asyncio.Event, *, interval_seconds: float = 60.0) -> None:
    while not stop_event.is_set():
      try:
        report = await self.sweep()
        if report.requeued or report.failed:
          logger.info("Sweep reaped=%d requeued=%d failed=%d", report.reaped, report.requeued, report.failed)
      except Exception:  # noqa: BLE001
        logger.error("Reconciliation sweep failed", exc_info=True)
      try:
        await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
      except TimeoutError:
        continue
