from __future__ import annotations

import asyncio

import pytest

from memo_engine.jobs.dispatch import DispatchTrigger
from memo_engine.jobs.models import Stage
from memo_engine.jobs.sweeper import SweepReport, Sweeper
from memo_engine.pipeline.state import MemoStatus
from memo_engine.storage.memory_jobs_repo import InMemoryJobStore
from memo_engine.storage.memory_memos_repo import InMemoryStatusLedger
from tests.fakes import FakeClock


async def _transcribing_memo(ledger: InMemoryStatusLedger) -> str:
  memo = await ledger.create_memo(account_id="acct-1", title="Retro")
  await ledger.set_audio(memo.memo_id, storage_key="memos/a.mp3", url="memory://a")
  await ledger.transition(memo.memo_id, expected=MemoStatus.UPLOADING, target=MemoStatus.TRANSCRIBING)
  return memo.memo_id


def _sweeper(job_store: InMemoryJobStore, ledger: InMemoryStatusLedger, clock: FakeClock) -> Sweeper:
  return Sweeper(job_store=job_store, ledger=ledger, dispatch=DispatchTrigger(job_store), stall_grace_seconds=120, clock=clock)


@pytest.mark.anyio
async def test_memo_without_job_is_redispatched(job_store: InMemoryJobStore, ledger: InMemoryStatusLedger, clock: FakeClock) -> None:
  """A crash between the status commit and the enqueue leaves a memo the sweep must pick up."""
  memo_id = await _transcribing_memo(ledger)
  sweeper = _sweeper(job_store, ledger, clock)

  # Inside the grace period nothing happens.
  assert await sweeper.sweep() == SweepReport()

  clock.advance(121)
  assert await sweeper.sweep() == SweepReport(requeued=1)
  job = await job_store.get_job(f"transcribe:{memo_id}")
  assert job is not None and job.processing_attempt == 1


@pytest.mark.anyio
async def test_memo_with_active_job_is_left_alone(job_store: InMemoryJobStore, ledger: InMemoryStatusLedger, clock: FakeClock) -> None:
  memo_id = await _transcribing_memo(ledger)
  await job_store.enqueue(Stage.TRANSCRIBE, memo_id)
  clock.advance(600)

  assert await _sweeper(job_store, ledger, clock).sweep() == SweepReport()


@pytest.mark.anyio
async def test_dead_lettered_job_fails_the_memo(job_store: InMemoryJobStore, ledger: InMemoryStatusLedger, clock: FakeClock) -> None:
  memo_id = await _transcribing_memo(ledger)
  await job_store.enqueue(Stage.TRANSCRIBE, memo_id)
  job = await job_store.lease(Stage.TRANSCRIBE, "worker-a", 60)
  assert job is not None
  # The worker dead-lettered the job but died before writing FAILED.
  await job_store.fail(job.job_id, "OpenAI API quota exceeded", lease_token=job.lease_token, retryable=False)
  clock.advance(121)

  assert await _sweeper(job_store, ledger, clock).sweep() == SweepReport(failed=1)
  memo = await ledger.get_memo(memo_id)
  assert memo is not None
  assert memo.status is MemoStatus.FAILED
  assert memo.error_message == "Transcription failed: OpenAI API quota exceeded"


@pytest.mark.anyio
async def test_dead_letter_from_earlier_attempt_is_ignored(job_store: InMemoryJobStore, ledger: InMemoryStatusLedger, clock: FakeClock) -> None:
  memo_id = await _transcribing_memo(ledger)
  await job_store.enqueue(Stage.TRANSCRIBE, memo_id)
  await job_store.cancel(f"transcribe:{memo_id}", "Memo restarted")
  clock.advance(121)

  # A canceled job is not an exhausted one, so the memo is re-dispatched.
  assert await _sweeper(job_store, ledger, clock).sweep() == SweepReport(requeued=1)


@pytest.mark.anyio
async def test_sweep_reaps_expired_leases(job_store: InMemoryJobStore, ledger: InMemoryStatusLedger, clock: FakeClock) -> None:
  memo_id = await _transcribing_memo(ledger)
  await job_store.enqueue(Stage.TRANSCRIBE, memo_id)
  await job_store.lease(Stage.TRANSCRIBE, "worker-crashed", 30)
  clock.advance(31)

  report = await _sweeper(job_store, ledger, clock).sweep()
  assert report.reaped == 1
  job = await job_store.get_job(f"transcribe:{memo_id}")
  assert job is not None and job.state == "queued" and job.attempts == 0


@pytest.mark.anyio
async def test_run_stops_with_the_event(job_store: InMemoryJobStore, ledger: InMemoryStatusLedger, clock: FakeClock) -> None:
  stop_event = asyncio.Event()
  task = asyncio.create_task(_sweeper(job_store, ledger, clock).run(stop_event, interval_seconds=0.01))
  await asyncio.sleep(0.05)
  stop_event.set()
  await asyncio.wait_for(task, timeout=1)
  assert task.exception() is None
