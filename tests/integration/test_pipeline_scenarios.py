"""End-to-end pipeline runs over the in-memory stores with scripted providers."""

from __future__ import annotations

import asyncio

import pytest

from memo_engine.ai.providers.base import ProviderQuotaExceededError
from memo_engine.config import Settings
from memo_engine.jobs.models import Stage
from memo_engine.jobs.worker import PoolConfig, StageWorker
from memo_engine.pipeline.state import ALLOWED_TRANSITIONS, InvalidStateError, MemoStatus
from memo_engine.runtime import PipelineRuntime, build_runtime
from memo_engine.services.storage_client import InMemoryBlobStore
from memo_engine.storage.memory_jobs_repo import InMemoryJobStore
from memo_engine.storage.memory_memos_repo import InMemoryStatusLedger
from memo_engine.storage.memory_usage_repo import InMemoryUsageRepository
from tests.fakes import MEMO_CONTENT, FakeClock, Hang, ScriptedGenerator, ScriptedTranscriber, transcription_result

FAST_POOL = PoolConfig(concurrency=1, timeout_seconds=0.05, lease_seconds=60)


def _runtime(settings: Settings, clock: FakeClock, job_store: InMemoryJobStore, ledger: InMemoryStatusLedger, usage_repo: InMemoryUsageRepository, blob_store: InMemoryBlobStore, transcriber: ScriptedTranscriber, generator: ScriptedGenerator) -> PipelineRuntime:
  return build_runtime(settings, job_store=job_store, ledger=ledger, usage_repo=usage_repo, blob_store=blob_store, transcription_provider=transcriber, generation_provider=generator, clock=clock)


def _workers(runtime: PipelineRuntime) -> dict[Stage, StageWorker]:
  return {
    stage: StageWorker(handler=handler, job_store=runtime.job_store, ledger=runtime.ledger, dispatch=runtime.dispatch, retry_policy=runtime.retry_policy, config=FAST_POOL, worker_id=f"it-{stage.value}")
    for stage, handler in runtime.handlers.items()
  }


async def _submit(runtime: PipelineRuntime, account_id: str = "acct-1") -> str:
  memo = await runtime.memo_service.create_memo(account_id, title="Quarterly planning", participants=["Alice", "Bob", "Carol"])
  await runtime.memo_service.upload_audio(account_id, memo.memo_id, b"ID3" + b"\x00" * 64)
  return memo.memo_id


async def _assert_legal_history(runtime: PipelineRuntime, memo_id: str) -> list[tuple[MemoStatus | None, MemoStatus]]:
  history = [(event.from_status, event.to_status) for event in await runtime.ledger.list_history(memo_id)]
  assert history[0] == (None, MemoStatus.UPLOADING)
  for current, target in history[1:]:
    assert current is not None
    # Restart is the one edge outside the per-attempt table.
    assert target in ALLOWED_TRANSITIONS[current] or (target is MemoStatus.UPLOADING and current in {MemoStatus.COMPLETED, MemoStatus.FAILED})
  return history


@pytest.mark.anyio
async def test_generation_timeouts_retry_and_usage_is_counted_once(settings, clock, job_store, ledger, usage_repo, blob_store) -> None:
  """A 10 minute recording whose generation hangs twice still completes, billed once."""
  transcriber = ScriptedTranscriber(transcription_result(600))
  generator = ScriptedGenerator(Hang(), Hang(), MEMO_CONTENT)
  runtime = _runtime(settings, clock, job_store, ledger, usage_repo, blob_store, transcriber, generator)
  workers = _workers(runtime)
  memo_id = await _submit(runtime)

  assert await workers[Stage.TRANSCRIBE].process_one()
  assert (await runtime.memo_service.get_status("acct-1", memo_id)).status is MemoStatus.GENERATING

  # First and second generation attempts time out; backoff is 2s then 4s.
  assert await workers[Stage.GENERATE].process_one()
  assert not await workers[Stage.GENERATE].process_one()
  clock.advance(2)
  assert await workers[Stage.GENERATE].process_one()
  clock.advance(4)
  assert await workers[Stage.GENERATE].process_one()

  memo = await runtime.ledger.get_memo(memo_id)
  assert memo is not None
  assert memo.status is MemoStatus.COMPLETED
  assert memo.content is not None and memo.content["summary"] == MEMO_CONTENT["summary"]
  assert len(generator.calls) == 3
  assert len(transcriber.calls) == 1

  usage = await runtime.memo_service.usage("acct-1")
  assert usage.minutes_used == 10
  assert usage.remaining == 110
  assert await runtime.job_store.list_in_flight() == []
  assert await runtime.job_store.list_dead_letters() == []
  assert await _assert_legal_history(runtime, memo_id) == [
    (None, MemoStatus.UPLOADING),
    (MemoStatus.UPLOADING, MemoStatus.TRANSCRIBING),
    (MemoStatus.TRANSCRIBING, MemoStatus.GENERATING),
    (MemoStatus.GENERATING, MemoStatus.COMPLETED),
  ]


@pytest.mark.anyio
async def test_quota_errors_exhaust_retries_and_fail_the_memo(settings, clock, job_store, ledger, usage_repo, blob_store) -> None:
  transcriber = ScriptedTranscriber(ProviderQuotaExceededError())
  generator = ScriptedGenerator()
  runtime = _runtime(settings, clock, job_store, ledger, usage_repo, blob_store, transcriber, generator)
  workers = _workers(runtime)
  memo_id = await _submit(runtime)

  for _ in range(3):
    assert await workers[Stage.TRANSCRIBE].process_one()
    clock.advance(300)
  assert not await workers[Stage.TRANSCRIBE].process_one()

  status = await runtime.memo_service.get_status("acct-1", memo_id)
  assert status.status is MemoStatus.FAILED
  assert status.error_message == "Transcription failed: OpenAI API quota exceeded"
  assert len(transcriber.calls) == 3

  # Generation never started.
  assert not await workers[Stage.GENERATE].process_one()
  assert generator.calls == []
  assert await runtime.job_store.list_dead_letters(stage=Stage.GENERATE) == []
  dead_letters = await runtime.job_store.list_dead_letters(stage=Stage.TRANSCRIBE, memo_id=memo_id)
  assert len(dead_letters) == 1
  assert dead_letters[0].attempts == 3
  assert dead_letters[0].errors == ("OpenAI API quota exceeded",) * 3
  assert (await runtime.memo_service.usage("acct-1")).minutes_used == 0
  await _assert_legal_history(runtime, memo_id)


@pytest.mark.anyio
async def test_early_generate_request_does_not_consume_generation_attempts(settings, clock, job_store, ledger, usage_repo, blob_store) -> None:
  generator = ScriptedGenerator(Hang(), Hang(), Hang())
  runtime = _runtime(settings, clock, job_store, ledger, usage_repo, blob_store, ScriptedTranscriber(transcription_result(120)), generator)
  workers = _workers(runtime)
  memo_id = await _submit(runtime)

  with pytest.raises(InvalidStateError):
    await runtime.memo_service.create_job(Stage.GENERATE, memo_id)
  assert await runtime.job_store.get_job(f"generate:{memo_id}") is None

  assert await workers[Stage.TRANSCRIBE].process_one()
  job = await runtime.job_store.get_job(f"generate:{memo_id}")
  assert job is not None and job.attempts == 0

  for delay in (2, 4, 0):
    assert await workers[Stage.GENERATE].process_one()
    clock.advance(delay)

  status = await runtime.memo_service.get_status("acct-1", memo_id)
  assert status.status is MemoStatus.FAILED
  assert status.error_message == "Memo generation failed: Stage timed out after 0.05s"
  assert len(generator.calls) == 3
  dead_letters = await runtime.job_store.list_dead_letters(stage=Stage.GENERATE, memo_id=memo_id)
  assert [(record.state, record.attempts) for record in dead_letters] == [("dead", 3)]


@pytest.mark.anyio
async def test_restart_runs_a_new_attempt_and_bills_it(settings, clock, job_store, ledger, usage_repo, blob_store) -> None:
  runtime = _runtime(settings, clock, job_store, ledger, usage_repo, blob_store, ScriptedTranscriber(transcription_result(300)), ScriptedGenerator())
  workers = _workers(runtime)
  memo_id = await _submit(runtime)
  assert await workers[Stage.TRANSCRIBE].process_one()
  assert await workers[Stage.GENERATE].process_one()

  restarted = await runtime.memo_service.restart_memo("acct-1", memo_id)
  assert restarted.processing_attempt == 2
  await runtime.memo_service.upload_audio("acct-1", memo_id, b"ID3-second-take")
  assert await workers[Stage.TRANSCRIBE].process_one()
  assert await workers[Stage.GENERATE].process_one()

  memo = await runtime.ledger.get_memo(memo_id)
  assert memo is not None
  assert (memo.status, memo.processing_attempt) == (MemoStatus.COMPLETED, 2)
  assert (await runtime.memo_service.usage("acct-1")).minutes_used == 10
  history = await _assert_legal_history(runtime, memo_id)
  assert (MemoStatus.COMPLETED, MemoStatus.UPLOADING) in history


@pytest.mark.anyio
async def test_deleting_a_memo_mid_pipeline_cancels_its_work(settings, clock, job_store, ledger, usage_repo, blob_store) -> None:
  generator = ScriptedGenerator()
  runtime = _runtime(settings, clock, job_store, ledger, usage_repo, blob_store, ScriptedTranscriber(), generator)
  workers = _workers(runtime)
  memo_id = await _submit(runtime)
  assert await workers[Stage.TRANSCRIBE].process_one()

  await runtime.memo_service.delete_memo("acct-1", memo_id)

  assert not await workers[Stage.GENERATE].process_one()
  assert generator.calls == []
  canceled = await runtime.job_store.list_dead_letters(memo_id=memo_id)
  assert [(record.stage, record.state) for record in canceled] == [(Stage.GENERATE, "canceled")]


@pytest.mark.anyio
async def test_job_left_behind_by_a_deleted_memo_is_canceled_by_the_worker(settings, clock, job_store, ledger, usage_repo, blob_store) -> None:
  transcriber = ScriptedTranscriber()
  runtime = _runtime(settings, clock, job_store, ledger, usage_repo, blob_store, transcriber, ScriptedGenerator())
  workers = _workers(runtime)
  memo_id = await _submit(runtime)
  # Remove the memo behind the job store's back, as a concurrent delete would.
  await runtime.ledger.delete_memo(memo_id)

  assert await workers[Stage.TRANSCRIBE].process_one()

  assert transcriber.calls == []
  assert await runtime.job_store.list_in_flight() == []
  assert [record.state for record in await runtime.job_store.list_dead_letters(memo_id=memo_id)] == ["canceled"]


@pytest.mark.anyio
async def test_running_pools_process_concurrent_memos(settings, clock, job_store, ledger, usage_repo, blob_store) -> None:
  runtime = _runtime(settings, clock, job_store, ledger, usage_repo, blob_store, ScriptedTranscriber(transcription_result(60)), ScriptedGenerator())
  memo_ids = [await _submit(runtime) for _ in range(4)]

  handle = runtime.start_workers(worker_prefix="it")
  try:
    for _ in range(300):
      statuses = [(await runtime.memo_service.get_status("acct-1", memo_id)).status for memo_id in memo_ids]
      if all(status is MemoStatus.COMPLETED for status in statuses):
        break
      await asyncio.sleep(0.01)
  finally:
    await handle.shutdown(grace_seconds=2)

  assert statuses == [MemoStatus.COMPLETED] * 4
  assert (await runtime.memo_service.usage("acct-1")).minutes_used == 4
  assert await runtime.job_store.list_in_flight() == []
