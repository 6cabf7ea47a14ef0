from __future__ import annotations

import asyncio

import pytest

from memo_engine.ai.providers.base import ProviderError, ProviderQuotaExceededError
from memo_engine.jobs.dispatch import DispatchTrigger
from memo_engine.jobs.models import JobRecord, Stage
from memo_engine.jobs.retry import RetryPolicy
from memo_engine.jobs.worker import PoolConfig, StageWorker, start_worker_pools
from memo_engine.pipeline.generation import GenerationStage
from memo_engine.pipeline.state import MemoStatus
from memo_engine.pipeline.transcription import TranscriptionStage
from memo_engine.services.storage_client import InMemoryBlobStore
from memo_engine.services.usage import UsageAccounting
from memo_engine.storage.memory_jobs_repo import InMemoryJobStore
from memo_engine.storage.memory_memos_repo import InMemoryStatusLedger
from tests.fakes import MEMO_CONTENT, TRANSCRIPT_TEXT, Delay, FakeClock, Hang, ScriptedGenerator, ScriptedTranscriber

FAST_POOL = PoolConfig(concurrency=1, timeout_seconds=0.05, lease_seconds=60)


async def _transcribing_memo(ledger: InMemoryStatusLedger, blob_store: InMemoryBlobStore, job_store: InMemoryJobStore) -> str:
  memo = await ledger.create_memo(account_id="acct-1", title="Planning")
  stored = await blob_store.put(b"audio", key=f"memos/{memo.memo_id}/audio.mp3", content_type="audio/mpeg")
  await ledger.set_audio(memo.memo_id, storage_key=stored.key, url=stored.url)
  await ledger.transition(memo.memo_id, expected=MemoStatus.UPLOADING, target=MemoStatus.TRANSCRIBING)
  await job_store.enqueue(Stage.TRANSCRIBE, memo.memo_id)
  return memo.memo_id


async def _generating_memo(ledger: InMemoryStatusLedger, job_store: InMemoryJobStore) -> str:
  memo = await ledger.create_memo(account_id="acct-1", title="Planning")
  await ledger.set_audio(memo.memo_id, storage_key="memos/a.mp3", url="memory://a")
  await ledger.transition(memo.memo_id, expected=MemoStatus.UPLOADING, target=MemoStatus.TRANSCRIBING)
  await ledger.save_transcript(memo.memo_id, processing_attempt=1, text=TRANSCRIPT_TEXT, segments=[], language="en", duration_seconds=600)
  await ledger.transition(memo.memo_id, expected=MemoStatus.TRANSCRIBING, target=MemoStatus.GENERATING)
  await job_store.enqueue(Stage.GENERATE, memo.memo_id)
  return memo.memo_id


def _worker(handler, job_store: InMemoryJobStore, ledger: InMemoryStatusLedger, *, retry_policy: RetryPolicy | None = None, config: PoolConfig = FAST_POOL) -> StageWorker:
  return StageWorker(
    handler=handler,
    job_store=job_store,
    ledger=ledger,
    dispatch=DispatchTrigger(job_store),
    retry_policy=retry_policy or RetryPolicy(),
    config=config,
    worker_id=f"test-{handler.stage.value}",
    poll_interval_seconds=0.01,
    max_poll_interval_seconds=0.02,
  )


@pytest.mark.anyio
async def test_successful_job_is_acked_and_next_stage_dispatched(job_store: InMemoryJobStore, ledger: InMemoryStatusLedger, blob_store: InMemoryBlobStore, usage: UsageAccounting) -> None:
  memo_id = await _transcribing_memo(ledger, blob_store, job_store)
  worker = _worker(TranscriptionStage(ledger=ledger, blob_store=blob_store, provider=ScriptedTranscriber(), usage=usage), job_store, ledger)

  assert await worker.process_one()

  assert await job_store.get_job(f"transcribe:{memo_id}") is None
  generate = await job_store.get_job(f"generate:{memo_id}")
  assert generate is not None and generate.state == "queued"
  # Nothing left for the transcription pool.
  assert not await worker.process_one()


@pytest.mark.anyio
async def test_timeout_counts_as_a_failed_attempt(job_store: InMemoryJobStore, ledger: InMemoryStatusLedger) -> None:
  memo_id = await _generating_memo(ledger, job_store)
  worker = _worker(GenerationStage(ledger=ledger, provider=ScriptedGenerator(Hang())), job_store, ledger)

  assert await worker.process_one()

  job = await job_store.get_job(f"generate:{memo_id}")
  assert job is not None
  assert job.state == "queued"
  assert job.attempts == 1
  assert job.last_error == "Stage timed out after 0.05s"
  memo = await ledger.get_memo(memo_id)
  assert memo is not None and memo.status is MemoStatus.GENERATING


@pytest.mark.anyio
async def test_exhausted_job_marks_memo_failed(job_store: InMemoryJobStore, ledger: InMemoryStatusLedger, clock: FakeClock) -> None:
  memo_id = await _generating_memo(ledger, job_store)
  worker = _worker(GenerationStage(ledger=ledger, provider=ScriptedGenerator(ProviderError("upstream returned 502"))), job_store, ledger)

  for _ in range(3):
    assert await worker.process_one()
    clock.advance(300)

  assert not await worker.process_one()
  memo = await ledger.get_memo(memo_id)
  assert memo is not None
  assert memo.status is MemoStatus.FAILED
  assert memo.error_message == "Memo generation failed: upstream returned 502"

  dead_letters = await job_store.list_dead_letters(memo_id=memo_id)
  assert len(dead_letters) == 1
  assert dead_letters[0].attempts == 3


@pytest.mark.anyio
async def test_fail_fast_policy_dead_letters_permanent_errors(job_store: InMemoryJobStore, ledger: InMemoryStatusLedger, blob_store: InMemoryBlobStore, usage: UsageAccounting) -> None:
  memo_id = await _transcribing_memo(ledger, blob_store, job_store)
  handler = TranscriptionStage(ledger=ledger, blob_store=blob_store, provider=ScriptedTranscriber(ProviderQuotaExceededError()), usage=usage)
  worker = _worker(handler, job_store, ledger, retry_policy=RetryPolicy(fail_fast_permanent=True))

  assert await worker.process_one()

  memo = await ledger.get_memo(memo_id)
  assert memo is not None
  assert memo.status is MemoStatus.FAILED
  assert memo.error_message == "Transcription failed: OpenAI API quota exceeded"
  assert (await job_store.list_dead_letters(memo_id=memo_id))[0].attempts == 1


@pytest.mark.anyio
async def test_job_for_deleted_memo_is_canceled(job_store: InMemoryJobStore, ledger: InMemoryStatusLedger, blob_store: InMemoryBlobStore, usage: UsageAccounting) -> None:
  memo_id = await _transcribing_memo(ledger, blob_store, job_store)
  await ledger.delete_memo(memo_id)
  provider = ScriptedTranscriber()
  worker = _worker(TranscriptionStage(ledger=ledger, blob_store=blob_store, provider=provider, usage=usage), job_store, ledger)

  assert await worker.process_one()

  assert provider.calls == []
  assert await job_store.get_job(f"transcribe:{memo_id}") is None
  dead_letters = await job_store.list_dead_letters(memo_id=memo_id)
  assert [record.state for record in dead_letters] == ["canceled"]


class _FlakyLeaseStore(InMemoryJobStore):
  """Fails the first lease call, then stops the loop on the next one."""

  def __init__(self, stop_event: asyncio.Event, **kwargs) -> None:
    super().__init__(**kwargs)
    self.stop_event = stop_event
    self.lease_calls = 0

  async def lease(self, stage: Stage, worker_id: str, lease_seconds: float) -> JobRecord | None:
    self.lease_calls += 1
    if self.lease_calls == 1:
      raise RuntimeError("store unavailable")
    self.stop_event.set()
    return None


@pytest.mark.anyio
async def test_run_loop_survives_store_errors(ledger: InMemoryStatusLedger, clock: FakeClock) -> None:
  stop_event = asyncio.Event()
  store = _FlakyLeaseStore(stop_event, clock=clock)
  worker = _worker(GenerationStage(ledger=ledger, provider=ScriptedGenerator()), store, ledger)

  await asyncio.wait_for(worker.run(stop_event), timeout=2)

  assert store.lease_calls == 2


@pytest.mark.anyio
async def test_pools_drain_jobs_and_shut_down(job_store: InMemoryJobStore, ledger: InMemoryStatusLedger, blob_store: InMemoryBlobStore, usage: UsageAccounting) -> None:
  memo_id = await _transcribing_memo(ledger, blob_store, job_store)
  handlers = {
    Stage.TRANSCRIBE: TranscriptionStage(ledger=ledger, blob_store=blob_store, provider=ScriptedTranscriber(), usage=usage),
    Stage.GENERATE: GenerationStage(ledger=ledger, provider=ScriptedGenerator()),
  }
  pools = {Stage.TRANSCRIBE: PoolConfig(concurrency=2, timeout_seconds=1, lease_seconds=60), Stage.GENERATE: PoolConfig(concurrency=1, timeout_seconds=1, lease_seconds=60)}
  handle = start_worker_pools(handlers, job_store=job_store, ledger=ledger, dispatch=DispatchTrigger(job_store), retry_policy=RetryPolicy(), pools=pools, poll_interval_seconds=0.01, max_poll_interval_seconds=0.02)
  assert len(handle.workers) == 3

  try:
    for _ in range(200):
      memo = await ledger.get_memo(memo_id)
      if memo is not None and memo.status is MemoStatus.COMPLETED:
        break
      await asyncio.sleep(0.01)
  finally:
    await handle.shutdown(grace_seconds=1)

  memo = await ledger.get_memo(memo_id)
  assert memo is not None and memo.status is MemoStatus.COMPLETED
  assert all(task.done() for task in handle.tasks)
  assert await job_store.list_in_flight() == []


@pytest.mark.anyio
async def test_concurrent_pool_workers_run_a_job_once(job_store: InMemoryJobStore, ledger: InMemoryStatusLedger, blob_store: InMemoryBlobStore, usage: UsageAccounting) -> None:
  memo_id = await _generating_memo(ledger, job_store)
  generator = ScriptedGenerator(Delay(0.05, MEMO_CONTENT))
  handlers = {
    Stage.TRANSCRIBE: TranscriptionStage(ledger=ledger, blob_store=blob_store, provider=ScriptedTranscriber(), usage=usage),
    Stage.GENERATE: GenerationStage(ledger=ledger, provider=generator),
  }
  pools = {Stage.TRANSCRIBE: PoolConfig(concurrency=1, timeout_seconds=1, lease_seconds=60), Stage.GENERATE: PoolConfig(concurrency=4, timeout_seconds=1, lease_seconds=60)}
  handle = start_worker_pools(handlers, job_store=job_store, ledger=ledger, dispatch=DispatchTrigger(job_store), retry_policy=RetryPolicy(), pools=pools, poll_interval_seconds=0.005, max_poll_interval_seconds=0.01)

  try:
    for _ in range(200):
      memo = await ledger.get_memo(memo_id)
      if memo is not None and memo.status is MemoStatus.COMPLETED:
        break
      await asyncio.sleep(0.01)
    # Give idle workers a few more polls to pick up a job they should never see.
    await asyncio.sleep(0.05)
  finally:
    await handle.shutdown(grace_seconds=1)

  memo = await ledger.get_memo(memo_id)
  assert memo is not None and memo.status is MemoStatus.COMPLETED
  assert len(generator.calls) == 1
  assert await job_store.list_dead_letters() == []


def test_start_worker_pools_requires_every_stage(job_store: InMemoryJobStore, ledger: InMemoryStatusLedger) -> None:
  with pytest.raises(ValueError, match="transcribe"):
    start_worker_pools({Stage.GENERATE: GenerationStage(ledger=ledger, provider=ScriptedGenerator())}, job_store=job_store, ledger=ledger, dispatch=DispatchTrigger(job_store), retry_policy=RetryPolicy(), pools={})


@pytest.mark.parametrize("kwargs", [{"concurrency": 0, "timeout_seconds": 1, "lease_seconds": 5}, {"concurrency": 1, "timeout_seconds": 5, "lease_seconds": 5}])
def test_pool_config_validation(kwargs: dict[str, float]) -> None:
  with pytest.raises(ValueError):
    PoolConfig(**kwargs)
