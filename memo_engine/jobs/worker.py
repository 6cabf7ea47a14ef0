"""Worker pools: concurrent lease-execute-ack loops, one pool per stage."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import TypeVar

from memo_engine.jobs.dispatch import DispatchTrigger, StageHandler, StageHandlerRegistry, StaleJobError
from memo_engine.jobs.models import FailResult, JobRecord, Stage
from memo_engine.jobs.retry import RetryPolicy
from memo_engine.jobs.sweeper import Sweeper
from memo_engine.pipeline.state import STAGE_ACTIVE_STATUS, InvalidStateError, MemoStatus, failure_message
from memo_engine.storage.jobs_repo import JobStore
from memo_engine.storage.memos_repo import MemoNotFoundError, StatusLedger
from memo_engine.utils.db_retry import execute_with_retry
from memo_engine.utils.ids import generate_worker_id

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PoolConfig:
  """Concurrency and time bounds of one stage pool."""

  concurrency: int
  timeout_seconds: float
  lease_seconds: float

  def __post_init__(self) -> None:
    if self.concurrency < 1:
      raise ValueError("concurrency must be at least 1")
    if self.lease_seconds <= self.timeout_seconds:
      raise ValueError("lease_seconds must exceed timeout_seconds")


class StageWorker:
  """One worker slot. A job failure is reported to the store and never escapes the loop."""

  def __init__(
    self,
    *,
    handler: StageHandler,
    job_store: JobStore,
    ledger: StatusLedger,
    dispatch: DispatchTrigger,
    retry_policy: RetryPolicy,
    config: PoolConfig,
    worker_id: str,
    poll_interval_seconds: float = 1.0,
    max_poll_interval_seconds: float = 10.0,
    store_retry_attempts: int = 3,
  ) -> None:
    self._handler = handler
    self._stage = handler.stage
    self._job_store = job_store
    self._ledger = ledger
    self._dispatch = dispatch
    self._retry_policy = retry_policy
    self._config = config
    self.worker_id = worker_id
    self._poll_interval = poll_interval_seconds
    self._max_poll_interval = max(max_poll_interval_seconds, poll_interval_seconds)
    self._store_retry_attempts = store_retry_attempts

  @property
  def stage(self) -> Stage:
    return self._stage

  async def process_one(self) -> bool:
    """Lease and run at most one job. Returns False when nothing was eligible."""
    job = await self._store_call("lease", lambda: self._job_store.lease(self._stage, self.worker_id, self._config.lease_seconds))
    if job is None:
      return False
    await self._execute(job)
    return True

  async def run(self, stop_event: asyncio.Event) -> None:
    """Poll until ``stop_event`` is set, backing off while the queue is idle."""
    delay = self._poll_interval
    logger.info("Worker %s started for stage %s", self.worker_id, self._stage.value)
    while not stop_event.is_set():
      try:
        processed = await self.process_one()
      except Exception:  # noqa: BLE001
        logger.error("Worker %s loop iteration failed; continuing", self.worker_id, exc_info=True)
        processed = False
      if processed:
        delay = self._poll_interval
        continue
      try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay)
      except TimeoutError:
        delay = min(delay * 2, self._max_poll_interval)
    logger.info("Worker %s stopped", self.worker_id)

  async def _execute(self, job: JobRecord) -> None:
    logger.info("Worker %s leased %s (attempt %d/%d)", self.worker_id, job.job_id, job.attempts + 1, job.max_attempts)
    try:
      result = await asyncio.wait_for(self._handler.process(job), timeout=self._config.timeout_seconds)
    except (MemoNotFoundError, StaleJobError) as exc:
      logger.info("Canceling job %s: %s", job.job_id, exc)
      await self._store_call("cancel", lambda: self._job_store.cancel(job.job_id, str(exc)))
      return
    except TimeoutError as exc:
      await self._handle_failure(job, exc, f"Stage timed out after {self._config.timeout_seconds:g}s")
      return
    except Exception as exc:  # noqa: BLE001
      logger.warning("Job %s failed on attempt %d: %s", job.job_id, job.attempts + 1, exc, exc_info=True)
      await self._handle_failure(job, exc, str(exc) or type(exc).__name__)
      return

    acked = await self._store_call("ack", lambda: self._job_store.ack(job.job_id, lease_token=job.lease_token))
    if not acked:
      logger.warning("Job %s was no longer leased by %s at ack time", job.job_id, self.worker_id)
    if result.next_stage is not None:
      await self._dispatch.dispatch(result.next_stage, result.memo_id, result.processing_attempt)

  async def _handle_failure(self, job: JobRecord, exc: BaseException, reason: str) -> None:
    retryable = self._retry_policy.is_retryable(exc)
    result: FailResult = await self._store_call("fail", lambda: self._job_store.fail(job.job_id, reason, lease_token=job.lease_token, retryable=retryable))
    if result.exhausted:
      logger.error("Job %s dead-lettered after %d attempts: %s", job.job_id, result.attempts, reason)
      await self._mark_failed(job, reason)
    elif result.next_available_at is not None:
      logger.info("Job %s rescheduled for %s", job.job_id, result.next_available_at.isoformat())

  async def _mark_failed(self, job: JobRecord, reason: str) -> None:
    message = failure_message(self._stage, reason)
    try:
      await self._ledger.transition(job.memo_id, expected=STAGE_ACTIVE_STATUS[self._stage], target=MemoStatus.FAILED, processing_attempt=job.processing_attempt, error_message=message)
    except (InvalidStateError, MemoNotFoundError) as exc:
      logger.warning("Could not mark memo %s failed after dead-lettering %s: %s", job.memo_id, job.job_id, exc)

  async def _store_call(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
    return await execute_with_retry(operation_name=f"jobs.{operation}.{self._stage.value}", func=func, max_attempts=self._store_retry_attempts)


@dataclass
class WorkerPoolHandle:
  """Running pools; ``shutdown`` lets in-flight jobs finish within the grace period."""

  workers: list[StageWorker]
  tasks: list[asyncio.Task[None]]
  stop_event: asyncio.Event
  sweeper_task: asyncio.Task[None] | None = None
  stopped: bool = field(default=False)

  async def shutdown(self, grace_seconds: float = 30.0) -> None:
    if self.stopped:
      return
    self.stopped = True
    self.stop_event.set()
    pending = [task for task in [*self.tasks, self.sweeper_task] if task is not None]
    if not pending:
      return
    _, still_running = await asyncio.wait(pending, timeout=grace_seconds)
    for task in still_running:
      task.cancel()
    if still_running:
      logger.warning("Canceled %d worker tasks that outlived the %.0fs shutdown grace", len(still_running), grace_seconds)
      await asyncio.gather(*still_running, return_exceptions=True)


def start_worker_pools(
  handlers: Mapping[Stage, StageHandler],
  *,
  job_store: JobStore,
  ledger: StatusLedger,
  dispatch: DispatchTrigger,
  retry_policy: RetryPolicy,
  pools: Mapping[Stage, PoolConfig],
  sweeper: Sweeper | None = None,
  sweep_interval_seconds: float = 60.0,
  poll_interval_seconds: float = 1.0,
  max_poll_interval_seconds: float = 10.0,
  worker_prefix: str = "worker",
) -> WorkerPoolHandle:
  """Start one task per concurrency slot for every stage. Must be called inside a running loop."""
  registry = StageHandlerRegistry(handlers)
  stop_event = asyncio.Event()
  workers: list[StageWorker] = []
  tasks: list[asyncio.Task[None]] = []
  for stage in registry.stages():
    config = pools[stage]
    for slot in range(config.concurrency):
      worker = StageWorker(
        handler=registry.resolve(stage),
        job_store=job_store,
        ledger=ledger,
        dispatch=dispatch,
        retry_policy=retry_policy,
        config=config,
        worker_id=generate_worker_id(f"{worker_prefix}-{stage.value}", slot),
        poll_interval_seconds=poll_interval_seconds,
        max_poll_interval_seconds=max_poll_interval_seconds,
      )
      workers.append(worker)
      tasks.append(asyncio.create_task(worker.run(stop_event), name=worker.worker_id))
    logger.info("Started %d %s workers (timeout=%.0fs, lease=%.0fs)", config.concurrency, stage.value, config.timeout_seconds, config.lease_seconds)

  sweeper_task = None
  if sweeper is not None:
    sweeper_task = asyncio.create_task(sweeper.run(stop_event, interval_seconds=sweep_interval_seconds), name=f"{worker_prefix}-sweeper")
  return WorkerPoolHandle(workers=workers, tasks=tasks, stop_event=stop_event, sweeper_task=sweeper_task)
