"""Stage handler registry and the trigger that chains one stage to the next."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Protocol

from memo_engine.jobs.models import JobRecord, Stage, job_id_for
from memo_engine.storage.jobs_repo import AlreadyQueuedError, JobStore
from memo_engine.utils.db_retry import execute_with_retry

logger = logging.getLogger(__name__)


class StaleJobError(RuntimeError):
  """The job no longer applies to its memo (restarted or terminal); cancel it instead of retrying."""


@dataclass(frozen=True)
class StageResult:
  """Outcome of a successful handler run; ``next_stage`` is enqueued by the worker after ack."""

  memo_id: str
  processing_attempt: int
  next_stage: Stage | None = None
  skipped: bool = False


class StageHandler(Protocol):
  """Processor contract for one pipeline stage."""

  stage: Stage

  async def process(self, job: JobRecord) -> StageResult:
    """Run the stage for one leased job; raise to report failure."""


class StageHandlerRegistry:
  """Registry mapping every stage to exactly one handler."""

  def __init__(self, handlers: Mapping[Stage, StageHandler]) -> None:
    missing = [stage.value for stage in Stage if stage not in handlers]
    if missing:
      raise ValueError(f"No handler registered for stages: {', '.join(missing)}")
    for stage, handler in handlers.items():
      if handler.stage is not stage:
        raise ValueError(f"Handler for {stage.value} reports stage {handler.stage.value}")
    self._handlers = dict(handlers)

  def resolve(self, stage: Stage) -> StageHandler:
    return self._handlers[stage]

  def stages(self) -> list[Stage]:
    return list(self._handlers)


class DispatchTrigger:
  """Enqueue the next stage of a memo; an already-queued job counts as success."""

  def __init__(self, job_store: JobStore, *, store_retry_attempts: int = 3) -> None:
    self._job_store = job_store
    self._store_retry_attempts = store_retry_attempts

  async def dispatch(self, stage: Stage, memo_id: str, processing_attempt: int) -> str:
    async def _enqueue() -> str | None:
      try:
        return await self._job_store.enqueue(stage, memo_id, processing_attempt=processing_attempt)
      except AlreadyQueuedError:
        return None

    job_id = await execute_with_retry(operation_name=f"jobs.enqueue.{stage.value}", func=_enqueue, max_attempts=self._store_retry_attempts)
    if job_id is None:
      job_id = job_id_for(stage, memo_id)
      logger.info("Dispatch found %s already queued", job_id)
      return job_id
    logger.info("Dispatched %s (attempt %d)", job_id, processing_attempt)
    return job_id
