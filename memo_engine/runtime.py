"""Composition root: wires repositories, providers, handlers and pools from settings."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

from memo_engine.ai.providers.base import GenerationProvider, TranscriptionProvider
from memo_engine.ai.providers.openai_client import build_generation_provider, build_transcription_provider
from memo_engine.config import Settings
from memo_engine.jobs.dispatch import DispatchTrigger, StageHandler
from memo_engine.jobs.models import Stage
from memo_engine.jobs.retry import RetryPolicy
from memo_engine.jobs.sweeper import Sweeper
from memo_engine.jobs.worker import PoolConfig, WorkerPoolHandle, start_worker_pools
from memo_engine.pipeline.generation import GenerationStage
from memo_engine.pipeline.transcription import TranscriptionStage
from memo_engine.services.memos import MemoService
from memo_engine.services.storage_client import BlobStore, build_blob_store
from memo_engine.services.usage import UsageAccounting
from memo_engine.storage.factory import build_job_store, build_status_ledger, build_usage_repository
from memo_engine.storage.jobs_repo import JobStore
from memo_engine.storage.memos_repo import StatusLedger
from memo_engine.storage.usage_repo import UsageRepository
from memo_engine.utils.clock import Clock

logger = logging.getLogger(__name__)


@dataclass
class PipelineRuntime:
  settings: Settings
  job_store: JobStore
  ledger: StatusLedger
  usage_repo: UsageRepository
  usage: UsageAccounting
  blob_store: BlobStore
  retry_policy: RetryPolicy
  dispatch: DispatchTrigger
  memo_service: MemoService
  sweeper: Sweeper
  handlers: dict[Stage, StageHandler] = field(default_factory=dict)

  def pool_configs(self) -> dict[Stage, PoolConfig]:
    settings = self.settings
    return {
      Stage.TRANSCRIBE: PoolConfig(concurrency=settings.transcription_concurrency, timeout_seconds=settings.transcription_timeout_seconds, lease_seconds=settings.transcription_lease_seconds),
      Stage.GENERATE: PoolConfig(concurrency=settings.generation_concurrency, timeout_seconds=settings.generation_timeout_seconds, lease_seconds=settings.generation_lease_seconds),
    }

  def start_workers(self, *, worker_prefix: str = "worker", pools: Mapping[Stage, PoolConfig] | None = None) -> WorkerPoolHandle:
    """Start the stage pools and the reconciliation sweeper on the running loop."""
    if not self.handlers:
      raise RuntimeError("Runtime was built without stage handlers; workers cannot start.")
    return start_worker_pools(
      self.handlers,
      job_store=self.job_store,
      ledger=self.ledger,
      dispatch=self.dispatch,
      retry_policy=self.retry_policy,
      pools=pools or self.pool_configs(),
      sweeper=self.sweeper,
      sweep_interval_seconds=self.settings.sweep_interval_seconds,
      poll_interval_seconds=self.settings.worker_poll_interval_seconds,
      max_poll_interval_seconds=self.settings.worker_max_poll_interval_seconds,
      worker_prefix=worker_prefix,
    )


def build_runtime(
  settings: Settings,
  *,
  job_store: JobStore | None = None,
  ledger: StatusLedger | None = None,
  usage_repo: UsageRepository | None = None,
  blob_store: BlobStore | None = None,
  transcription_provider: TranscriptionProvider | None = None,
  generation_provider: GenerationProvider | None = None,
  clock: Clock | None = None,
  with_handlers: bool = True,
) -> PipelineRuntime:
  """Assemble the runtime; every collaborator can be overridden for tests."""
  retry_policy = RetryPolicy.from_settings(settings)
  job_store = job_store if job_store is not None else build_job_store(settings, retry_policy=retry_policy, clock=clock)
  ledger = ledger if ledger is not None else build_status_ledger(settings, clock=clock)
  usage_repo = usage_repo if usage_repo is not None else build_usage_repository(settings)
  blob_store = blob_store if blob_store is not None else build_blob_store(settings)
  usage = UsageAccounting.from_settings(usage_repo, settings, clock=clock)
  dispatch = DispatchTrigger(job_store)
  memo_service = MemoService(ledger=ledger, job_store=job_store, blob_store=blob_store, usage=usage, dispatch=dispatch, max_audio_bytes=settings.max_audio_bytes, clock=clock)
  sweeper = Sweeper(job_store=job_store, ledger=ledger, dispatch=dispatch, stall_grace_seconds=settings.stall_grace_seconds, clock=clock)

  handlers: dict[Stage, StageHandler] = {}
  # Provider clients need an API key, so processes that only serve HTTP skip them.
  if with_handlers:
    transcriber = transcription_provider if transcription_provider is not None else build_transcription_provider(settings)
    generator = generation_provider if generation_provider is not None else build_generation_provider(settings)
    handlers = {
      Stage.TRANSCRIBE: TranscriptionStage(ledger=ledger, blob_store=blob_store, provider=transcriber, usage=usage),
      Stage.GENERATE: GenerationStage(ledger=ledger, provider=generator),
    }

  logger.info("Runtime built (storage=%s, blobs=%s, handlers=%s)", settings.storage_backend, settings.blob_backend, bool(handlers))
  return PipelineRuntime(
    settings=settings,
    job_store=job_store,
    ledger=ledger,
    usage_repo=usage_repo,
    usage=usage,
    blob_store=blob_store,
    retry_policy=retry_policy,
    dispatch=dispatch,
    memo_service=memo_service,
    sweeper=sweeper,
    handlers=handlers,
  )
