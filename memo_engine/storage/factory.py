"""Factory helpers for the job store, status ledger and usage repository."""

from __future__ import annotations

from memo_engine.config import Settings
from memo_engine.jobs.retry import RetryPolicy
from memo_engine.storage.jobs_repo import JobStore
from memo_engine.storage.memory_jobs_repo import InMemoryJobStore
from memo_engine.storage.memory_memos_repo import InMemoryStatusLedger
from memo_engine.storage.memory_usage_repo import InMemoryUsageRepository
from memo_engine.storage.memos_repo import StatusLedger
from memo_engine.storage.usage_repo import UsageRepository
from memo_engine.utils.clock import Clock


def build_job_store(settings: Settings, *, retry_policy: RetryPolicy | None = None, clock: Clock | None = None) -> JobStore:
  """Construct the job store for the configured backend."""
  policy = retry_policy or RetryPolicy.from_settings(settings)
  # The in-memory store only coordinates workers inside one process.
  if settings.storage_backend == "memory":
    return InMemoryJobStore(retry_policy=policy, clock=clock)

  from memo_engine.storage.postgres_jobs_repo import PostgresJobStore

  return PostgresJobStore(retry_policy=policy, clock=clock)


def build_status_ledger(settings: Settings, *, clock: Clock | None = None) -> StatusLedger:
  """Construct the status ledger for the configured backend."""
  if settings.storage_backend == "memory":
    return InMemoryStatusLedger(clock=clock)

  from memo_engine.storage.postgres_memos_repo import PostgresStatusLedger

  return PostgresStatusLedger(clock=clock)


def build_usage_repository(settings: Settings) -> UsageRepository:
  """Construct the usage repository for the configured backend."""
  if settings.storage_backend == "memory":
    return InMemoryUsageRepository()

  from memo_engine.storage.postgres_usage_repo import PostgresUsageRepository

  return PostgresUsageRepository()
