"""Shared fixtures for in-process pipeline tests."""

from __future__ import annotations

import os
from dataclasses import replace

# Keep tests independent of any developer .env and of external services.
os.environ.setdefault("MEMO_ENV_FILE", os.devnull)
os.environ.setdefault("MEMO_STORAGE_BACKEND", "memory")
os.environ.setdefault("MEMO_BLOB_BACKEND", "memory")

import pytest  # noqa: E402

from memo_engine.config import Settings, get_settings  # noqa: E402
from memo_engine.jobs.retry import RetryPolicy  # noqa: E402
from memo_engine.services.storage_client import InMemoryBlobStore  # noqa: E402
from memo_engine.services.usage import UsageAccounting  # noqa: E402
from memo_engine.storage.memory_jobs_repo import InMemoryJobStore  # noqa: E402
from memo_engine.storage.memory_memos_repo import InMemoryStatusLedger  # noqa: E402
from memo_engine.storage.memory_usage_repo import InMemoryUsageRepository  # noqa: E402
from tests.fakes import FakeClock  # noqa: E402


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
  return FakeClock()


@pytest.fixture
def retry_policy() -> RetryPolicy:
  return RetryPolicy(max_attempts=3, base_delay_seconds=2.0, max_delay_seconds=300.0)


@pytest.fixture
def job_store(retry_policy: RetryPolicy, clock: FakeClock) -> InMemoryJobStore:
  return InMemoryJobStore(retry_policy=retry_policy, clock=clock)


@pytest.fixture
def ledger(clock: FakeClock) -> InMemoryStatusLedger:
  return InMemoryStatusLedger(clock=clock)


@pytest.fixture
def usage_repo() -> InMemoryUsageRepository:
  return InMemoryUsageRepository()


@pytest.fixture
def usage(usage_repo: InMemoryUsageRepository, clock: FakeClock) -> UsageAccounting:
  return UsageAccounting(usage_repo, tier_minutes={"FREE": 120, "PRO": 600, "ENTERPRISE": None}, default_tier="FREE", clock=clock)


@pytest.fixture
def blob_store() -> InMemoryBlobStore:
  return InMemoryBlobStore()


@pytest.fixture
def settings(tmp_path) -> Settings:
  """Settings for in-process runs with short stage timeouts."""
  get_settings.cache_clear()
  return replace(
    get_settings(),
    storage_backend="memory",
    blob_backend="memory",
    log_dir=str(tmp_path / "logs"),
    openai_api_key=None,
    transcription_timeout_seconds=0.5,
    transcription_lease_seconds=60.0,
    generation_timeout_seconds=0.5,
    generation_lease_seconds=60.0,
    worker_poll_interval_seconds=0.01,
    worker_max_poll_interval_seconds=0.05,
    max_audio_bytes=1024,
    operator_accounts=frozenset({"ops-1"}),
  )
