"""In-process job store for tests and single-process local runs."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import timedelta

from memo_engine.jobs.models import STAGE_PRIORITY, DeadLetterRecord, FailOutcome, FailResult, JobRecord, Stage, build_payload, job_id_for
from memo_engine.jobs.retry import RetryPolicy
from memo_engine.storage.jobs_repo import AlreadyQueuedError, JobStore
from memo_engine.utils.clock import Clock, utc_now
from memo_engine.utils.ids import generate_lease_token

logger = logging.getLogger(__name__)


class InMemoryJobStore(JobStore):
  """Dict-backed job store; a single asyncio lock serializes every mutation."""

  def __init__(self, *, retry_policy: RetryPolicy | None = None, clock: Clock | None = None) -> None:
    self._retry_policy = retry_policy or RetryPolicy()
    self._clock = clock or utc_now
    self._jobs: dict[str, JobRecord] = {}
    self._dead_letters: list[DeadLetterRecord] = []
    self._lock = asyncio.Lock()

  async def enqueue(self, stage: Stage, memo_id: str, *, processing_attempt: int = 1, priority: int | None = None) -> str:
    job_id = job_id_for(stage, memo_id)
    async with self._lock:
      if job_id in self._jobs:
        raise AlreadyQueuedError(job_id)
      now = self._clock()
      self._jobs[job_id] = JobRecord(
        job_id=job_id,
        stage=stage,
        payload=build_payload(stage, memo_id, processing_attempt),
        priority=int(priority if priority is not None else STAGE_PRIORITY[stage]),
        state="queued",
        attempts=0,
        max_attempts=self._retry_policy.max_attempts,
        created_at=now,
        available_at=now,
      )
    logger.debug("Enqueued job %s (attempt %d)", job_id, processing_attempt)
    return job_id

  async def lease(self, stage: Stage, worker_id: str, lease_seconds: float) -> JobRecord | None:
    async with self._lock:
      now = self._clock()
      eligible = [job for job in self._jobs.values() if job.stage == stage and job.is_eligible(now)]
      if not eligible:
        return None
      job = min(eligible, key=lambda item: (item.priority, item.available_at, item.created_at))
      leased = replace(job, state="leased", lease_owner=worker_id, lease_token=generate_lease_token(), lease_expires_at=now + timedelta(seconds=lease_seconds))
      self._jobs[job.job_id] = leased
      return leased

  async def ack(self, job_id: str, *, lease_token: str | None = None) -> bool:
    async with self._lock:
      job = self._jobs.get(job_id)
      if job is None or not _token_matches(job, lease_token):
        return False
      del self._jobs[job_id]
      return True

  async def fail(self, job_id: str, reason: str, *, lease_token: str | None = None, retryable: bool = True) -> FailResult:
    async with self._lock:
      job = self._jobs.get(job_id)
      if job is None or not _token_matches(job, lease_token):
        return FailResult(outcome=FailOutcome.STALE, job_id=job_id, attempts=job.attempts if job else 0)

      now = self._clock()
      attempts = job.attempts + 1
      errors = (*job.errors, reason)
      if retryable and self._retry_policy.has_attempts_left(attempts, job.max_attempts):
        available_at = now + self._retry_policy.backoff_delay(attempts)
        self._jobs[job_id] = replace(job, state="queued", attempts=attempts, available_at=available_at, lease_owner=None, lease_token=None, lease_expires_at=None, last_error=reason, errors=errors)
        return FailResult(outcome=FailOutcome.RETRY_SCHEDULED, job_id=job_id, attempts=attempts, next_available_at=available_at)

      del self._jobs[job_id]
      dead_letter = DeadLetterRecord(job_id=job_id, stage=job.stage, payload=job.payload, state="dead", attempts=attempts, max_attempts=job.max_attempts, last_error=reason, errors=errors, created_at=job.created_at, archived_at=now)
      self._dead_letters.append(dead_letter)
      return FailResult(outcome=FailOutcome.DEAD_LETTERED, job_id=job_id, attempts=attempts, dead_letter=dead_letter)

  async def cancel(self, job_id: str, reason: str) -> DeadLetterRecord | None:
    async with self._lock:
      job = self._jobs.pop(job_id, None)
      if job is None:
        return None
      record = DeadLetterRecord(job_id=job_id, stage=job.stage, payload=job.payload, state="canceled", attempts=job.attempts, max_attempts=job.max_attempts, last_error=reason, errors=(*job.errors, reason), created_at=job.created_at, archived_at=self._clock())
      self._dead_letters.append(record)
      return record

  async def reap_expired_leases(self) -> int:
    async with self._lock:
      now = self._clock()
      expired = [job for job in self._jobs.values() if job.lease_expired(now)]
      for job in expired:
        self._jobs[job.job_id] = replace(job, state="queued", lease_owner=None, lease_token=None, lease_expires_at=None)
      return len(expired)

  async def get_job(self, job_id: str) -> JobRecord | None:
    return self._jobs.get(job_id)

  async def list_in_flight(self, stage: Stage | None = None) -> list[JobRecord]:
    jobs = [job for job in self._jobs.values() if stage is None or job.stage == stage]
    return sorted(jobs, key=lambda item: item.created_at)

  async def list_dead_letters(self, *, stage: Stage | None = None, memo_id: str | None = None, limit: int = 100) -> list[DeadLetterRecord]:
    records = [record for record in reversed(self._dead_letters) if (stage is None or record.stage == stage) and (memo_id is None or record.memo_id == memo_id)]
    return records[:limit]


def _token_matches(job: JobRecord, lease_token: str | None) -> bool:
  return lease_token is None or job.lease_token == lease_token

