"""Job store contract shared by the Postgres and in-process implementations."""

from __future__ import annotations

from typing import Protocol

from memo_engine.jobs.models import DeadLetterRecord, FailResult, JobRecord, Stage


class AlreadyQueuedError(RuntimeError):
  """An active job already exists for this memo and stage."""

  def __init__(self, job_id: str) -> None:
    super().__init__(f"Job {job_id} is already queued or running")
    self.job_id = job_id


class JobStore(Protocol):
  """Durable queue keyed by ``{stage}:{memo_id}`` with leases, acks and bounded retries.

  ``ack``, ``fail`` and ``cancel`` take the lease token handed out by ``lease``; a token that no
  longer matches (the lease expired and another worker took the job) turns the call into a
  no-op. Passing ``None`` skips the token check.
  """

  async def enqueue(self, stage: Stage, memo_id: str, *, processing_attempt: int = 1, priority: int | None = None) -> str:
    """Create the job or raise AlreadyQueuedError when one is active."""

  async def lease(self, stage: Stage, worker_id: str, lease_seconds: float) -> JobRecord | None:
    """Atomically claim the next eligible job of a stage, or return None."""

  async def ack(self, job_id: str, *, lease_token: str | None = None) -> bool:
    """Remove a completed job. Returns False when there was nothing to remove."""

  async def fail(self, job_id: str, reason: str, *, lease_token: str | None = None, retryable: bool = True) -> FailResult:
    """Record a failed attempt and either reschedule the job or dead-letter it."""

  async def cancel(self, job_id: str, reason: str) -> DeadLetterRecord | None:
    """Archive an active job as canceled without counting an attempt."""

  async def reap_expired_leases(self) -> int:
    """Return jobs whose lease deadline passed to the queue; returns how many were released."""

  async def get_job(self, job_id: str) -> JobRecord | None:
    """Return the active job with this id, if any."""

  async def list_in_flight(self, stage: Stage | None = None) -> list[JobRecord]:
    """Return queued and leased jobs, oldest first."""

  async def list_dead_letters(self, *, stage: Stage | None = None, memo_id: str | None = None, limit: int = 100) -> list[DeadLetterRecord]:
    """Return archived jobs, newest first."""
