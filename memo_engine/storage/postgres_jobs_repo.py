"""Postgres-backed job store using SQLAlchemy with SKIP LOCKED leasing."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from memo_engine.core.database import require_session_factory
from memo_engine.jobs.models import STAGE_PRIORITY, DeadLetterRecord, FailOutcome, FailResult, JobRecord, Stage, build_payload, job_id_for, payload_from_json, payload_to_json
from memo_engine.jobs.retry import RetryPolicy
from memo_engine.schema.jobs import Job, JobDeadLetter
from memo_engine.storage.jobs_repo import AlreadyQueuedError, JobStore
from memo_engine.utils.clock import Clock, utc_now
from memo_engine.utils.ids import generate_lease_token

logger = logging.getLogger(__name__)


class PostgresJobStore(JobStore):
  """Persist pipeline jobs to Postgres; row locks make lease, ack and fail atomic."""

  def __init__(self, *, retry_policy: RetryPolicy | None = None, clock: Clock | None = None, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._retry_policy = retry_policy or RetryPolicy()
    self._clock = clock or utc_now
    self._session_factory = session_factory or require_session_factory()

  async def enqueue(self, stage: Stage, memo_id: str, *, processing_attempt: int = 1, priority: int | None = None) -> str:
    job_id = job_id_for(stage, memo_id)
    now = self._clock()
    payload = build_payload(stage, memo_id, processing_attempt)
    async with self._session_factory() as session:
      session.add(
        Job(
          job_id=job_id,
          stage=stage.value,
          memo_id=memo_id,
          processing_attempt=processing_attempt,
          payload_json=payload_to_json(payload),
          priority=int(priority if priority is not None else STAGE_PRIORITY[stage]),
          state="queued",
          attempts=0,
          max_attempts=self._retry_policy.max_attempts,
          errors_json=[],
          created_at=now,
          available_at=now,
        )
      )
      try:
        await session.commit()
      except IntegrityError as exc:
        await session.rollback()
        raise AlreadyQueuedError(job_id) from exc
    logger.debug("Enqueued job %s (attempt %d)", job_id, processing_attempt)
    return job_id

  async def lease(self, stage: Stage, worker_id: str, lease_seconds: float) -> JobRecord | None:
    now = self._clock()
    async with self._session_factory() as session:
      eligible = or_(Job.state == "queued", and_(Job.state == "leased", Job.lease_expires_at <= now))
      stmt = select(Job).where(Job.stage == stage.value, Job.available_at <= now, eligible).order_by(Job.priority.asc(), Job.available_at.asc(), Job.created_at.asc()).limit(1).with_for_update(skip_locked=True)
      row = (await session.execute(stmt)).scalar_one_or_none()
      if row is None:
        return None
      if row.state == "leased":
        logger.info("Re-leasing job %s after lease of %s expired", row.job_id, row.lease_owner)
      row.state = "leased"
      row.lease_owner = worker_id
      row.lease_token = generate_lease_token()
      row.lease_expires_at = now + timedelta(seconds=lease_seconds)
      await session.commit()
      return _model_to_record(row)

  async def ack(self, job_id: str, *, lease_token: str | None = None) -> bool:
    async with self._session_factory() as session:
      row = await self._locked_job(session, job_id)
      if row is None or not _token_matches(row, lease_token):
        return False
      await session.delete(row)
      await session.commit()
      return True

  async def fail(self, job_id: str, reason: str, *, lease_token: str | None = None, retryable: bool = True) -> FailResult:
    now = self._clock()
    async with self._session_factory() as session:
      row = await self._locked_job(session, job_id)
      if row is None or not _token_matches(row, lease_token):
        return FailResult(outcome=FailOutcome.STALE, job_id=job_id, attempts=row.attempts if row else 0)

      attempts = row.attempts + 1
      errors = [*list(row.errors_json or []), reason]
      if retryable and self._retry_policy.has_attempts_left(attempts, row.max_attempts):
        available_at = now + self._retry_policy.backoff_delay(attempts)
        row.state = "queued"
        row.attempts = attempts
        row.errors_json = errors
        row.last_error = reason
        row.available_at = available_at
        row.lease_owner = None
        row.lease_token = None
        row.lease_expires_at = None
        await session.commit()
        return FailResult(outcome=FailOutcome.RETRY_SCHEDULED, job_id=job_id, attempts=attempts, next_available_at=available_at)

      archived = self._archive(row, state="dead", attempts=attempts, errors=errors, last_error=reason, archived_at=now)
      session.add(archived)
      await session.delete(row)
      await session.commit()
      return FailResult(outcome=FailOutcome.DEAD_LETTERED, job_id=job_id, attempts=attempts, dead_letter=_dead_letter_to_record(archived))

  async def cancel(self, job_id: str, reason: str) -> DeadLetterRecord | None:
    now = self._clock()
    async with self._session_factory() as session:
      row = await self._locked_job(session, job_id)
      if row is None:
        return None
      archived = self._archive(row, state="canceled", attempts=row.attempts, errors=[*list(row.errors_json or []), reason], last_error=reason, archived_at=now)
      session.add(archived)
      await session.delete(row)
      await session.commit()
      return _dead_letter_to_record(archived)

  async def reap_expired_leases(self) -> int:
    now = self._clock()
    async with self._session_factory() as session:
      stmt = update(Job).where(Job.state == "leased", Job.lease_expires_at <= now).values(state="queued", lease_owner=None, lease_token=None, lease_expires_at=None)
      result = await session.execute(stmt)
      await session.commit()
      return int(result.rowcount or 0)

  async def get_job(self, job_id: str) -> JobRecord | None:
    async with self._session_factory() as session:
      row = await session.get(Job, job_id)
      return _model_to_record(row) if row is not None else None

  async def list_in_flight(self, stage: Stage | None = None) -> list[JobRecord]:
    async with self._session_factory() as session:
      stmt = select(Job).order_by(Job.created_at.asc())
      if stage is not None:
        stmt = stmt.where(Job.stage == stage.value)
      rows = (await session.execute(stmt)).scalars().all()
      return [_model_to_record(row) for row in rows]

  async def list_dead_letters(self, *, stage: Stage | None = None, memo_id: str | None = None, limit: int = 100) -> list[DeadLetterRecord]:
    async with self._session_factory() as session:
      stmt = select(JobDeadLetter).order_by(JobDeadLetter.archived_at.desc(), JobDeadLetter.id.desc()).limit(limit)
      if stage is not None:
        stmt = stmt.where(JobDeadLetter.stage == stage.value)
      if memo_id is not None:
        stmt = stmt.where(JobDeadLetter.memo_id == memo_id)
      rows = (await session.execute(stmt)).scalars().all()
      return [_dead_letter_to_record(row) for row in rows]

  async def _locked_job(self, session: AsyncSession, job_id: str) -> Job | None:
    stmt = select(Job).where(Job.job_id == job_id).with_for_update()
    return (await session.execute(stmt)).scalar_one_or_none()

  def _archive(self, row: Job, *, state: str, attempts: int, errors: list[str], last_error: str, archived_at: datetime) -> JobDeadLetter:
    return JobDeadLetter(
      job_id=row.job_id,
      stage=row.stage,
      memo_id=row.memo_id,
      processing_attempt=row.processing_attempt,
      payload_json=row.payload_json,
      state=state,
      attempts=attempts,
      max_attempts=row.max_attempts,
      last_error=last_error,
      errors_json=errors,
      created_at=row.created_at,
      archived_at=archived_at,
    )


def _token_matches(row: Job, lease_token: str | None) -> bool:
  return lease_token is None or row.lease_token == lease_token


def _model_to_record(row: Job) -> JobRecord:
  return JobRecord(
    job_id=row.job_id,
    stage=Stage(row.stage),
    payload=payload_from_json(row.payload_json),
    priority=row.priority,
    state="leased" if row.state == "leased" else "queued",
    attempts=row.attempts,
    max_attempts=row.max_attempts,
    created_at=row.created_at,
    available_at=row.available_at,
    lease_owner=row.lease_owner,
    lease_token=row.lease_token,
    lease_expires_at=row.lease_expires_at,
    last_error=row.last_error,
    errors=tuple(row.errors_json or ()),
  )


def _dead_letter_to_record(row: JobDeadLetter) -> DeadLetterRecord:
  return DeadLetterRecord(
    job_id=row.job_id,
    stage=Stage(row.stage),
    payload=payload_from_json(row.payload_json),
    state="canceled" if row.state == "canceled" else "dead",
    attempts=row.attempts,
    max_attempts=row.max_attempts,
    last_error=row.last_error,
    errors=tuple(row.errors_json or ()),
    created_at=row.created_at,
    archived_at=row.archived_at,
  )
