"""Postgres-backed usage repository using SQLAlchemy upserts."""

from __future__ import annotations

from datetime import date

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from memo_engine.core.database import require_session_factory
from memo_engine.schema.usage import UsageAccount, UsageCounter, UsageLog
from memo_engine.storage.usage_repo import UsageAccountRecord, UsageRepository


class PostgresUsageRepository(UsageRepository):
  def __init__(self, *, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._session_factory = session_factory or require_session_factory()

  async def get_account(self, account_id: str) -> UsageAccountRecord | None:
    async with self._session_factory() as session:
      row = await session.get(UsageAccount, account_id)
      if row is None:
        return None
      return UsageAccountRecord(account_id=row.account_id, tier=row.tier, monthly_minutes_override=row.monthly_minutes_override)

  async def upsert_account(self, account_id: str, *, tier: str, monthly_minutes_override: int | None = None) -> UsageAccountRecord:
    async with self._session_factory() as session:
      stmt = pg_insert(UsageAccount).values(account_id=account_id, tier=tier.upper(), monthly_minutes_override=monthly_minutes_override)
      stmt = stmt.on_conflict_do_update(index_elements=[UsageAccount.account_id], set_={"tier": stmt.excluded.tier, "monthly_minutes_override": stmt.excluded.monthly_minutes_override})
      await session.execute(stmt)
      await session.commit()
    return UsageAccountRecord(account_id=account_id, tier=tier.upper(), monthly_minutes_override=monthly_minutes_override)

  async def get_minutes_used(self, account_id: str, period_start: date) -> int:
    async with self._session_factory() as session:
      stmt = select(UsageCounter.minutes_used).where(UsageCounter.account_id == account_id, UsageCounter.period_start == period_start)
      value = (await session.execute(stmt)).scalar_one_or_none()
      return int(value or 0)

  async def record_usage(self, *, account_id: str, period_start: date, idempotency_key: str, memo_id: str, minutes: int) -> bool:
    async with self._session_factory() as session:
      # The log insert and the counter bump share one transaction so a repeat key never double counts.
      log_stmt = pg_insert(UsageLog).values(idempotency_key=idempotency_key, account_id=account_id, memo_id=memo_id, period_start=period_start, minutes=minutes).on_conflict_do_nothing(index_elements=[UsageLog.idempotency_key]).returning(UsageLog.id)
      inserted = (await session.execute(log_stmt)).scalar_one_or_none()
      if inserted is None:
        await session.rollback()
        return False
      counter_stmt = pg_insert(UsageCounter).values(account_id=account_id, period_start=period_start, minutes_used=minutes)
      counter_stmt = counter_stmt.on_conflict_do_update(index_elements=[UsageCounter.account_id, UsageCounter.period_start], set_={"minutes_used": UsageCounter.minutes_used + minutes})
      await session.execute(counter_stmt)
      await session.commit()
      return True
