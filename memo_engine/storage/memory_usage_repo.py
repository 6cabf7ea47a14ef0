"""In-process usage repository for tests and single-process local runs."""

from __future__ import annotations

import asyncio
from datetime import date

from memo_engine.storage.usage_repo import UsageAccountRecord, UsageRepository


class InMemoryUsageRepository(UsageRepository):
  def __init__(self) -> None:
    self._accounts: dict[str, UsageAccountRecord] = {}
    self._counters: dict[tuple[str, date], int] = {}
    self._keys: set[str] = set()
    self._lock = asyncio.Lock()

  async def get_account(self, account_id: str) -> UsageAccountRecord | None:
    return self._accounts.get(account_id)

  async def upsert_account(self, account_id: str, *, tier: str, monthly_minutes_override: int | None = None) -> UsageAccountRecord:
    record = UsageAccountRecord(account_id=account_id, tier=tier.upper(), monthly_minutes_override=monthly_minutes_override)
    self._accounts[account_id] = record
    return record

  async def get_minutes_used(self, account_id: str, period_start: date) -> int:
    return self._counters.get((account_id, period_start), 0)

  async def record_usage(self, *, account_id: str, period_start: date, idempotency_key: str, memo_id: str, minutes: int) -> bool:
    async with self._lock:
      if idempotency_key in self._keys:
        return False
      self._keys.add(idempotency_key)
      key = (account_id, period_start)
      self._counters[key] = self._counters.get(key, 0) + minutes
      return True
