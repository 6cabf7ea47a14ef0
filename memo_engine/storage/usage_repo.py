"""Usage repository contract: account tiers, monthly counters and the increment log."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Protocol


@dataclass(frozen=True)
class UsageAccountRecord:
  account_id: str
  tier: str
  monthly_minutes_override: int | None = None


class UsageRepository(Protocol):
  async def get_account(self, account_id: str) -> UsageAccountRecord | None:
    """Return the account tier record, if one exists."""

  async def upsert_account(self, account_id: str, *, tier: str, monthly_minutes_override: int | None = None) -> UsageAccountRecord:
    """Create or update an account tier record."""

  async def get_minutes_used(self, account_id: str, period_start: date) -> int:
    """Return minutes consumed in the period (0 when no counter exists)."""

  async def record_usage(self, *, account_id: str, period_start: date, idempotency_key: str, memo_id: str, minutes: int) -> bool:
    """Add minutes to the period counter once per idempotency key. Returns False for a repeat."""
