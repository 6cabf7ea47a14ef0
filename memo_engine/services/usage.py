"""Monthly transcription-minute accounting and admission control."""

from __future__ import annotations

import datetime
import logging
from collections.abc import Mapping
from dataclasses import dataclass

from memo_engine.config import Settings
from memo_engine.storage.usage_repo import UsageRepository
from memo_engine.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)


class QuotaExceededError(RuntimeError):
  """Raised when an account has no processing minutes left this period."""

  def __init__(self, account_id: str, *, minutes_used: int, monthly_allotment: int) -> None:
    super().__init__(f"Monthly transcription limit reached ({minutes_used}/{monthly_allotment} minutes)")
    self.account_id = account_id
    self.minutes_used = minutes_used
    self.monthly_allotment = monthly_allotment


@dataclass(frozen=True)
class UsageSnapshot:
  """Usage of one account for the active period; ``monthly_allotment`` None means unlimited."""

  account_id: str
  tier: str
  period_start: datetime.date
  minutes_used: int
  monthly_allotment: int | None

  @property
  def remaining(self) -> int | None:
    if self.monthly_allotment is None:
      return None
    return max(self.monthly_allotment - self.minutes_used, 0)

  @property
  def exhausted(self) -> bool:
    return self.monthly_allotment is not None and self.minutes_used >= self.monthly_allotment


def period_start_date(*, now: datetime.datetime) -> datetime.date:
  """Return the first day of the UTC month containing ``now``."""
  if now.tzinfo is None:
    raise ValueError("now must be timezone-aware (UTC).")
  return now.astimezone(datetime.UTC).date().replace(day=1)


def usage_idempotency_key(memo_id: str, processing_attempt: int) -> str:
  return f"{memo_id}:{processing_attempt}"


class UsageAccounting:
  """Reads counters for admission and increments them once per successful transcription."""

  def __init__(self, repo: UsageRepository, *, tier_minutes: Mapping[str, int | None], default_tier: str = "FREE", clock: Clock | None = None) -> None:
    if default_tier not in tier_minutes:
      raise ValueError(f"Unknown default tier: {default_tier}")
    self._repo = repo
    self._tier_minutes = dict(tier_minutes)
    self._default_tier = default_tier
    self._clock = clock or utc_now

  @classmethod
  def from_settings(cls, repo: UsageRepository, settings: Settings, *, clock: Clock | None = None) -> UsageAccounting:
    return cls(repo, tier_minutes=settings.tier_monthly_minutes, default_tier=settings.default_tier, clock=clock)

  async def snapshot(self, account_id: str) -> UsageSnapshot:
    account = await self._repo.get_account(account_id)
    tier = account.tier if account is not None and account.tier in self._tier_minutes else self._default_tier
    allotment = self._tier_minutes[tier]
    if account is not None and account.monthly_minutes_override is not None:
      allotment = account.monthly_minutes_override
    period_start = period_start_date(now=self._clock())
    used = await self._repo.get_minutes_used(account_id, period_start)
    return UsageSnapshot(account_id=account_id, tier=tier, period_start=period_start, minutes_used=used, monthly_allotment=allotment)

  async def check_admission(self, account_id: str) -> UsageSnapshot:
    """Reject new work once the allotment is used up. A gate, not a reservation."""
    snapshot = await self.snapshot(account_id)
    if snapshot.exhausted:
      allotment = int(snapshot.monthly_allotment or 0)
      logger.info("Admission rejected for account %s: %d/%d minutes used", account_id, snapshot.minutes_used, allotment)
      raise QuotaExceededError(account_id, minutes_used=snapshot.minutes_used, monthly_allotment=allotment)
    return snapshot

  async def record_transcription(self, *, account_id: str, memo_id: str, processing_attempt: int, duration_minutes: int) -> bool:
    """Add transcribed minutes once per memo processing attempt; repeats return False."""
    if duration_minutes < 0:
      raise ValueError("duration_minutes must be >= 0")
    recorded = await self._repo.record_usage(account_id=account_id, period_start=period_start_date(now=self._clock()), idempotency_key=usage_idempotency_key(memo_id, processing_attempt), memo_id=memo_id, minutes=duration_minutes)
    if recorded:
      logger.info("Recorded %d minutes for account %s (memo %s attempt %d)", duration_minutes, account_id, memo_id, processing_attempt)
    else:
      logger.info("Usage for memo %s attempt %d already recorded; skipping", memo_id, processing_attempt)
    return recorded
