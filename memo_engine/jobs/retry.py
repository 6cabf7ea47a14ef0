"""Bounded retry with exponential backoff for pipeline jobs."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from memo_engine.config import Settings


class PermanentStageError(RuntimeError):
  """Stage failure that will not succeed on a later attempt (quota, oversize payload, invalid input)."""


@dataclass(frozen=True)
class RetryPolicy:
  """Attempt budget and delay schedule applied by the job store on failure.

  The delay after the n-th failed attempt is ``base * 2**(n-1)`` capped at ``max_delay_seconds``,
  so the default schedule is 2s then 4s before the third and final attempt. Permanent errors use
  the same counter unless ``fail_fast_permanent`` is set.
  """

  max_attempts: int = 3
  base_delay_seconds: float = 2.0
  max_delay_seconds: float = 300.0
  fail_fast_permanent: bool = False

  def __post_init__(self) -> None:
    if self.max_attempts < 1:
      raise ValueError("max_attempts must be at least 1")
    if self.base_delay_seconds <= 0 or self.max_delay_seconds < self.base_delay_seconds:
      raise ValueError("backoff bounds must satisfy 0 < base <= max")

  @classmethod
  def from_settings(cls, settings: Settings) -> RetryPolicy:
    return cls(max_attempts=settings.job_max_attempts, base_delay_seconds=settings.job_backoff_base_seconds, max_delay_seconds=settings.job_backoff_max_seconds, fail_fast_permanent=settings.fail_fast_permanent_errors)

  def backoff_delay(self, attempts_made: int) -> timedelta:
    """Delay before the next attempt, given how many attempts have failed so far."""
    exponent = max(attempts_made, 1) - 1
    seconds = min(self.base_delay_seconds * (2**exponent), self.max_delay_seconds)
    return timedelta(seconds=seconds)

  def is_retryable(self, exc: BaseException) -> bool:
    """Whether a failure should consume an attempt and be retried rather than dead-lettered immediately."""
    if self.fail_fast_permanent and isinstance(exc, PermanentStageError):
      return False
    return True

  def has_attempts_left(self, attempts_made: int, max_attempts: int | None = None) -> bool:
    return attempts_made < (max_attempts or self.max_attempts)
