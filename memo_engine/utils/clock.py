"""Clock helpers so stores and services can be driven by a fake clock in tests."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utc_now() -> datetime:
  return datetime.now(UTC)
