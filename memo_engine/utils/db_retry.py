"""Retry helper for idempotent store operations with transient vs permanent failure classification."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLSTATE codes worth another attempt: serialization failure, deadlock, admin shutdown, connection failures.
_RETRYABLE_SQLSTATES: dict[str, str] = {
  "40001": "serialization_conflict",
  "40P01": "deadlock",
  "57P01": "admin_shutdown",
  "08000": "connectivity_error",
  "08003": "connectivity_error",
  "08006": "connectivity_error",
}

# SQLSTATE classes that will fail the same way on every attempt.
_PERMANENT_SQLSTATE_CLASSES: dict[str, str] = {
  "23": "integrity_error",
  "42": "schema_error",
  "28": "permission_error",
}

_CONNECTIVITY_PATTERNS = ("connection", "timeout", "reset", "network", "broken pipe", "closed")


@dataclass(frozen=True)
class DBFailureClassification:
  """Classification result for a store failure."""

  retryable: bool
  category: str
  sqlstate: str | None = None


def _extract_sqlstate(exc: BaseException) -> str | None:
  """Extract the Postgres SQLSTATE from a wrapped driver exception."""
  if not isinstance(exc, DBAPIError):
    return None
  orig = getattr(exc, "orig", None)
  for attribute in ("sqlstate", "pgcode"):
    value = getattr(orig, attribute, None)
    if value:
      return str(value)
  return None


def classify_db_failure(exc: BaseException) -> DBFailureClassification:
  """Decide whether a failed store call may succeed on a later attempt.

  SQLSTATE is the primary signal. Without one, connection-level driver errors are treated as
  transient and everything else (integrity violations, programming errors, unknown exceptions)
  as permanent.
  """
  sqlstate = _extract_sqlstate(exc)
  if sqlstate:
    if sqlstate in _RETRYABLE_SQLSTATES:
      return DBFailureClassification(retryable=True, category=_RETRYABLE_SQLSTATES[sqlstate], sqlstate=sqlstate)
    category = _PERMANENT_SQLSTATE_CLASSES.get(sqlstate[:2])
    if category is not None:
      return DBFailureClassification(retryable=False, category=category, sqlstate=sqlstate)

  if isinstance(exc, IntegrityError):
    return DBFailureClassification(retryable=False, category="integrity_error", sqlstate=sqlstate)

  if isinstance(exc, (OperationalError, InterfaceError)):
    if getattr(exc, "connection_invalidated", False):
      return DBFailureClassification(retryable=True, category="connectivity_error", sqlstate=sqlstate)
    message = str(exc).lower()
    if any(pattern in message for pattern in _CONNECTIVITY_PATTERNS):
      return DBFailureClassification(retryable=True, category="connectivity_error", sqlstate=sqlstate)
    return DBFailureClassification(retryable=False, category="operational_error_unknown", sqlstate=sqlstate)

  if isinstance(exc, (ConnectionError, OSError)):
    return DBFailureClassification(retryable=True, category="connectivity_error", sqlstate=sqlstate)

  return DBFailureClassification(retryable=False, category=f"unclassified:{type(exc).__name__}", sqlstate=sqlstate)


async def execute_with_retry(*, operation_name: str, func: Callable[[], Awaitable[T]], max_attempts: int = 3, initial_backoff_ms: int = 100, max_backoff_ms: int = 2000, jitter: bool = True) -> T:
  """
  Run an idempotent store operation, retrying transient failures with exponential backoff.

  Args:
    operation_name: Label used in logs (e.g., "jobs.ack").
    func: Zero-argument coroutine factory; called once per attempt.
    max_attempts: Total attempts including the first one.
    initial_backoff_ms: Delay before the first retry.
    max_backoff_ms: Upper bound for any single delay.
    jitter: Spread retries by +/-25% so concurrent workers do not retry in lockstep.

  Raises:
    The last exception when it is permanent or attempts are exhausted.
  """
  attempt = 0
  while True:
    attempt += 1
    try:
      result = await func()
    except Exception as exc:
      classification = classify_db_failure(exc)
      logger.warning(
        "Store operation failed: operation=%s, attempt=%d/%d, category=%s, sqlstate=%s, retryable=%s",
        operation_name,
        attempt,
        max_attempts,
        classification.category,
        classification.sqlstate or "none",
        classification.retryable,
        exc_info=not classification.retryable,
      )
      if not classification.retryable or attempt >= max_attempts:
        raise

      backoff_ms = min(initial_backoff_ms * (2 ** (attempt - 1)), max_backoff_ms)
      if jitter:
        backoff_ms += random.uniform(-backoff_ms * 0.25, backoff_ms * 0.25)
      await asyncio.sleep(backoff_ms / 1000.0)
      continue

    if attempt > 1:
      logger.info("Store operation succeeded after retry: operation=%s, attempt=%d/%d", operation_name, attempt, max_attempts)
    return result
