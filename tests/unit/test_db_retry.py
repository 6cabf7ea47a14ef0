from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from memo_engine.utils.db_retry import classify_db_failure, execute_with_retry


class _DriverError(Exception):
  def __init__(self, message: str, sqlstate: str | None = None) -> None:
    super().__init__(message)
    self.sqlstate = sqlstate


def test_classifies_by_sqlstate_first() -> None:
  serialization = classify_db_failure(OperationalError("UPDATE jobs", {}, _DriverError("could not serialize", "40001")))
  assert serialization.retryable
  assert serialization.category == "serialization_conflict"
  assert serialization.sqlstate == "40001"

  duplicate = classify_db_failure(IntegrityError("INSERT INTO jobs", {}, _DriverError("duplicate key", "23505")))
  assert not duplicate.retryable
  assert duplicate.category == "integrity_error"


def test_connection_errors_without_sqlstate_are_transient() -> None:
  assert classify_db_failure(OperationalError("SELECT 1", {}, _DriverError("connection reset by peer"))).retryable
  assert classify_db_failure(ConnectionResetError()).retryable
  assert classify_db_failure(TimeoutError()).retryable
  assert not classify_db_failure(OperationalError("SELECT 1", {}, _DriverError("disk quota"))).retryable
  assert not classify_db_failure(ValueError("bad input")).retryable


@pytest.mark.anyio
async def test_execute_with_retry_recovers_from_transient_failures() -> None:
  calls = 0

  async def _flaky() -> str:
    nonlocal calls
    calls += 1
    if calls < 3:
      raise ConnectionResetError("reset")
    return "ok"

  assert await execute_with_retry(operation_name="jobs.lease", func=_flaky, max_attempts=3, initial_backoff_ms=1, jitter=False) == "ok"
  assert calls == 3


@pytest.mark.anyio
async def test_execute_with_retry_raises_permanent_errors_immediately() -> None:
  calls = 0

  async def _broken() -> None:
    nonlocal calls
    calls += 1
    raise ValueError("bad payload")

  with pytest.raises(ValueError):
    await execute_with_retry(operation_name="jobs.enqueue", func=_broken, initial_backoff_ms=1)
  assert calls == 1


@pytest.mark.anyio
async def test_execute_with_retry_gives_up_after_max_attempts() -> None:
  calls = 0

  async def _down() -> None:
    nonlocal calls
    calls += 1
    raise ConnectionRefusedError("down")

  with pytest.raises(ConnectionRefusedError):
    await execute_with_retry(operation_name="jobs.ack", func=_down, max_attempts=2, initial_backoff_ms=1)
  assert calls == 2
