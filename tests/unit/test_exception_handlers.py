"""Unit tests for API error mapping and sanitization behavior."""

from __future__ import annotations

import json

import pytest
from starlette.requests import Request

from memo_engine.core.exceptions import (
  _sanitize_validation_errors,
  already_queued_exception_handler,
  audio_upload_exception_handler,
  global_exception_handler,
  invalid_state_exception_handler,
  not_found_exception_handler,
  quota_exceeded_exception_handler,
)
from memo_engine.pipeline.state import InvalidStateError, MemoStatus
from memo_engine.services.memos import AudioTooLargeError, EmptyAudioError
from memo_engine.services.usage import QuotaExceededError
from memo_engine.storage.jobs_repo import AlreadyQueuedError
from memo_engine.storage.memos_repo import MemoNotFoundError


def _request() -> Request:
  return Request({"type": "http", "method": "POST", "path": "/v1/memos/memo-1/audio", "headers": [], "query_string": b"", "state": {"request_id": "req-123"}})


def test_sanitize_validation_errors_removes_input_and_serializes_exception_ctx() -> None:
  """Ensure validation errors stay JSON-serializable and redact raw request payloads."""
  errors = [{"type": "value_error", "loc": ("body", "meeting_date"), "msg": "Value error, meeting date is in the future", "input": "2999-01-01", "ctx": {"error": ValueError("meeting date is in the future"), "input": "2999-01-01"}}]
  sanitized = _sanitize_validation_errors(errors)
  assert "input" not in sanitized[0]
  assert sanitized[0]["loc"] == ["body", "meeting_date"]
  assert sanitized[0]["ctx"]["error"] == "ValueError: meeting date is in the future"
  assert "input" not in sanitized[0]["ctx"]


@pytest.mark.anyio
async def test_quota_error_maps_to_403_with_usage() -> None:
  response = await quota_exceeded_exception_handler(_request(), QuotaExceededError("acct-1", minutes_used=120, monthly_allotment=120))
  body = json.loads(response.body)
  assert response.status_code == 403
  assert body["requestId"] == "req-123"
  assert body["detail"]["code"] == "SUBSCRIPTION_LIMIT_EXCEEDED"
  assert body["detail"]["minutesUsed"] == 120
  assert body["detail"]["monthlyAllotment"] == 120


@pytest.mark.anyio
async def test_conflicts_map_to_409() -> None:
  response = await invalid_state_exception_handler(_request(), InvalidStateError("Memo memo-1 is TRANSCRIBING", memo_id="memo-1", status=MemoStatus.TRANSCRIBING))
  body = json.loads(response.body)
  assert response.status_code == 409
  assert body["detail"]["code"] == "INVALID_STATUS"
  assert body["detail"]["status"] == "TRANSCRIBING"

  response = await already_queued_exception_handler(_request(), AlreadyQueuedError("transcribe:memo-1"))
  body = json.loads(response.body)
  assert response.status_code == 409
  assert body["detail"] == {"code": "ALREADY_QUEUED", "message": "Job transcribe:memo-1 is already queued or running", "jobId": "transcribe:memo-1"}


@pytest.mark.anyio
async def test_not_found_and_upload_errors() -> None:
  response = await not_found_exception_handler(_request(), MemoNotFoundError("memo-1"))
  assert response.status_code == 404
  assert json.loads(response.body)["detail"]["message"] == "Memo not found"

  response = await audio_upload_exception_handler(_request(), AudioTooLargeError(2048, 1024))
  assert response.status_code == 413
  assert json.loads(response.body)["detail"]["limitBytes"] == 1024

  response = await audio_upload_exception_handler(_request(), EmptyAudioError())
  assert response.status_code == 400
  assert json.loads(response.body)["detail"]["code"] == "EMPTY_AUDIO"


@pytest.mark.anyio
async def test_unhandled_errors_do_not_leak_details() -> None:
  response = await global_exception_handler(_request(), RuntimeError("password=hunter2"))
  body = json.loads(response.body)
  assert response.status_code == 500
  assert body == {"detail": "Internal Server Error", "requestId": "req-123"}
