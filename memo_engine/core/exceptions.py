import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from memo_engine.pipeline.state import InvalidStateError
from memo_engine.services.memos import AudioTooLargeError, EmptyAudioError
from memo_engine.services.usage import QuotaExceededError
from memo_engine.storage.jobs_repo import AlreadyQueuedError
from memo_engine.storage.memos_repo import MemoNotFoundError

logger = logging.getLogger("uvicorn.error")


def _coerce_json_safe(value: Any) -> Any:
  """Convert unsupported values into JSON-safe primitives for error responses."""
  if value is None or isinstance(value, bool | int | float | str):
    return value
  if isinstance(value, dict):
    return {str(key): _coerce_json_safe(item) for key, item in value.items()}
  if isinstance(value, list | tuple | set):
    return [_coerce_json_safe(item) for item in value]
  # Exceptions inside validation contexts are reduced to their type and message.
  if isinstance(value, BaseException):
    error_message = str(value)
    if error_message:
      return f"{type(value).__name__}: {error_message}"
    return type(value).__name__
  return str(value)


def _error_payload(detail: Any, *, request_id: str | None = None) -> dict[str, Any]:
  """Build a safe error payload that avoids leaking internal details to clients."""
  payload: dict[str, Any] = {"detail": detail}
  # Attach a request id so support can correlate client reports to server logs.
  if request_id:
    payload["requestId"] = request_id
  return payload


def _domain_error(code: str, message: str, **extra: Any) -> dict[str, Any]:
  return {"code": code, "message": message, **extra}


def _sanitize_validation_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
  """Return validation errors without raw input payloads."""
  sanitized: list[dict[str, Any]] = []
  for error in errors:
    scrubbed = {key: value for key, value in error.items() if key != "input"}
    if "ctx" in scrubbed and isinstance(scrubbed["ctx"], dict):
      scrubbed_ctx = dict(scrubbed["ctx"])
      scrubbed_ctx.pop("input", None)
      scrubbed["ctx"] = scrubbed_ctx

    sanitized.append(_coerce_json_safe(scrubbed))

  return sanitized


def _request_id(request: Request) -> str | None:
  return getattr(request.state, "request_id", None)


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
  """Global exception handler to catch unhandled errors."""
  request_id = _request_id(request)
  logger.error("Global exception request_id=%s path=%s error_type=%s", request_id, request.url.path, type(exc).__name__, exc_info=True)
  return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_error_payload("Internal Server Error", request_id=request_id))


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
  """Log request validation errors for debugging without leaking payloads."""
  request_id = _request_id(request)
  sanitized_errors = _sanitize_validation_errors(list(exc.errors()))
  logger.warning("Request validation failed request_id=%s path=%s method=%s errors=%s", request_id, request.url.path, request.method, sanitized_errors)
  return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_error_payload(sanitized_errors, request_id=request_id))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
  """Handle FastAPI HTTPExceptions while avoiding leaking internal diagnostics."""
  from memo_engine.config import get_settings

  request_id = _request_id(request)
  if exc.status_code >= 500:
    logger.error("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail, exc_info=True)
    return JSONResponse(status_code=exc.status_code, content=_error_payload("Internal Server Error", request_id=request_id))

  # Log 4xx HTTPExceptions when explicitly enabled for debugging.
  if get_settings().log_http_4xx:
    logger.warning("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail)

  return JSONResponse(status_code=exc.status_code, content=_error_payload(exc.detail, request_id=request_id), headers=getattr(exc, "headers", None))


async def quota_exceeded_exception_handler(request: Request, exc: QuotaExceededError) -> JSONResponse:
  """Reject work for accounts that used up their monthly minutes."""
  request_id = _request_id(request)
  logger.info("Quota exceeded request_id=%s account=%s used=%s allotment=%s", request_id, exc.account_id, exc.minutes_used, exc.monthly_allotment)
  detail = _domain_error("SUBSCRIPTION_LIMIT_EXCEEDED", str(exc), minutesUsed=exc.minutes_used, monthlyAllotment=exc.monthly_allotment)
  return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content=_error_payload(detail, request_id=request_id))


async def invalid_state_exception_handler(request: Request, exc: InvalidStateError) -> JSONResponse:
  request_id = _request_id(request)
  current = exc.status.value if exc.status is not None else None
  detail = _domain_error("INVALID_STATUS", str(exc), status=current)
  return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=_error_payload(detail, request_id=request_id))


async def already_queued_exception_handler(request: Request, exc: AlreadyQueuedError) -> JSONResponse:
  request_id = _request_id(request)
  detail = _domain_error("ALREADY_QUEUED", str(exc), jobId=exc.job_id)
  return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=_error_payload(detail, request_id=request_id))


async def not_found_exception_handler(request: Request, exc: MemoNotFoundError) -> JSONResponse:
  request_id = _request_id(request)
  return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=_error_payload(_domain_error("NOT_FOUND", "Memo not found"), request_id=request_id))


async def audio_upload_exception_handler(request: Request, exc: AudioTooLargeError | EmptyAudioError) -> JSONResponse:
  """Map rejected uploads to 413 (oversize) or 400 (empty)."""
  request_id = _request_id(request)
  if isinstance(exc, AudioTooLargeError):
    detail = _domain_error("PAYLOAD_TOO_LARGE", str(exc), limitBytes=exc.limit)
    return JSONResponse(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, content=_error_payload(detail, request_id=request_id))
  return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=_error_payload(_domain_error("EMPTY_AUDIO", str(exc)), request_id=request_id))
