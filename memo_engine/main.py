from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from memo_engine.api.routes import jobs, memos, usage
from memo_engine.config import get_settings
from memo_engine.core.exceptions import (
  already_queued_exception_handler,
  audio_upload_exception_handler,
  global_exception_handler,
  http_exception_handler,
  invalid_state_exception_handler,
  not_found_exception_handler,
  quota_exceeded_exception_handler,
  request_validation_exception_handler,
)
from memo_engine.core.lifespan import lifespan
from memo_engine.core.middleware import RequestLoggingMiddleware
from memo_engine.pipeline.state import InvalidStateError
from memo_engine.services.memos import AudioTooLargeError, EmptyAudioError
from memo_engine.services.usage import QuotaExceededError
from memo_engine.storage.jobs_repo import AlreadyQueuedError
from memo_engine.storage.memos_repo import MemoNotFoundError

settings = get_settings()

app = FastAPI(title="Memo Engine", lifespan=lifespan, docs_url="/docs" if settings.debug else None, redoc_url=None)

app.add_middleware(CORSMiddleware, allow_origins=list(settings.allowed_origins), allow_credentials=True, allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"], allow_headers=["content-type", "authorization", "x-account-id"], expose_headers=["content-length", "x-request-id"])

# Add exception handlers
app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
app.add_exception_handler(QuotaExceededError, quota_exceeded_exception_handler)
app.add_exception_handler(InvalidStateError, invalid_state_exception_handler)
app.add_exception_handler(AlreadyQueuedError, already_queued_exception_handler)
app.add_exception_handler(MemoNotFoundError, not_found_exception_handler)
app.add_exception_handler(AudioTooLargeError, audio_upload_exception_handler)
app.add_exception_handler(EmptyAudioError, audio_upload_exception_handler)

# Add middleware
app.add_middleware(RequestLoggingMiddleware)


@app.get("/health", include_in_schema=False)
async def health_check() -> dict[str, str]:
  """Return a simple health status."""
  return {"status": "ok", "version": "0.1.0"}


app.include_router(memos.router, prefix="/v1/memos", tags=["memos"])
app.include_router(jobs.router, prefix="/v1/jobs", tags=["jobs"])
app.include_router(usage.router, prefix="/v1/usage", tags=["usage"])
