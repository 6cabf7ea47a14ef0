import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from memo_engine.core.database import dispose_engine
from memo_engine.core.logging import initialize_logging
from memo_engine.jobs.worker import WorkerPoolHandle
from memo_engine.runtime import build_runtime
from memo_engine.services.storage_client import GcsBlobStore


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Build the runtime once per process and, when enabled, run the worker pools in-process."""
  from memo_engine.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("memo_engine.core.lifespan")

  initialize_logging(settings, process_label="api")
  logger.info("Startup complete - logging verified.")

  # Tests install a prebuilt runtime before the app starts.
  runtime = getattr(app.state, "runtime", None)
  if runtime is None:
    runtime = build_runtime(settings, with_handlers=settings.run_workers_in_api)
    app.state.runtime = runtime

  # Ensure the audio bucket exists before the first upload arrives.
  if isinstance(runtime.blob_store, GcsBlobStore):
    try:
      await runtime.blob_store.ensure_bucket()
      logger.info("Audio bucket ensured: %s", runtime.blob_store.bucket_name)
    except Exception as exc:  # noqa: BLE001
      logger.warning("Failed to ensure audio bucket at startup: %s", exc)

  worker_handle: WorkerPoolHandle | None = None
  if settings.run_workers_in_api:
    worker_handle = runtime.start_workers(worker_prefix="api-worker")
    logger.info("In-process worker pools started (%d slots)", len(worker_handle.tasks))

  try:
    yield
  finally:
    if worker_handle is not None:
      await worker_handle.shutdown(grace_seconds=settings.worker_shutdown_grace_seconds)
    await dispose_engine()
    logger.info("Shutdown complete.")
