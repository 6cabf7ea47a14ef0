"""Standalone worker process: runs the transcription and generation pools until signaled."""

from __future__ import annotations

import asyncio
import logging
import signal

from memo_engine.config import get_settings
from memo_engine.core.database import dispose_engine
from memo_engine.core.logging import initialize_logging
from memo_engine.runtime import build_runtime

logger = logging.getLogger("memo_engine.worker_main")


async def run_worker() -> None:
  """Start the pools, wait for SIGINT/SIGTERM, then drain in-flight jobs."""
  settings = get_settings()
  initialize_logging(settings, process_label="worker")
  runtime = build_runtime(settings)

  stop_requested = asyncio.Event()
  loop = asyncio.get_running_loop()
  # Signals only flag the stop; the shutdown itself runs on the loop below.
  for signum in (signal.SIGINT, signal.SIGTERM):
    loop.add_signal_handler(signum, stop_requested.set)

  handle = runtime.start_workers(worker_prefix="worker")
  logger.info("Worker process started with %d slots", len(handle.tasks))
  try:
    await stop_requested.wait()
    logger.info("Shutdown requested; waiting up to %.0fs for in-flight jobs", settings.worker_shutdown_grace_seconds)
  finally:
    await handle.shutdown(grace_seconds=settings.worker_shutdown_grace_seconds)
    await dispose_engine()
    logger.info("Worker process stopped")


def main() -> None:
  asyncio.run(run_worker())


if __name__ == "__main__":
  main()
