#!/usr/bin/env python3
"""
Worker process — runs every queue worker until SIGINT/SIGTERM.

Usage:
    python scripts/run_worker.py
    BOOKING_JOBS_CONFIG=config/prod.yaml python scripts/run_worker.py

On a signal the workers stop pulling new jobs and in-flight handlers run
to completion. Handlers still busy after queue.shutdown_timeout are
cancelled and their jobs are picked up again by recover_stalled on the
next start.
"""
import asyncio
import os
import signal
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog  # noqa: E402
from dotenv import load_dotenv  # noqa: E402

load_dotenv()

from config.settings import load_settings  # noqa: E402
from core.runtime import JobRuntime  # noqa: E402
from utils.logging import configure_logging  # noqa: E402

logger = structlog.get_logger()


async def run():
    settings = load_settings()
    configure_logging(settings.debug, settings.json_logs)

    runtime = JobRuntime(settings)
    await runtime.start()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop.set))

    logger.info("worker_process_ready", app=settings.app_name)
    await stop.wait()

    logger.info("worker_process_shutting_down")
    await runtime.stop()


def main():
    asyncio.run(run())


if __name__ == "__main__":
    main()
