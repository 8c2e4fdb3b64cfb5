"""Standalone worker: listeners and the deadline monitor without the API.

Run with:
    escrow-sync-worker
or
    python -m escrow_sync.worker

SIGINT/SIGTERM stop every listener (queued batches are finished first), the
monitor and the chain clients before the process exits.
"""

from __future__ import annotations

import asyncio
import signal

from escrow_sync.config import get_settings
from escrow_sync.infrastructure.database.engine import close_db, init_db
from escrow_sync.logging_config import get_logger, setup_logging
from escrow_sync.runtime import SyncRuntime


async def run_worker() -> None:
    settings = get_settings()
    setup_logging(log_level=settings.app_log_level, json_logs=not settings.is_development)
    logger = get_logger(__name__)

    await init_db()
    runtime = SyncRuntime(settings)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await runtime.start()
        logger.info("worker.running", listeners=len(runtime.supervisor.listeners))
        await stop_event.wait()
        logger.info("worker.shutdown_requested")
    finally:
        await runtime.stop()
        await close_db()
        logger.info("worker.stopped")


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
