"""
run_worker.py
-------------
Standalone worker process: pulls message jobs from Redis and writes AI
replies back to the database.

Run as many of these as needed; the queue's leases make sure each job is
processed by one worker at a time. SIGINT / SIGTERM trigger a graceful stop
that lets in-flight jobs finish.

Usage:
    python run_worker.py
"""

import asyncio
import signal

from chatroom_ai.core.config import settings
from chatroom_ai.core.context import AppContext
from chatroom_ai.core.logging import configure_logging, get_logger

logger = get_logger(__name__)


async def run() -> None:
    configure_logging(process="worker")
    context = await AppContext.create(settings)
    pool = context.build_worker_pool()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await pool.start()
    logger.info("Queue worker is running", queue=context.queue.name)
    try:
        await stop.wait()
        logger.info("Shutdown signal received, stopping worker pool")
    finally:
        await pool.stop()
        await context.close()


if __name__ == "__main__":
    asyncio.run(run())
