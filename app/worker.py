"""
Appointment reminder worker.

Consumes due reminder jobs from the Redis delayed job store and hands them to
the notification deliverer. Run alongside the API:

    python -m app.worker
"""

import asyncio
import signal
from datetime import timedelta

import structlog

from app.config import settings
from app.core.job_store import RedisDelayedJobStore
from app.core.redis_client import create_redis_client
from app.middleware.logging import configure_logging
from app.services.notification_worker import (
    LoggingNotificationDeliverer,
    NotificationWorker,
)

logger = structlog.get_logger(__name__)


def build_worker(redis_client) -> NotificationWorker:
    """Build a notification worker from settings."""
    store = RedisDelayedJobStore(redis_client, settings.notification_queue_name)
    return NotificationWorker(
        store,
        LoggingNotificationDeliverer(),
        poll_interval=settings.notification_worker_poll_interval,
        batch_size=settings.notification_worker_batch_size,
        stalled_after=timedelta(seconds=settings.notification_stalled_after),
    )


async def main() -> None:
    """Run the worker until SIGINT or SIGTERM."""
    redis_client = create_redis_client()
    worker = build_worker(redis_client)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.stop)

    logger.info("worker_starting", queue=settings.notification_queue_name)

    try:
        await worker.run()
    finally:
        await redis_client.aclose()
        logger.info("worker_redis_connection_closed")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(main())
