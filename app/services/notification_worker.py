"""Worker that delivers appointment reminders when their jobs become due."""

import asyncio
from datetime import timedelta
from typing import Any, Protocol

import structlog

from app.core.exceptions import DeliveryError
from app.core.job_store import DelayedJobStore, Job

logger = structlog.get_logger(__name__)


class NotificationDeliverer(Protocol):
    """Outbound channel for reminder messages."""

    async def deliver(self, payload: dict[str, Any]) -> None:
        """Send the reminder described by ``payload``.

        May be called more than once for the same reminder.
        """


class LoggingNotificationDeliverer:
    """Deliverer that only records the reminder in the log."""

    async def deliver(self, payload: dict[str, Any]) -> None:
        logger.info(
            "appointment_reminder_due",
            appointment_id=payload.get("appointment_id"),
            window=payload.get("window_label"),
            start_date=payload.get("start_date"),
        )


class NotificationWorker:
    """
    Drains due reminder jobs from the store and hands them to a deliverer.

    Delivery failures never escape ``process_job``; store failures never
    escape ``run``. Both are reported through the log.
    """

    def __init__(
        self,
        store: DelayedJobStore,
        deliverer: NotificationDeliverer,
        poll_interval: float = 1.0,
        batch_size: int = 50,
        stalled_after: timedelta = timedelta(minutes=5),
    ):
        """Initialize worker."""
        self.store = store
        self.deliverer = deliverer
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.stalled_after = stalled_after
        self._stopping = asyncio.Event()

    async def process_job(self, job: Job) -> bool:
        """
        Deliver one job and record the outcome in the store.

        Args:
            job: Claimed job

        Returns:
            True if delivery succeeded, False otherwise
        """
        try:
            await self.deliverer.deliver(job.payload)
        except Exception as e:
            error = DeliveryError(f"Failed to deliver notification: {e}", job_id=job.job_id)
            logger.error(
                "notification_delivery_failed",
                job_id=job.job_id,
                attempts_made=job.attempts_made,
                error=error.message,
            )
            await self.store.fail(job, error.message)
            return False

        logger.info("notification_delivered", job_id=job.job_id)
        await self.store.complete(job)
        return True

    async def process_due_jobs(self) -> int:
        """
        Claim and process one batch of due jobs.

        Returns:
            Number of jobs processed
        """
        await self.store.recover_stalled(self.stalled_after)

        jobs = await self.store.claim_due(self.batch_size)
        if not jobs:
            return 0

        results = await asyncio.gather(
            *(self.process_job(job) for job in jobs),
            return_exceptions=True,
        )

        # Delivery errors are handled per job; these are store errors on finish
        for job, result in zip(jobs, results):
            if isinstance(result, Exception):
                logger.error(
                    "notification_job_finish_failed",
                    job_id=job.job_id,
                    error=str(result),
                )
            elif isinstance(result, BaseException):
                raise result

        return len(jobs)

    async def run(self) -> None:
        """Process jobs until ``stop`` is called."""
        logger.info("notification_worker_started", batch_size=self.batch_size)

        while not self._stopping.is_set():
            try:
                processed = await self.process_due_jobs()
            except Exception as e:
                logger.error("notification_worker_error", error=str(e))
                processed = 0

            # Keep draining while full batches come back
            if processed < self.batch_size:
                await self._sleep()

        logger.info("notification_worker_stopped")

    def stop(self) -> None:
        """Ask the run loop to exit after the current batch."""
        self._stopping.set()

    async def _sleep(self) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
        except TimeoutError:
            pass
