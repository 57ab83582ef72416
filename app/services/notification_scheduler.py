"""Appointment reminder scheduling on top of the delayed job store."""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol
from uuid import UUID

import structlog

from app.core.exceptions import SchedulingError
from app.core.job_store import DelayedJobStore

logger = structlog.get_logger(__name__)

NOTIFICATION_JOB_NAME = "send-appointment-reminder"

JOB_ID_SEPARATOR = "_"


@dataclass(frozen=True)
class NotificationWindow:
    """A reminder that fires ``offset`` before an appointment starts."""

    label: str
    offset: timedelta


NOTIFICATION_WINDOWS: tuple[NotificationWindow, ...] = (
    NotificationWindow(label="1h", offset=timedelta(hours=1)),
    NotificationWindow(label="24h", offset=timedelta(hours=24)),
)


class AppointmentSnapshot(Protocol):
    """The appointment fields the scheduler reads."""

    id: UUID | str
    start_date: datetime


def create_job_id(appointment_id: UUID | str, window_label: str) -> str:
    """Build the job id for an appointment's reminder window."""
    return f"{appointment_id}{JOB_ID_SEPARATOR}{window_label}"


def build_notification_payload(
    appointment: AppointmentSnapshot,
    window: NotificationWindow,
) -> dict[str, Any]:
    """Build the job payload handed to the notification worker."""
    return {
        "appointment_id": str(appointment.id),
        "window_label": window.label,
        "start_date": appointment.start_date.isoformat(),
    }


def _utc_now() -> datetime:
    return datetime.now(UTC)


class AppointmentNotificationScheduler(Protocol):
    """Keeps an appointment's reminder jobs in line with its lifecycle."""

    async def schedule_for_appointment(self, appointment: AppointmentSnapshot) -> None:
        """Create reminder jobs for a new appointment."""

    async def reschedule_for_appointment(self, appointment: AppointmentSnapshot) -> None:
        """Replace reminder jobs after an appointment changed."""

    async def clear_for_appointment(self, appointment_id: UUID | str) -> None:
        """Remove every reminder job of an appointment."""


class NoopAppointmentNotificationScheduler:
    """Scheduler used when reminders are disabled."""

    async def schedule_for_appointment(self, appointment: AppointmentSnapshot) -> None:
        return None

    async def reschedule_for_appointment(self, appointment: AppointmentSnapshot) -> None:
        return None

    async def clear_for_appointment(self, appointment_id: UUID | str) -> None:
        return None


class QueueAppointmentNotificationScheduler:
    """
    Scheduler that keeps one delayed job per notification window.

    Job ids are derived from the appointment id and window label, so every
    operation is idempotent: scheduling twice replaces, clearing twice is a
    no-op. Windows are processed concurrently; within a window the
    lookup, removal and insert run strictly in order.
    """

    def __init__(
        self,
        store: DelayedJobStore,
        windows: tuple[NotificationWindow, ...] = NOTIFICATION_WINDOWS,
        clock: Callable[[], datetime] = _utc_now,
    ):
        """Initialize scheduler with a job store, window table and clock."""
        self.store = store
        self.windows = windows
        self.clock = clock

    async def schedule_for_appointment(self, appointment: AppointmentSnapshot) -> None:
        """
        Schedule one reminder job per window that is still in the future.

        Args:
            appointment: Appointment to schedule reminders for

        Raises:
            SchedulingError: If the job store failed for any window
        """
        await self._upsert_all(appointment, phase="schedule")

    async def reschedule_for_appointment(self, appointment: AppointmentSnapshot) -> None:
        """
        Recompute every reminder job from the appointment's current start date.

        Args:
            appointment: Appointment as it is after the update

        Raises:
            SchedulingError: If the job store failed for any window
        """
        await self._upsert_all(appointment, phase="reschedule")

    async def clear_for_appointment(self, appointment_id: UUID | str) -> None:
        """
        Remove the reminder jobs of an appointment.

        Windows without a job (never scheduled, already sent) are skipped.

        Args:
            appointment_id: Appointment whose reminders are removed

        Raises:
            SchedulingError: If the job store failed for any window
        """
        results = await asyncio.gather(
            *(self._remove_window_job(appointment_id, window) for window in self.windows),
            return_exceptions=True,
        )
        self._raise_for_errors(results, appointment_id, phase="clear")

    async def _upsert_all(self, appointment: AppointmentSnapshot, phase: str) -> None:
        now = self.clock()
        results = await asyncio.gather(
            *(self._upsert_window_job(appointment, window, now) for window in self.windows),
            return_exceptions=True,
        )
        self._raise_for_errors(results, appointment.id, phase=phase)

    async def _upsert_window_job(
        self,
        appointment: AppointmentSnapshot,
        window: NotificationWindow,
        now: datetime,
    ) -> None:
        job_id = create_job_id(appointment.id, window.label)
        delay = appointment.start_date - now - window.offset

        # A stale job must go even when the new delay is in the past
        await self._remove_window_job(appointment.id, window)

        if delay <= timedelta(0):
            logger.warning(
                "notification_window_skipped",
                appointment_id=str(appointment.id),
                window=window.label,
                start_date=appointment.start_date.isoformat(),
                reason="reminder time already passed",
            )
            return

        logger.debug(
            "notification_job_scheduling",
            appointment_id=str(appointment.id),
            window=window.label,
            start_date=appointment.start_date.isoformat(),
            delay_seconds=delay.total_seconds(),
        )

        await self.store.add(
            NOTIFICATION_JOB_NAME,
            build_notification_payload(appointment, window),
            job_id=job_id,
            delay=delay,
            remove_on_complete=True,
            remove_on_fail=True,
        )

    async def _remove_window_job(
        self,
        appointment_id: UUID | str,
        window: NotificationWindow,
    ) -> None:
        job = await self.store.get_job(create_job_id(appointment_id, window.label))
        if job is not None:
            await job.remove()

    @staticmethod
    def _raise_for_errors(
        results: list[Any],
        appointment_id: UUID | str,
        phase: str,
    ) -> None:
        errors = [result for result in results if isinstance(result, BaseException)]
        if not errors:
            return

        # Cancellation is not a store failure
        for error in errors:
            if not isinstance(error, Exception):
                raise error

        details = "; ".join(str(error) or error.__class__.__name__ for error in errors)
        raise SchedulingError(
            f"Failed to {phase} appointment notifications: {details}",
            appointment_id=str(appointment_id),
            errors=errors,
        )
