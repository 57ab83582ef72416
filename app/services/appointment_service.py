"""Appointment service for business logic."""

import math
from datetime import datetime
from uuid import UUID

import structlog

from app.core.background import BackgroundRunner
from app.core.exceptions import NotFoundException, ValidationException
from app.repositories.appointment_repository import AppointmentRepository
from app.schemas.appointments import (
    AppointmentCreate,
    AppointmentListResponse,
    AppointmentResponse,
    AppointmentUpdate,
    AppointmentWithUserResponse,
)
from app.services.notification_scheduler import (
    AppointmentNotificationScheduler,
    NoopAppointmentNotificationScheduler,
)

logger = structlog.get_logger(__name__)


class AppointmentService:
    """
    Service for managing appointments.

    Reminder scheduling is a side effect of every mutation. It is handed to
    the background runner after the mutation is persisted, so a scheduling
    failure is logged and never changes the mutation's outcome. Side
    effects of one appointment are keyed by its id so they apply in the
    order the mutations happened.
    """

    def __init__(
        self,
        repository: AppointmentRepository,
        notification_scheduler: AppointmentNotificationScheduler | None = None,
        background: BackgroundRunner | None = None,
    ):
        """Initialize service with repository, reminder scheduler and runner."""
        self.repository = repository
        self.notification_scheduler = (
            notification_scheduler or NoopAppointmentNotificationScheduler()
        )
        self.background = background or BackgroundRunner()

    @staticmethod
    def _validate_title(title: str) -> None:
        if not title.strip():
            raise ValidationException("Title cannot be empty")

    @staticmethod
    def _validate_dates(start_date: datetime, end_date: datetime) -> None:
        if start_date >= end_date:
            raise ValidationException("start_date must be before end_date")

    async def list_appointments(
        self,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
    ) -> list[AppointmentWithUserResponse]:
        """
        List appointments starting within an optional date range.

        Args:
            from_date: Inclusive lower bound on start date
            to_date: Inclusive upper bound on start date

        Returns:
            Appointments with owner names
        """
        logger.debug("fetching_appointments_by_date_range", from_date=from_date, to_date=to_date)

        rows = await self.repository.find_by_date_range(from_date, to_date)

        logger.info("appointments_fetched", count=len(rows))
        return [AppointmentWithUserResponse.model_validate(row) for row in rows]

    async def list_user_appointments(
        self,
        user_id: UUID,
        page: int = 1,
        limit: int = 10,
    ) -> AppointmentListResponse:
        """
        List a user's appointments, one page at a time.

        Args:
            user_id: Owner of the appointments
            page: Page number, starting at 1
            limit: Items per page

        Returns:
            Paginated list of appointments
        """
        logger.debug("fetching_user_appointments", user_id=str(user_id), page=page, limit=limit)

        rows, total = await self.repository.find_by_user_id(user_id, page, limit)

        logger.info(
            "user_appointments_fetched",
            user_id=str(user_id),
            count=len(rows),
            total=total,
        )
        return AppointmentListResponse(
            items=[AppointmentResponse.model_validate(row) for row in rows],
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if total else 0,
        )

    async def get_appointment(self, appointment_id: UUID) -> AppointmentResponse:
        """
        Get appointment by ID.

        Raises:
            NotFoundException: If appointment not found
        """
        row = await self.repository.find_by_id(appointment_id)

        if row is None:
            logger.warning("appointment_not_found", appointment_id=str(appointment_id))
            raise NotFoundException(f"Appointment {appointment_id} not found")

        return AppointmentResponse.model_validate(row)

    async def create_appointment(self, data: AppointmentCreate) -> AppointmentResponse:
        """
        Create a new appointment and schedule its reminders.

        Args:
            data: Appointment creation data

        Returns:
            Created appointment

        Raises:
            ValidationException: If the title is blank or the dates are inverted
        """
        logger.debug("creating_appointment", user_id=str(data.user_id))

        self._validate_title(data.title)
        self._validate_dates(data.start_date, data.end_date)

        appointment = AppointmentResponse.model_validate(await self.repository.create(data))

        self.background.spawn(
            self.notification_scheduler.schedule_for_appointment(appointment),
            "appointment_notifications_schedule_failed",
            key=str(appointment.id),
            appointment_id=str(appointment.id),
        )

        logger.info("appointment_created", appointment_id=str(appointment.id))
        return appointment

    async def update_appointment(
        self,
        appointment_id: UUID,
        data: AppointmentUpdate,
    ) -> AppointmentResponse:
        """
        Update an appointment and recompute its reminders.

        Reminders are recomputed on every update, whether or not the start
        date changed.

        Args:
            appointment_id: Appointment ID
            data: Fields to change

        Returns:
            Updated appointment

        Raises:
            ValidationException: If the resulting title or dates are invalid
            NotFoundException: If appointment not found
        """
        logger.debug("updating_appointment", appointment_id=str(appointment_id))

        patch = data.to_patch()

        if patch.is_set("title"):
            self._validate_title(patch.title)

        if patch.is_set("start_date") and patch.is_set("end_date"):
            self._validate_dates(patch.start_date, patch.end_date)
        elif patch.is_set("start_date") or patch.is_set("end_date"):
            current = await self.get_appointment(appointment_id)
            self._validate_dates(
                patch.start_date if patch.is_set("start_date") else current.start_date,
                patch.end_date if patch.is_set("end_date") else current.end_date,
            )

        row = await self.repository.update(appointment_id, patch)
        if row is None:
            raise NotFoundException(f"Appointment {appointment_id} not found")

        appointment = AppointmentResponse.model_validate(row)

        self.background.spawn(
            self.notification_scheduler.reschedule_for_appointment(appointment),
            "appointment_notifications_reschedule_failed",
            key=str(appointment.id),
            appointment_id=str(appointment.id),
        )

        logger.info("appointment_updated", appointment_id=str(appointment_id))
        return appointment

    async def delete_appointment(self, appointment_id: UUID) -> None:
        """
        Delete an appointment and clear its reminders.

        Raises:
            NotFoundException: If appointment not found
        """
        logger.debug("deleting_appointment", appointment_id=str(appointment_id))

        deleted = await self.repository.delete(appointment_id)
        if not deleted:
            raise NotFoundException(f"Appointment {appointment_id} not found")

        self.background.spawn(
            self.notification_scheduler.clear_for_appointment(appointment_id),
            "appointment_notifications_clear_failed",
            key=str(appointment_id),
            appointment_id=str(appointment_id),
        )

        logger.info("appointment_deleted", appointment_id=str(appointment_id))
