"""FastAPI dependencies."""

from functools import lru_cache
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.background import BackgroundRunner
from app.core.job_store import RedisDelayedJobStore
from app.core.redis_client import get_redis_client
from app.database import get_db
from app.repositories.appointment_repository import SqlAppointmentRepository
from app.services.appointment_service import AppointmentService
from app.services.notification_scheduler import (
    AppointmentNotificationScheduler,
    NoopAppointmentNotificationScheduler,
    QueueAppointmentNotificationScheduler,
)


@lru_cache
def get_background_runner() -> BackgroundRunner:
    """Get the process-wide runner for best-effort side effects."""
    return BackgroundRunner()


@lru_cache
def get_notification_scheduler() -> AppointmentNotificationScheduler:
    """
    Get the appointment reminder scheduler.

    Returns:
        Redis-backed scheduler, or a no-op one when reminders are disabled
    """
    if not settings.notifications_enabled:
        return NoopAppointmentNotificationScheduler()

    store = RedisDelayedJobStore(get_redis_client(), settings.notification_queue_name)
    return QueueAppointmentNotificationScheduler(store)


# Type aliases for dependency injection
DatabaseSession = Annotated[AsyncSession, Depends(get_db)]
NotificationScheduler = Annotated[
    AppointmentNotificationScheduler, Depends(get_notification_scheduler)
]
Background = Annotated[BackgroundRunner, Depends(get_background_runner)]


async def get_appointment_service(
    db: DatabaseSession,
    notification_scheduler: NotificationScheduler,
    background: Background,
) -> AppointmentService:
    """Build the appointment service for a request."""
    return AppointmentService(
        SqlAppointmentRepository(db),
        notification_scheduler=notification_scheduler,
        background=background,
    )


AppointmentServiceDep = Annotated[AppointmentService, Depends(get_appointment_service)]
