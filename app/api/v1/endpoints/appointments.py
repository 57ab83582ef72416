"""Appointment endpoints."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Query, status

from app.dependencies import AppointmentServiceDep
from app.schemas.appointments import (
    AppointmentCreate,
    AppointmentListResponse,
    AppointmentResponse,
    AppointmentUpdate,
    AppointmentWithUserResponse,
)

router = APIRouter()


@router.get(
    "/",
    response_model=list[AppointmentWithUserResponse],
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="List appointments by date range",
)
async def list_appointments(
    service: AppointmentServiceDep,
    from_date: datetime | None = Query(None, alias="from"),
    to_date: datetime | None = Query(None, alias="to"),
) -> list[AppointmentWithUserResponse]:
    """
    List appointments whose start date falls within an optional range.

    Args:
        service: Appointment service
        from_date: Inclusive lower bound on start date
        to_date: Inclusive upper bound on start date

    Returns:
        Appointments with owner names
    """
    return await service.list_appointments(from_date, to_date)


@router.get(
    "/user/{user_id}",
    response_model=AppointmentListResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="List appointments of a user",
)
async def list_user_appointments(
    user_id: UUID,
    service: AppointmentServiceDep,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
) -> AppointmentListResponse:
    """
    List a user's appointments with pagination.

    Args:
        user_id: Owner of the appointments
        service: Appointment service
        page: Page number
        limit: Items per page

    Returns:
        Paginated list of appointments
    """
    return await service.list_user_appointments(user_id, page, limit)


@router.get(
    "/{appointment_id}",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Get appointment by ID",
)
async def get_appointment(
    appointment_id: UUID,
    service: AppointmentServiceDep,
) -> AppointmentResponse:
    """
    Get a specific appointment by ID.

    Raises:
        NotFoundException: If appointment not found
    """
    return await service.get_appointment(appointment_id)


@router.post(
    "/",
    response_model=AppointmentResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Appointments"],
    summary="Create new appointment",
)
async def create_appointment(
    data: AppointmentCreate,
    service: AppointmentServiceDep,
) -> AppointmentResponse:
    """
    Create a new appointment and schedule its reminders.

    Args:
        data: Appointment creation data
        service: Appointment service

    Returns:
        Created appointment
    """
    return await service.create_appointment(data)


@router.patch(
    "/{appointment_id}",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Update appointment",
)
async def update_appointment(
    appointment_id: UUID,
    data: AppointmentUpdate,
    service: AppointmentServiceDep,
) -> AppointmentResponse:
    """
    Update an existing appointment. Only the fields sent are changed.

    Args:
        appointment_id: Appointment ID
        data: Fields to change
        service: Appointment service

    Returns:
        Updated appointment
    """
    return await service.update_appointment(appointment_id, data)


@router.delete(
    "/{appointment_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Appointments"],
    summary="Delete appointment",
)
async def delete_appointment(
    appointment_id: UUID,
    service: AppointmentServiceDep,
) -> None:
    """
    Delete an appointment and its pending reminders.

    Raises:
        NotFoundException: If appointment not found
    """
    await service.delete_appointment(appointment_id)
