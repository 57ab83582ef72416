"""Appointment repository - database operations for appointments."""

from datetime import UTC, datetime
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import BadRequestException
from app.models.appointments import appointments
from app.models.users import users
from app.schemas.appointments import AppointmentCreate, AppointmentPatch


class AppointmentRepository(Protocol):
    """Persistence operations the appointment service relies on."""

    async def find_by_date_range(
        self,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
    ) -> list[dict[str, Any]]: ...

    async def find_by_user_id(
        self,
        user_id: UUID,
        page: int,
        limit: int,
    ) -> tuple[list[dict[str, Any]], int]: ...

    async def find_by_id(self, appointment_id: UUID) -> dict[str, Any] | None: ...

    async def create(self, data: AppointmentCreate) -> dict[str, Any]: ...

    async def update(
        self,
        appointment_id: UUID,
        patch: AppointmentPatch,
    ) -> dict[str, Any] | None: ...

    async def delete(self, appointment_id: UUID) -> bool: ...


class SqlAppointmentRepository:
    """Appointment repository on PostgreSQL through SQLAlchemy Core."""

    def __init__(self, db: AsyncSession):
        """Initialize repository with database session."""
        self.db = db

    async def find_by_date_range(
        self,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
    ) -> list[dict[str, Any]]:
        """
        Get appointments starting within an optional date range.

        Args:
            from_date: Inclusive lower bound on start date
            to_date: Inclusive upper bound on start date

        Returns:
            Appointments with the owner's name as ``user_name``
        """
        conditions = []
        if from_date:
            conditions.append(appointments.c.start_date >= from_date)
        if to_date:
            conditions.append(appointments.c.start_date <= to_date)

        stmt = (
            select(
                appointments.c.id,
                appointments.c.title,
                appointments.c.start_date,
                appointments.c.end_date,
                appointments.c.observation,
                users.c.name.label("user_name"),
                appointments.c.created_at,
                appointments.c.updated_at,
            )
            .select_from(appointments.join(users, appointments.c.user_id == users.c.id))
            .order_by(appointments.c.start_date)
        )
        if conditions:
            stmt = stmt.where(and_(*conditions))

        result = await self.db.execute(stmt)
        return [dict(row) for row in result.mappings().all()]

    async def find_by_user_id(
        self,
        user_id: UUID,
        page: int,
        limit: int,
    ) -> tuple[list[dict[str, Any]], int]:
        """Get one page of a user's appointments and the user's total count."""
        condition = appointments.c.user_id == user_id

        count_stmt = select(func.count()).select_from(appointments).where(condition)
        total_result = await self.db.execute(count_stmt)
        total = total_result.scalar() or 0

        offset = (page - 1) * limit
        stmt = (
            select(appointments)
            .where(condition)
            .order_by(appointments.c.start_date)
            .limit(limit)
            .offset(offset)
        )
        result = await self.db.execute(stmt)

        return [dict(row) for row in result.mappings().all()], total

    async def find_by_id(self, appointment_id: UUID) -> dict[str, Any] | None:
        """Get appointment by ID."""
        stmt = select(appointments).where(appointments.c.id == appointment_id)
        result = await self.db.execute(stmt)
        row = result.mappings().first()
        return dict(row) if row else None

    async def create(self, data: AppointmentCreate) -> dict[str, Any]:
        """
        Insert a new appointment.

        Raises:
            BadRequestException: If the referenced user does not exist
        """
        stmt = (
            appointments.insert()
            .values(
                title=data.title,
                start_date=data.start_date,
                end_date=data.end_date,
                observation=data.observation,
                user_id=data.user_id,
            )
            .returning(appointments)
        )

        try:
            result = await self.db.execute(stmt)
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise BadRequestException(f"User {data.user_id} does not exist") from e

        return dict(result.mappings().one())

    async def update(
        self,
        appointment_id: UUID,
        patch: AppointmentPatch,
    ) -> dict[str, Any] | None:
        """Apply a patch and return the updated row, or None if missing."""
        values = patch.values()
        values["updated_at"] = datetime.now(UTC)

        stmt = (
            update(appointments)
            .where(appointments.c.id == appointment_id)
            .values(**values)
            .returning(appointments)
        )

        result = await self.db.execute(stmt)
        await self.db.commit()

        row = result.mappings().first()
        return dict(row) if row else None

    async def delete(self, appointment_id: UUID) -> bool:
        """Delete an appointment. Returns False if it did not exist."""
        stmt = (
            delete(appointments)
            .where(appointments.c.id == appointment_id)
            .returning(appointments.c.id)
        )

        result = await self.db.execute(stmt)
        await self.db.commit()

        return result.first() is not None
