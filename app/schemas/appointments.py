"""Appointment schemas for request/response validation."""

from dataclasses import dataclass, fields
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator


class _Unset:
    """Marker for a patch field that was not sent."""

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


def assume_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


@dataclass(frozen=True)
class AppointmentPatch:
    """
    Partial appointment update.

    Every field is either ``UNSET`` (leave the column alone) or a value to
    write. ``observation=None`` clears the observation.
    """

    title: str = UNSET
    start_date: datetime = UNSET
    end_date: datetime = UNSET
    observation: str | None = UNSET

    def is_set(self, name: str) -> bool:
        """Check whether a field is part of the patch."""
        return getattr(self, name) is not UNSET

    def values(self) -> dict[str, Any]:
        """Get the fields to write, keyed by column name."""
        return {
            field.name: getattr(self, field.name)
            for field in fields(self)
            if self.is_set(field.name)
        }

    @property
    def is_empty(self) -> bool:
        """Check whether the patch changes nothing."""
        return not self.values()


class AppointmentBase(BaseModel):
    """Base appointment schema with common fields."""

    title: str = Field(..., min_length=1, max_length=200)
    start_date: datetime
    end_date: datetime
    observation: str | None = Field(None, max_length=1000)

    @field_validator("start_date", "end_date")
    @classmethod
    def normalize_dates(cls, v: datetime | None) -> datetime | None:
        """Store and compare dates in UTC."""
        return assume_utc(v)


class AppointmentCreate(AppointmentBase):
    """Schema for creating a new appointment."""

    user_id: UUID


class AppointmentUpdate(BaseModel):
    """Schema for updating an existing appointment."""

    title: str | None = Field(None, min_length=1, max_length=200)
    start_date: datetime | None = None
    end_date: datetime | None = None
    observation: str | None = Field(None, max_length=1000)

    @field_validator("start_date", "end_date")
    @classmethod
    def normalize_dates(cls, v: datetime | None) -> datetime | None:
        """Store and compare dates in UTC."""
        return assume_utc(v)

    @model_validator(mode="after")
    def reject_null_required_fields(self) -> "AppointmentUpdate":
        """Only observation may be cleared with null."""
        for name in ("title", "start_date", "end_date"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self

    def to_patch(self) -> AppointmentPatch:
        """Convert the fields the client actually sent into a patch."""
        return AppointmentPatch(
            **{name: getattr(self, name) for name in self.model_fields_set}
        )


class AppointmentResponse(AppointmentBase):
    """Schema for appointment response."""

    id: UUID
    user_id: UUID
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class AppointmentWithUserResponse(AppointmentBase):
    """Schema for appointment listing entries, with the owner's name."""

    id: UUID
    user_name: str
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class AppointmentListResponse(BaseModel):
    """Schema for paginated appointment list response."""

    items: list[AppointmentResponse]
    total: int
    page: int
    limit: int
    total_pages: int
