"""Script to create tables, seed sample data and schedule its reminders."""

import asyncio
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.dialects.postgresql import insert

from app.core.redis_client import close_redis_connection
from app.database import AsyncSessionLocal, engine
from app.dependencies import get_notification_scheduler
from app.models import appointments, metadata, users
from app.schemas.appointments import AppointmentResponse

USERS = [
    {
        "id": UUID("15f968f6-df8a-42b4-b2f4-82f6e82395f1"),
        "name": "Joana Silva",
        "email": "joana.silva@agenda.example",
        "cellphone": "+5511988881111",
        "role": "admin",
    },
    {
        "id": UUID("3d8f4aa7-e27e-4eb8-b6e7-4f0f2f89014f"),
        "name": "Carlos Souza",
        "email": "carlos.souza@agenda.example",
        "cellphone": "+5511977772222",
        "role": "customer",
    },
    {
        "id": UUID("d64af340-9207-4627-8f76-02b55309b475"),
        "name": "Marina Lima",
        "email": "marina.lima@agenda.example",
        "cellphone": "+5511966663333",
        "role": "customer",
    },
]


def build_appointments(now: datetime) -> list[dict]:
    """Sample appointments relative to ``now`` so reminders are in the future."""
    today = now.replace(minute=0, second=0, microsecond=0)
    return [
        {
            "id": UUID("2b412040-79eb-4826-8e5a-eb7d58fef214"),
            "title": "Initial session",
            "start_date": today + timedelta(days=2),
            "end_date": today + timedelta(days=2, hours=1),
            "observation": "First conversation to understand goals.",
            "user_id": USERS[1]["id"],
        },
        {
            "id": UUID("44a4bd5c-68e4-44d4-b458-a75f12a95239"),
            "title": "Monthly follow-up",
            "start_date": today + timedelta(hours=3),
            "end_date": today + timedelta(hours=4),
            "observation": None,
            "user_id": USERS[2]["id"],
        },
    ]


async def seed_db() -> None:
    """Create tables and insert sample rows, then schedule their reminders."""
    async with engine.begin() as conn:
        await conn.execute(text('CREATE EXTENSION IF NOT EXISTS "pgcrypto"'))
        await conn.run_sync(metadata.create_all)

    async with AsyncSessionLocal() as session:
        await session.execute(insert(users).values(USERS).on_conflict_do_nothing())
        result = await session.execute(
            insert(appointments)
            .values(build_appointments(datetime.now(UTC)))
            .on_conflict_do_nothing()
            .returning(appointments)
        )
        created = [AppointmentResponse.model_validate(dict(row)) for row in result.mappings()]
        await session.commit()

    scheduler = get_notification_scheduler()
    for appointment in created:
        await scheduler.schedule_for_appointment(appointment)

    await close_redis_connection()
    await engine.dispose()

    print(f"✓ Seeded {len(USERS)} users and {len(created)} appointments")


if __name__ == "__main__":
    asyncio.run(seed_db())
