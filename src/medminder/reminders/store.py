"""Persistence contract for the reminder core and its asyncpg implementation.

The reminder loop only ever talks to a ``ReminderStore``. ``PostgresReminderStore``
maps each operation onto a single SQL statement; the adherence upsert is a
compare-and-swap so that a response-window timeout can never overwrite a
status the user already recorded, even when both writes race.
"""

from __future__ import annotations

import abc
import logging
import uuid
from collections.abc import Sequence
from datetime import datetime, time

import asyncpg

from medminder.reminders.models import (
    AdherenceRecord,
    AdherenceStatus,
    FamilyContact,
    Medication,
    OccurrenceKey,
    PendingResponse,
    Schedule,
)

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS medications (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID NOT NULL,
    medication_name TEXT NOT NULL,
    dosage TEXT NOT NULL,
    instructions TEXT NOT NULL DEFAULT '',
    active BOOLEAN NOT NULL DEFAULT true,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS idx_medications_user_active
    ON medications (user_id) WHERE active;

CREATE TABLE IF NOT EXISTS medication_schedules (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    medication_id UUID NOT NULL REFERENCES medications(id) ON DELETE CASCADE,
    reminder_time TIME NOT NULL,
    active BOOLEAN NOT NULL DEFAULT true,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS idx_medication_schedules_time_active
    ON medication_schedules (reminder_time) WHERE active;

CREATE TABLE IF NOT EXISTS adherence_logs (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    medication_id UUID NOT NULL REFERENCES medications(id) ON DELETE CASCADE,
    user_id UUID NOT NULL,
    scheduled_time TIMESTAMPTZ NOT NULL,
    taken_at TIMESTAMPTZ,
    status TEXT NOT NULL CHECK (status IN ('taken', 'missed', 'not_taken_auto')),
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT uq_adherence_occurrence UNIQUE (medication_id, user_id, scheduled_time)
);

CREATE TABLE IF NOT EXISTS family_members (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id UUID NOT NULL,
    name TEXT NOT NULL,
    relationship TEXT,
    contact_number TEXT,
    email TEXT,
    is_emergency_contact BOOLEAN NOT NULL DEFAULT false,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS pending_responses (
    user_id UUID NOT NULL,
    medication_id UUID NOT NULL REFERENCES medications(id) ON DELETE CASCADE,
    occurrence_date DATE NOT NULL,
    reminder_time TIME NOT NULL,
    deadline TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (user_id, medication_id, occurrence_date, reminder_time)
);
"""


async def ensure_schema(pool: asyncpg.Pool) -> None:
    """Create the reminder tables if they do not exist yet."""
    await pool.execute(SCHEMA_SQL)
    logger.info("Reminder schema ensured")


class ReminderStore(abc.ABC):
    """Everything the reminder core reads from or writes to durable storage."""

    @abc.abstractmethod
    async def list_active_schedules_at(self, time_of_day: time) -> list[Schedule]:
        """Active schedules whose time of day equals *time_of_day* exactly."""

    @abc.abstractmethod
    async def list_active_medications_for_user(self, user_id: uuid.UUID) -> list[Medication]:
        """Active medications owned by *user_id*."""

    @abc.abstractmethod
    async def get_medication(self, medication_id: uuid.UUID) -> Medication | None: ...

    @abc.abstractmethod
    async def get_adherence_record(
        self, medication_id: uuid.UUID, user_id: uuid.UUID, scheduled_time: datetime
    ) -> AdherenceRecord | None: ...

    @abc.abstractmethod
    async def upsert_adherence_record(
        self, record: AdherenceRecord, *, skip_if_completed: bool = False
    ) -> AdherenceRecord | None:
        """Insert or update the record for the occurrence as one operation.

        With ``skip_if_completed`` the write only happens when the stored
        status is not ``taken``/``missed``; ``None`` is returned when the
        write was suppressed.
        """

    @abc.abstractmethod
    async def list_adherence_records_since(
        self,
        user_id: uuid.UUID,
        since: datetime,
        statuses: Sequence[AdherenceStatus],
    ) -> list[AdherenceRecord]: ...

    @abc.abstractmethod
    async def list_family_contacts_with_email(self, user_id: uuid.UUID) -> list[FamilyContact]:
        ...

    @abc.abstractmethod
    async def save_pending_response(self, pending: PendingResponse) -> None: ...

    @abc.abstractmethod
    async def delete_pending_response(self, key: OccurrenceKey) -> None: ...

    @abc.abstractmethod
    async def list_pending_responses(self, user_id: uuid.UUID) -> list[PendingResponse]: ...


class PostgresReminderStore(ReminderStore):
    """``ReminderStore`` backed by an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def list_active_schedules_at(self, time_of_day: time) -> list[Schedule]:
        rows = await self._pool.fetch(
            """
            SELECT id, medication_id, reminder_time, active
            FROM medication_schedules
            WHERE active = true AND reminder_time = $1
            """,
            time_of_day,
        )
        return [Schedule.from_row(r) for r in rows]

    async def list_active_medications_for_user(self, user_id: uuid.UUID) -> list[Medication]:
        rows = await self._pool.fetch(
            """
            SELECT id, user_id, medication_name, dosage, instructions, active
            FROM medications
            WHERE user_id = $1 AND active = true
            ORDER BY medication_name
            """,
            user_id,
        )
        return [Medication.from_row(r) for r in rows]

    async def get_medication(self, medication_id: uuid.UUID) -> Medication | None:
        row = await self._pool.fetchrow(
            """
            SELECT id, user_id, medication_name, dosage, instructions, active
            FROM medications WHERE id = $1
            """,
            medication_id,
        )
        return Medication.from_row(row) if row is not None else None

    async def get_adherence_record(
        self, medication_id: uuid.UUID, user_id: uuid.UUID, scheduled_time: datetime
    ) -> AdherenceRecord | None:
        row = await self._pool.fetchrow(
            """
            SELECT id, medication_id, user_id, scheduled_time, status, taken_at
            FROM adherence_logs
            WHERE medication_id = $1 AND user_id = $2 AND scheduled_time = $3
            """,
            medication_id,
            user_id,
            scheduled_time,
        )
        return AdherenceRecord.from_row(row) if row is not None else None

    async def upsert_adherence_record(
        self, record: AdherenceRecord, *, skip_if_completed: bool = False
    ) -> AdherenceRecord | None:
        row = await self._pool.fetchrow(
            """
            INSERT INTO adherence_logs (medication_id, user_id, scheduled_time, status, taken_at)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (medication_id, user_id, scheduled_time) DO UPDATE
            SET status = EXCLUDED.status, taken_at = EXCLUDED.taken_at, updated_at = now()
            WHERE NOT $6::boolean OR adherence_logs.status NOT IN ('taken', 'missed')
            RETURNING id, medication_id, user_id, scheduled_time, status, taken_at
            """,
            record.medication_id,
            record.user_id,
            record.scheduled_time,
            str(record.status),
            record.taken_at,
            skip_if_completed,
        )
        return AdherenceRecord.from_row(row) if row is not None else None

    async def list_adherence_records_since(
        self,
        user_id: uuid.UUID,
        since: datetime,
        statuses: Sequence[AdherenceStatus],
    ) -> list[AdherenceRecord]:
        rows = await self._pool.fetch(
            """
            SELECT id, medication_id, user_id, scheduled_time, status, taken_at
            FROM adherence_logs
            WHERE user_id = $1 AND scheduled_time >= $2 AND status = ANY($3::text[])
            ORDER BY scheduled_time
            """,
            user_id,
            since,
            [str(s) for s in statuses],
        )
        return [AdherenceRecord.from_row(r) for r in rows]

    async def list_family_contacts_with_email(self, user_id: uuid.UUID) -> list[FamilyContact]:
        rows = await self._pool.fetch(
            """
            SELECT id, user_id, name, email, relationship
            FROM family_members
            WHERE user_id = $1 AND email IS NOT NULL AND email <> ''
            ORDER BY name
            """,
            user_id,
        )
        return [FamilyContact.from_row(r) for r in rows]

    async def save_pending_response(self, pending: PendingResponse) -> None:
        key = pending.key
        await self._pool.execute(
            """
            INSERT INTO pending_responses
                (user_id, medication_id, occurrence_date, reminder_time, deadline)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (user_id, medication_id, occurrence_date, reminder_time)
            DO UPDATE SET deadline = EXCLUDED.deadline
            """,
            key.user_id,
            key.medication_id,
            key.date,
            key.reminder_time,
            pending.deadline,
        )

    async def delete_pending_response(self, key: OccurrenceKey) -> None:
        await self._pool.execute(
            """
            DELETE FROM pending_responses
            WHERE user_id = $1 AND medication_id = $2
              AND occurrence_date = $3 AND reminder_time = $4
            """,
            key.user_id,
            key.medication_id,
            key.date,
            key.reminder_time,
        )

    async def list_pending_responses(self, user_id: uuid.UUID) -> list[PendingResponse]:
        rows = await self._pool.fetch(
            """
            SELECT user_id, medication_id, occurrence_date, reminder_time, deadline
            FROM pending_responses
            WHERE user_id = $1
            ORDER BY deadline
            """,
            user_id,
        )
        return [
            PendingResponse(
                key=OccurrenceKey(
                    user_id=r["user_id"],
                    medication_id=r["medication_id"],
                    reminder_time=r["reminder_time"],
                    date=r["occurrence_date"],
                ),
                deadline=r["deadline"],
            )
            for r in rows
        ]
