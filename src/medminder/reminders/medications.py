"""Medications: add, list, edit, schedule, and view adherence history."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, time
from typing import Any

import asyncpg

from medminder.reminders.models import format_hhmm, parse_time_of_day, require_user_id

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = {"medication_name", "dosage", "instructions"}


def _row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
    """Convert an asyncpg Record to a dict, rendering TIME columns as HH:MM."""
    d = dict(row)
    for key, value in d.items():
        if isinstance(value, time):
            d[key] = format_hhmm(value)
    return d


def _as_uuid(value: uuid.UUID | str, what: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise ValueError(f"Invalid {what}: {value!r}") from exc


def _parse_times(times: list[str] | None) -> list[time]:
    parsed = [parse_time_of_day(t) for t in times or []]
    return sorted(set(parsed))


async def _insert_schedules(
    conn: asyncpg.Connection, medication_id: uuid.UUID, times: list[time]
) -> list[dict[str, Any]]:
    rows = []
    for at in times:
        row = await conn.fetchrow(
            """
            INSERT INTO medication_schedules (medication_id, reminder_time)
            VALUES ($1, $2)
            RETURNING id, medication_id, reminder_time, active
            """,
            medication_id,
            at,
        )
        rows.append(_row_to_dict(row))
    return rows


async def medication_add(
    pool: asyncpg.Pool,
    user_id: uuid.UUID | str,
    name: str,
    dosage: str,
    times: list[str] | None = None,
    instructions: str | None = None,
) -> dict[str, Any]:
    """Add a medication with its daily reminder times (``HH:MM``)."""
    uid = require_user_id(user_id)
    if not name or not name.strip():
        raise ValueError("Medication name is required")
    if not dosage or not dosage.strip():
        raise ValueError("Dosage is required")
    parsed = _parse_times(times)

    async with pool.acquire() as conn:
        async with conn.transaction():
            row = await conn.fetchrow(
                """
                INSERT INTO medications (user_id, medication_name, dosage, instructions)
                VALUES ($1, $2, $3, $4)
                RETURNING *
                """,
                uid,
                name.strip(),
                dosage.strip(),
                (instructions or "").strip(),
            )
            schedules = await _insert_schedules(conn, row["id"], parsed)

    result = _row_to_dict(row)
    result["schedules"] = schedules
    logger.info("Medication added: %s (%d reminder time(s))", result["medication_name"], len(parsed))
    return result


async def medication_list(
    pool: asyncpg.Pool,
    user_id: uuid.UUID | str,
    active_only: bool = True,
) -> list[dict[str, Any]]:
    """List a user's medications with their active reminder times."""
    uid = require_user_id(user_id)
    rows = await pool.fetch(
        """
        SELECT m.*,
               COALESCE(
                   array_agg(s.reminder_time ORDER BY s.reminder_time)
                       FILTER (WHERE s.id IS NOT NULL),
                   '{}'
               ) AS reminder_times
        FROM medications m
        LEFT JOIN medication_schedules s
            ON s.medication_id = m.id AND s.active = true
        WHERE m.user_id = $1 AND ($2::boolean IS FALSE OR m.active = true)
        GROUP BY m.id
        ORDER BY m.medication_name
        """,
        uid,
        active_only,
    )
    result = []
    for r in rows:
        d = _row_to_dict(r)
        d["reminder_times"] = [format_hhmm(t) for t in r["reminder_times"]]
        result.append(d)
    return result


async def medication_update(
    pool: asyncpg.Pool,
    user_id: uuid.UUID | str,
    medication_id: uuid.UUID | str,
    **fields: Any,
) -> dict[str, Any]:
    """Update name, dosage or instructions of one of the user's medications."""
    uid = require_user_id(user_id)
    med_uuid = _as_uuid(medication_id, "medication_id")
    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}")
    if not fields:
        raise ValueError("No fields to update")
    for key in ("medication_name", "dosage"):
        if key in fields and (fields[key] is None or not str(fields[key]).strip()):
            raise ValueError(f"{key} cannot be empty")

    assignments = []
    params: list[Any] = [med_uuid, uid]
    for idx, (key, value) in enumerate(sorted(fields.items()), start=3):
        assignments.append(f"{key} = ${idx}")
        params.append(value.strip() if isinstance(value, str) else value)

    row = await pool.fetchrow(
        f"""
        UPDATE medications SET {", ".join(assignments)}, updated_at = now()
        WHERE id = $1 AND user_id = $2
        RETURNING *
        """,
        *params,
    )
    if row is None:
        raise ValueError(f"Medication {medication_id} not found")
    return _row_to_dict(row)


async def medication_deactivate(
    pool: asyncpg.Pool, user_id: uuid.UUID | str, medication_id: uuid.UUID | str
) -> bool:
    """Soft-delete one of the user's medications. Its schedules stop producing reminders.

    Returns False when the user has no such active medication.
    """
    uid = require_user_id(user_id)
    med_uuid = _as_uuid(medication_id, "medication_id")
    result = await pool.execute(
        """
        UPDATE medications SET active = false, updated_at = now()
        WHERE id = $1 AND user_id = $2 AND active = true
        """,
        med_uuid,
        uid,
    )
    return result == "UPDATE 1"


async def schedule_replace(
    pool: asyncpg.Pool,
    user_id: uuid.UUID | str,
    medication_id: uuid.UUID | str,
    times: list[str],
) -> list[dict[str, Any]]:
    """Replace every reminder time of one of the user's medications with *times*."""
    uid = require_user_id(user_id)
    med_uuid = _as_uuid(medication_id, "medication_id")
    parsed = _parse_times(times)

    async with pool.acquire() as conn:
        async with conn.transaction():
            exists = await conn.fetchval(
                "SELECT 1 FROM medications WHERE id = $1 AND user_id = $2", med_uuid, uid
            )
            if exists is None:
                raise ValueError(f"Medication {medication_id} not found")
            await conn.execute(
                "DELETE FROM medication_schedules WHERE medication_id = $1", med_uuid
            )
            return await _insert_schedules(conn, med_uuid, parsed)


async def family_contact_add(
    pool: asyncpg.Pool,
    user_id: uuid.UUID | str,
    name: str,
    email: str | None = None,
    relationship: str | None = None,
    contact_number: str | None = None,
    is_emergency_contact: bool = False,
) -> dict[str, Any]:
    """Add a family member; only members with an email receive missed-dose alerts."""
    uid = require_user_id(user_id)
    if not name or not name.strip():
        raise ValueError("Contact name is required")
    if email is not None and "@" not in email:
        raise ValueError(f"Invalid email address: {email!r}")
    row = await pool.fetchrow(
        """
        INSERT INTO family_members
            (user_id, name, relationship, contact_number, email, is_emergency_contact)
        VALUES ($1, $2, $3, $4, $5, $6)
        RETURNING *
        """,
        uid,
        name.strip(),
        relationship,
        contact_number,
        email,
        is_emergency_contact,
    )
    return _row_to_dict(row)


async def adherence_history(
    pool: asyncpg.Pool,
    user_id: uuid.UUID | str,
    medication_id: uuid.UUID | str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> dict[str, Any]:
    """Get adherence records with an adherence rate.

    Adherence rate is the percentage of ``taken`` records out of all records.
    Returns null for adherence_rate if no records exist.
    """
    conditions = ["user_id = $1"]
    params: list[Any] = [require_user_id(user_id)]
    idx = 2

    if medication_id is not None:
        conditions.append(f"medication_id = ${idx}")
        params.append(_as_uuid(medication_id, "medication_id"))
        idx += 1

    if start_date is not None:
        conditions.append(f"scheduled_time >= ${idx}")
        params.append(start_date)
        idx += 1

    if end_date is not None:
        conditions.append(f"scheduled_time <= ${idx}")
        params.append(end_date)
        idx += 1

    where = " AND ".join(conditions)
    rows = await pool.fetch(
        f"""
        SELECT id, medication_id, user_id, scheduled_time, status, taken_at
        FROM adherence_logs WHERE {where}
        ORDER BY scheduled_time DESC
        """,
        *params,
    )
    records = [_row_to_dict(r) for r in rows]

    adherence_rate = None
    if records:
        taken_count = sum(1 for r in records if r["status"] == "taken")
        adherence_rate = round(taken_count / len(records) * 100, 1)

    return {"records": records, "adherence_rate": adherence_rate}
