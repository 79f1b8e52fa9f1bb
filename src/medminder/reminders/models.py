"""Domain types for medications, schedules, adherence records and occurrences."""

from __future__ import annotations

import enum
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, tzinfo
from typing import Any

_TIME_OF_DAY_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class AdherenceStatus(enum.StrEnum):
    """Terminal outcome recorded for one dose occurrence."""

    TAKEN = "taken"
    MISSED = "missed"
    NOT_TAKEN_AUTO = "not_taken_auto"

    @property
    def user_authored(self) -> bool:
        """True for statuses only a user sets; these are never auto-overwritten."""
        return self in (AdherenceStatus.TAKEN, AdherenceStatus.MISSED)


# Statuses the escalation sweep treats as a missed dose.
MISSED_STATUSES: tuple[AdherenceStatus, ...] = (
    AdherenceStatus.MISSED,
    AdherenceStatus.NOT_TAKEN_AUTO,
)


def parse_time_of_day(value: str | time) -> time:
    """Parse a 24-hour ``HH:MM`` string into a minute-granular ``time``.

    ``time`` objects pass through with seconds and microseconds dropped.

    Raises:
        ValueError: If *value* is not a well-formed ``HH:MM`` string.
    """
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0, tzinfo=None)
    match = _TIME_OF_DAY_RE.fullmatch(value.strip()) if isinstance(value, str) else None
    if match is None:
        raise ValueError(f"Invalid time of day {value!r}; expected HH:MM (24-hour)")
    return time(int(match.group(1)), int(match.group(2)))


def format_hhmm(value: time) -> str:
    return value.strftime("%H:%M")


def _as_uuid(value: uuid.UUID | str) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def require_user_id(user_id: uuid.UUID | str) -> uuid.UUID:
    """Coerce *user_id* to a UUID.

    Raises:
        ValueError: If *user_id* is empty or not a UUID.
    """
    if isinstance(user_id, uuid.UUID):
        return user_id
    if not user_id or not str(user_id).strip():
        raise ValueError("user_id is required")
    return uuid.UUID(str(user_id).strip())


@dataclass(frozen=True)
class Medication:
    """A medication owned by one user. Soft-deleted by clearing ``active``."""

    id: uuid.UUID
    user_id: uuid.UUID
    name: str
    dosage: str
    instructions: str = ""
    active: bool = True

    @classmethod
    def from_row(cls, row: Any) -> Medication:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            name=row["medication_name"],
            dosage=row["dosage"],
            instructions=row["instructions"] or "",
            active=bool(row["active"]),
        )


@dataclass(frozen=True)
class Schedule:
    """A recurring time of day at which one medication is due."""

    id: uuid.UUID
    medication_id: uuid.UUID
    reminder_time: time
    active: bool = True

    @classmethod
    def from_row(cls, row: Any) -> Schedule:
        return cls(
            id=row["id"],
            medication_id=row["medication_id"],
            reminder_time=parse_time_of_day(row["reminder_time"]),
            active=bool(row["active"]),
        )


@dataclass(frozen=True)
class FamilyContact:
    """A family member who is alerted about repeatedly missed doses."""

    id: uuid.UUID
    user_id: uuid.UUID
    name: str
    email: str | None = None
    relationship: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> FamilyContact:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            email=row["email"],
            relationship=row["relationship"],
        )


@dataclass
class AdherenceRecord:
    """Persisted outcome for one occurrence, keyed by medication, user and
    scheduled time."""

    medication_id: uuid.UUID
    user_id: uuid.UUID
    scheduled_time: datetime
    status: AdherenceStatus
    taken_at: datetime | None = None
    id: uuid.UUID | None = None

    @classmethod
    def from_row(cls, row: Any) -> AdherenceRecord:
        return cls(
            id=row["id"],
            medication_id=row["medication_id"],
            user_id=row["user_id"],
            scheduled_time=row["scheduled_time"],
            status=AdherenceStatus(row["status"]),
            taken_at=row["taken_at"],
        )


@dataclass(frozen=True)
class DueReminder:
    """A self-contained "take this now" prompt produced by the resolver."""

    medication_id: uuid.UUID
    medication_name: str
    dosage: str
    instructions: str
    reminder_time: time
    schedule_id: uuid.UUID | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "medication_id": str(self.medication_id),
            "medication_name": self.medication_name,
            "dosage": self.dosage,
            "instructions": self.instructions,
            "reminder_time": format_hhmm(self.reminder_time),
            "schedule_id": str(self.schedule_id) if self.schedule_id else None,
        }


@dataclass(frozen=True)
class OccurrenceKey:
    """Identity of one dose on one calendar date: never persisted by itself."""

    user_id: uuid.UUID
    medication_id: uuid.UUID
    reminder_time: time
    date: date

    @classmethod
    def for_reminder(
        cls, user_id: uuid.UUID | str, medication_id: uuid.UUID | str, reminder_time, on: date
    ) -> OccurrenceKey:
        return cls(
            user_id=_as_uuid(user_id),
            medication_id=_as_uuid(medication_id),
            reminder_time=parse_time_of_day(reminder_time),
            date=on,
        )

    @property
    def dedup_key(self) -> tuple[uuid.UUID, time]:
        """Key used to suppress repeat notifications; deliberately date-free."""
        return (self.medication_id, self.reminder_time)

    def scheduled_at(self, tz: tzinfo) -> datetime:
        """The occurrence's scheduled datetime: its date plus the schedule time."""
        return datetime.combine(self.date, self.reminder_time, tzinfo=tz)

    def __str__(self) -> str:
        return (
            f"{self.user_id}:{self.medication_id}:"
            f"{self.date.isoformat()}T{format_hhmm(self.reminder_time)}"
        )


@dataclass(frozen=True)
class PendingResponse:
    """A dispatched occurrence still waiting for a response until ``deadline``."""

    key: OccurrenceKey
    deadline: datetime


@dataclass
class EscalationResult:
    """Outcome of one missed-dose escalation sweep."""

    medications: list[uuid.UUID] = field(default_factory=list)
    alerts_sent: list[str] = field(default_factory=list)
    alerts_failed: list[str] = field(default_factory=list)
