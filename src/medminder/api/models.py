"""Pydantic response models for the reminder API.

All successful responses follow ``{"data": T, "meta": {...}}``; errors follow
``{"error": {"code": "...", "message": "..."}}``.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Generic, TypeVar
from uuid import UUID

from pydantic import BaseModel, Field

from medminder.reminders.models import (
    AdherenceRecord,
    DueReminder,
    OccurrenceKey,
    format_hhmm,
)


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Generic API response wrapper."""

    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    details: dict | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


class DueReminderModel(BaseModel):
    medication_id: UUID
    medication_name: str
    dosage: str
    instructions: str
    reminder_time: str
    schedule_id: UUID | None = None

    @classmethod
    def from_reminder(cls, reminder: DueReminder) -> DueReminderModel:
        return cls(
            medication_id=reminder.medication_id,
            medication_name=reminder.medication_name,
            dosage=reminder.dosage,
            instructions=reminder.instructions,
            reminder_time=format_hhmm(reminder.reminder_time),
            schedule_id=reminder.schedule_id,
        )


class PendingOccurrenceModel(BaseModel):
    """An occurrence whose response window is still open."""

    medication_id: UUID
    reminder_time: str
    occurrence_date: date

    @classmethod
    def from_key(cls, key: OccurrenceKey) -> PendingOccurrenceModel:
        return cls(
            medication_id=key.medication_id,
            reminder_time=format_hhmm(key.reminder_time),
            occurrence_date=key.date,
        )


class AdherenceRecordModel(BaseModel):
    id: UUID | None = None
    medication_id: UUID
    user_id: UUID
    scheduled_time: datetime
    status: str
    taken_at: datetime | None = None

    @classmethod
    def from_record(cls, record: AdherenceRecord) -> AdherenceRecordModel:
        return cls(
            id=record.id,
            medication_id=record.medication_id,
            user_id=record.user_id,
            scheduled_time=record.scheduled_time,
            status=str(record.status),
            taken_at=record.taken_at,
        )


class AdherenceResult(BaseModel):
    """Outcome of a taken/missed action.

    ``recorded`` is false when the write failed or was suppressed; the
    response window is closed either way.
    """

    status: str
    recorded: bool
    record: AdherenceRecordModel | None = None
