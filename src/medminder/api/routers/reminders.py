"""Reminder endpoints: due reminders, open response windows, and dose actions."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query

from medminder.api.deps import get_service, get_user_id
from medminder.api.models import (
    AdherenceRecordModel,
    AdherenceResult,
    ApiMeta,
    ApiResponse,
    DueReminderModel,
    PendingOccurrenceModel,
)
from medminder.core.clock import format_time_of_day
from medminder.reminders.models import AdherenceRecord, AdherenceStatus
from medminder.reminders.service import ReminderService

router = APIRouter(prefix="/api/reminders", tags=["reminders"])


def _result(status: AdherenceStatus, record: AdherenceRecord | None) -> AdherenceResult:
    return AdherenceResult(
        status=str(status),
        recorded=record is not None,
        record=AdherenceRecordModel.from_record(record) if record is not None else None,
    )


@router.get("/due", response_model=ApiResponse[list[DueReminderModel]])
async def list_due(
    at: str | None = Query(default=None, description="Time of day as HH:MM; defaults to now"),
    service: ReminderService = Depends(get_service),
    user_id: uuid.UUID = Depends(get_user_id),
) -> ApiResponse[list[DueReminderModel]]:
    """Medications due at *at* (or the current minute)."""
    time_of_day = at if at is not None else format_time_of_day(service.now())
    due = await service.resolver.resolve(user_id, time_of_day)
    return ApiResponse(
        data=[DueReminderModel.from_reminder(r) for r in due],
        meta=ApiMeta(at=time_of_day),
    )


@router.get("/pending", response_model=ApiResponse[list[PendingOccurrenceModel]])
async def list_pending(
    service: ReminderService = Depends(get_service),
) -> ApiResponse[list[PendingOccurrenceModel]]:
    """Occurrences still inside their response window."""
    return ApiResponse(
        data=[PendingOccurrenceModel.from_key(k) for k in service.pending_occurrences]
    )


@router.post(
    "/{medication_id}/{reminder_time}/taken", response_model=ApiResponse[AdherenceResult]
)
async def mark_taken(
    medication_id: str,
    reminder_time: str,
    service: ReminderService = Depends(get_service),
    user_id: uuid.UUID = Depends(get_user_id),
) -> ApiResponse[AdherenceResult]:
    record = await service.mark_taken(user_id, medication_id, reminder_time)
    return ApiResponse(data=_result(AdherenceStatus.TAKEN, record))


@router.post(
    "/{medication_id}/{reminder_time}/missed", response_model=ApiResponse[AdherenceResult]
)
async def mark_missed(
    medication_id: str,
    reminder_time: str,
    service: ReminderService = Depends(get_service),
    user_id: uuid.UUID = Depends(get_user_id),
) -> ApiResponse[AdherenceResult]:
    record = await service.mark_missed(user_id, medication_id, reminder_time)
    return ApiResponse(data=_result(AdherenceStatus.MISSED, record))
