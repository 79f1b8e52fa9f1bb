"""Medication reminder scheduling and adherence tracking."""

from medminder.reminders.models import (
    AdherenceRecord,
    AdherenceStatus,
    DueReminder,
    OccurrenceKey,
)
from medminder.reminders.service import ReminderService

__all__ = [
    "AdherenceRecord",
    "AdherenceStatus",
    "DueReminder",
    "OccurrenceKey",
    "ReminderService",
]
