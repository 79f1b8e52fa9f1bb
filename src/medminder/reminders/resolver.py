"""Due-reminder resolution: which doses are due for a user at a given minute."""

from __future__ import annotations

import logging
import uuid
from datetime import time

from medminder.reminders.models import (
    DueReminder,
    format_hhmm,
    parse_time_of_day,
    require_user_id,
)
from medminder.reminders.store import ReminderStore

logger = logging.getLogger(__name__)


class DueReminderResolver:
    """Cross-reference active schedules against a user's active medications.

    Schedules do not carry an owner, so ownership and soft deletion are both
    enforced by intersecting with the user's active medications. Matching is
    exact to the minute; there is no tolerance window.
    """

    def __init__(self, store: ReminderStore) -> None:
        self._store = store

    async def resolve(
        self, user_id: uuid.UUID | str, time_of_day: str | time
    ) -> list[DueReminder]:
        """Return the reminders due for *user_id* at *time_of_day* (``HH:MM``).

        A failure in either lookup is logged and yields an empty list; this
        runs inside an unattended loop and must never raise on I/O errors.

        Raises:
            ValueError: If *user_id* is empty or *time_of_day* is not ``HH:MM``.
        """
        uid = require_user_id(user_id)
        at = parse_time_of_day(time_of_day)

        try:
            schedules = await self._store.list_active_schedules_at(at)
        except Exception:
            logger.exception("Failed to fetch schedules due at %s", format_hhmm(at))
            return []
        if not schedules:
            return []

        try:
            medications = await self._store.list_active_medications_for_user(uid)
        except Exception:
            logger.exception("Failed to fetch active medications for user %s", uid)
            return []

        by_id = {m.id: m for m in medications if m.active}
        due: list[DueReminder] = []
        # Identical-time duplicates for one medication are kept as separate entries.
        for schedule in schedules:
            if not schedule.active:
                continue
            med = by_id.get(schedule.medication_id)
            if med is None:
                continue
            due.append(
                DueReminder(
                    medication_id=med.id,
                    medication_name=med.name,
                    dosage=med.dosage,
                    instructions=med.instructions,
                    reminder_time=schedule.reminder_time,
                    schedule_id=schedule.id,
                )
            )

        if due:
            logger.debug("Resolved %d due reminder(s) at %s", len(due), format_hhmm(at))
        return due
