"""Surface each due reminder exactly once per dedup window."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import date, time
from typing import Any

from medminder.core.metrics import ReminderMetrics
from medminder.core.tasks import BackgroundTasks
from medminder.notifications.base import NullNotifier, PlatformNotifier
from medminder.reminders.adherence import AdherenceTracker
from medminder.reminders.models import DueReminder, OccurrenceKey, format_hhmm

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_WINDOW_SECONDS = 61.0

ReminderCallback = Callable[[DueReminder], Any]
RefreshCallback = Callable[[], Any]


def notification_content(reminder: DueReminder) -> tuple[str, str, str]:
    """Return ``(title, body, tag)`` for the platform notification of *reminder*."""
    title = f"Medication Reminder: {reminder.medication_name}"
    body = f"Take {reminder.dosage} at {format_hhmm(reminder.reminder_time)}"
    if reminder.instructions:
        body = f"{body}\n{reminder.instructions}"
    return title, body, f"reminder-{reminder.medication_id}"


class NotificationDispatcher:
    """Deduplicate due reminders and hand new ones to the user.

    The dedup key is ``(medication_id, reminder_time)``; it is held for
    ``dedup_window`` seconds, just long enough that the next tick inside the
    same minute (or a duplicate schedule row) does not notify twice. A new
    reminder arms its response window, fires the refresh callback and is then
    delivered to the reminder callback, or to the platform notifier when no
    callback is registered.
    """

    def __init__(
        self,
        tracker: AdherenceTracker,
        *,
        notifier: PlatformNotifier | None = None,
        dedup_window: float = DEFAULT_DEDUP_WINDOW_SECONDS,
        reminder_callback: ReminderCallback | None = None,
        refresh_callback: RefreshCallback | None = None,
        metrics: ReminderMetrics | None = None,
    ) -> None:
        self._tracker = tracker
        self._notifier = notifier or NullNotifier()
        self._dedup_window = dedup_window
        self.reminder_callback = reminder_callback
        self.refresh_callback = refresh_callback
        self._metrics = metrics or ReminderMetrics()
        self._seen: dict[tuple[uuid.UUID, time], asyncio.TimerHandle] = {}
        self._tasks = BackgroundTasks("dispatcher")

    @property
    def recently_notified(self) -> set[tuple[uuid.UUID, time]]:
        return set(self._seen)

    def dispatch(self, user_id: uuid.UUID | str, reminder: DueReminder, today: date) -> bool:
        """Notify about *reminder* unless it was notified within the dedup window.

        Returns True when the reminder was surfaced.
        """
        key = OccurrenceKey.for_reminder(
            user_id, reminder.medication_id, reminder.reminder_time, today
        )
        dedup_key = key.dedup_key
        if dedup_key in self._seen:
            logger.debug("Reminder %s already notified; suppressed", key)
            self._metrics.reminder_suppressed()
            return False

        loop = asyncio.get_running_loop()
        self._seen[dedup_key] = loop.call_later(self._dedup_window, self._expire, dedup_key)

        self._tracker.arm(key)
        self._tasks.invoke(self.refresh_callback, label="refresh")

        if self.reminder_callback is not None:
            self._tasks.invoke(self.reminder_callback, reminder, label="reminder")
        else:
            title, body, tag = notification_content(reminder)
            self._tasks.spawn(self._notifier.show(title, body, tag=tag), name=tag)

        logger.info(
            "Reminder due: %s %s at %s",
            reminder.medication_name,
            reminder.dosage,
            format_hhmm(reminder.reminder_time),
        )
        self._metrics.reminder_dispatched()
        return True

    def _expire(self, dedup_key: tuple[uuid.UUID, time]) -> None:
        self._seen.pop(dedup_key, None)

    def clear(self) -> None:
        """Forget every recently notified reminder and cancel the expiry timers."""
        for handle in self._seen.values():
            handle.cancel()
        self._seen.clear()

    async def wait_idle(self) -> None:
        await self._tasks.wait_idle()
