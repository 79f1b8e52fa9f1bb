"""Reminder service lifecycle: bind the reminder loop to one user session.

``ReminderService`` wires the resolver, dispatcher, adherence tracker,
escalation sweep and minute ticker together for a single user, and owns
their teardown: ``stop()`` cancels every timer before it returns.

Each ``start()`` opens a new session generation. Evaluations still in flight
when ``stop()`` runs notice the generation changed and drop their results
instead of arming timers for a session that no longer exists.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, time

from medminder.alerts.base import AlertSender, NullAlertSender
from medminder.config import ReminderSettings
from medminder.core.clock import Clock, MinuteTicker, format_time_of_day, system_clock
from medminder.core.logging import set_session_context
from medminder.core.metrics import ReminderMetrics
from medminder.core.tasks import BackgroundTasks
from medminder.core.telemetry import get_tracer
from medminder.notifications.base import NullNotifier, PlatformNotifier
from medminder.reminders.adherence import AdherenceTracker
from medminder.reminders.dispatcher import (
    NotificationDispatcher,
    RefreshCallback,
    ReminderCallback,
)
from medminder.reminders.escalation import MissedDoseSweep
from medminder.reminders.models import (
    AdherenceRecord,
    DueReminder,
    EscalationResult,
    OccurrenceKey,
    require_user_id,
)
from medminder.reminders.resolver import DueReminderResolver
from medminder.reminders.store import ReminderStore

logger = logging.getLogger(__name__)


class ReminderService:
    """Run the reminder loop for one user at a time."""

    def __init__(
        self,
        store: ReminderStore,
        settings: ReminderSettings | None = None,
        *,
        reminder_callback: ReminderCallback | None = None,
        refresh_callback: RefreshCallback | None = None,
        notifier: PlatformNotifier | None = None,
        alert_sender: AlertSender | None = None,
        clock: Clock | None = None,
        metrics: ReminderMetrics | None = None,
    ) -> None:
        self._settings = settings or ReminderSettings()
        self._clock = clock or system_clock(self._settings.zone())
        self._metrics = metrics or ReminderMetrics()
        self._notifier = notifier or NullNotifier(
            dismiss_after=self._settings.notification_dismiss_seconds
        )
        self._alert_sender = alert_sender or NullAlertSender()

        self.resolver = DueReminderResolver(store)
        self.tracker = AdherenceTracker(
            store,
            response_window=self._settings.response_window_seconds,
            clock=self._clock,
            on_change=refresh_callback,
            metrics=self._metrics,
        )
        self.dispatcher = NotificationDispatcher(
            self.tracker,
            notifier=self._notifier,
            dedup_window=self._settings.dedup_window_seconds,
            reminder_callback=reminder_callback,
            refresh_callback=refresh_callback,
            metrics=self._metrics,
        )
        self.sweep = MissedDoseSweep(
            store,
            self._alert_sender,
            self._notifier,
            days=self._settings.escalation_days,
            clock=self._clock,
            metrics=self._metrics,
        )
        self._ticker = MinuteTicker(
            self._on_tick,
            interval=self._settings.tick_interval_seconds,
            clock=self._clock,
        )

        self._user_id: uuid.UUID | None = None
        self._generation = 0
        self._tasks = BackgroundTasks("reminder-service")
        self.last_escalation: EscalationResult | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._user_id is not None

    @property
    def user_id(self) -> uuid.UUID | None:
        return self._user_id

    def now(self) -> datetime:
        """The current time as seen by the reminder loop."""
        return self._clock()

    @property
    def pending_occurrences(self) -> list[OccurrenceKey]:
        """Occurrences whose response window is still open."""
        return self.tracker.pending

    # ------------------------------------------------------------------
    # Callback registration (single slot each; re-registering overwrites)
    # ------------------------------------------------------------------

    def set_reminder_callback(self, callback: ReminderCallback | None) -> None:
        self.dispatcher.reminder_callback = callback

    def set_refresh_callback(self, callback: RefreshCallback | None) -> None:
        self.dispatcher.refresh_callback = callback
        self.tracker.on_change = callback

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, user_id: uuid.UUID | str) -> None:
        """Start the reminder loop for *user_id*. No-op if a session is running.

        Asks for notification permission, re-arms response windows left open
        by a previous process, evaluates the current minute immediately and
        starts the minute ticker. The missed-dose sweep runs once per start in
        the background, so slow alert delivery never holds back the ticker.
        """
        uid = require_user_id(user_id)
        if self.is_running:
            logger.debug("Reminder service already running for user %s", self._user_id)
            return

        self._generation += 1
        generation = self._generation
        self._user_id = uid
        set_session_context(str(uid))
        logger.info("Starting reminder service for user %s", uid)

        await self._notifier.request_permission()
        await self.tracker.recover(uid)
        await self.check_and_notify(uid)

        if generation != self._generation:
            logger.info("Reminder service stopped during startup; ticker not started")
            return
        self._ticker.start()
        self._tasks.spawn(self._escalate(uid, generation), name="missed-dose-sweep")

    async def _escalate(self, user_id: uuid.UUID, generation: int) -> None:
        result = await self.sweep.run(user_id)
        if generation == self._generation:
            self.last_escalation = result

    def stop(self) -> None:
        """Stop the loop and cancel every timer. Safe to call repeatedly."""
        was_running = self.is_running
        self._generation += 1
        self._ticker.stop()
        self.dispatcher.clear()
        self.tracker.cancel_all()
        self._user_id = None
        if was_running:
            logger.info("Reminder service stopped")
            set_session_context(None)

    async def close(self) -> None:
        """Stop, drain background work, and release notifier/alert transports."""
        self.stop()
        await self.wait_idle()
        await self._notifier.close()
        await self._alert_sender.close()

    async def wait_idle(self) -> None:
        """Wait until no tick, sweep, timeout write or callback task is in flight."""
        await self._tasks.wait_idle()
        await self._ticker.wait_idle()
        await self.dispatcher.wait_idle()
        await self.tracker.wait_idle()

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def _on_tick(self) -> None:
        if self._user_id is not None:
            await self.check_and_notify(self._user_id)

    async def check_and_notify(self, user_id: uuid.UUID | str) -> list[DueReminder]:
        """Resolve the reminders due this minute and dispatch the new ones.

        Returns the reminders that were surfaced. Nothing is dispatched when
        no session is running, or when the session ends mid-evaluation.
        """
        uid = require_user_id(user_id)
        generation = self._generation
        now = self._clock()

        with get_tracer().start_as_current_span("medminder.tick") as span:
            self._metrics.tick()
            due = await self.resolver.resolve(uid, format_time_of_day(now))
            span.set_attribute("reminders_due", len(due))

            if generation != self._generation or self._user_id != uid:
                if due:
                    logger.debug(
                        "Session changed during evaluation; dropping %d reminder(s)", len(due)
                    )
                span.set_attribute("reminders_dispatched", 0)
                return []

            dispatched = [r for r in due if self.dispatcher.dispatch(uid, r, now.date())]
            span.set_attribute("reminders_dispatched", len(dispatched))

        return dispatched

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    async def mark_taken(
        self, user_id: uuid.UUID | str, medication_id: uuid.UUID | str, reminder_time: str | time
    ) -> AdherenceRecord | None:
        return await self.tracker.mark_taken(user_id, medication_id, reminder_time)

    async def mark_missed(
        self, user_id: uuid.UUID | str, medication_id: uuid.UUID | str, reminder_time: str | time
    ) -> AdherenceRecord | None:
        return await self.tracker.mark_missed(user_id, medication_id, reminder_time)
