"""Missed-dose escalation: alert family contacts about repeated misses."""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from datetime import date, timedelta

from medminder.alerts.base import AlertSender
from medminder.core.clock import Clock, system_clock
from medminder.core.metrics import ReminderMetrics
from medminder.core.telemetry import traced
from medminder.notifications.base import NullNotifier, PlatformNotifier
from medminder.reminders.models import MISSED_STATUSES, EscalationResult, require_user_id
from medminder.reminders.store import ReminderStore

logger = logging.getLogger(__name__)

DEFAULT_ESCALATION_DAYS = 3


def alert_subject(medication_name: str) -> str:
    return f"Urgent: Missed Medication Alert - {medication_name}"


def alert_message(contact_name: str, medication_name: str, days: int) -> str:
    return (
        f"Hello {contact_name}, checking in for {medication_name}. "
        f"The patient has missed {days} consecutive doses. Please check on them."
    )


class MissedDoseSweep:
    """Find medications missed on enough distinct days and alert the family.

    A medication qualifies when missed or auto-not-taken records fall on at
    least ``days`` distinct local calendar days within the last ``days`` days.
    The days need not be consecutive and the count is per medication.
    """

    def __init__(
        self,
        store: ReminderStore,
        alert_sender: AlertSender,
        notifier: PlatformNotifier | None = None,
        *,
        days: int = DEFAULT_ESCALATION_DAYS,
        clock: Clock | None = None,
        metrics: ReminderMetrics | None = None,
    ) -> None:
        if days < 1:
            raise ValueError(f"days must be >= 1, got {days!r}")
        self._store = store
        self._alert_sender = alert_sender
        self._notifier = notifier or NullNotifier()
        self._days = days
        self._clock = clock or system_clock()
        self._metrics = metrics or ReminderMetrics()

    @traced("medminder.escalation.sweep")
    async def run(self, user_id: uuid.UUID | str) -> EscalationResult:
        """Run one sweep for *user_id*. Never raises on store or transport errors."""
        uid = require_user_id(user_id)
        result = EscalationResult()
        now = self._clock()
        since = now - timedelta(days=self._days)

        try:
            records = await self._store.list_adherence_records_since(uid, since, MISSED_STATUSES)
        except Exception:
            logger.exception("Failed to load missed doses for user %s", uid)
            return result
        if not records:
            return result

        tz = now.tzinfo
        missed_days: dict[uuid.UUID, set[date]] = defaultdict(set)
        for record in records:
            scheduled = record.scheduled_time
            local = scheduled.astimezone(tz) if scheduled.tzinfo is not None else scheduled
            missed_days[record.medication_id].add(local.date())

        for medication_id, days in missed_days.items():
            if len(days) < self._days:
                continue
            logger.warning(
                "Medication %s missed on %d day(s) since %s", medication_id, len(days), since.date()
            )
            result.medications.append(medication_id)
            await self._escalate(uid, medication_id, result)

        return result

    async def _escalate(
        self, user_id: uuid.UUID, medication_id: uuid.UUID, result: EscalationResult
    ) -> None:
        try:
            medication = await self._store.get_medication(medication_id)
            contacts = await self._store.list_family_contacts_with_email(user_id)
        except Exception:
            logger.exception("Failed to load escalation details for medication %s", medication_id)
            return

        if not contacts:
            logger.info("No family contacts with email for user %s; nothing to alert", user_id)
            return

        name = medication.name if medication is not None else str(medication_id)
        subject = alert_subject(name)
        for contact in contacts:
            if not contact.email:
                continue
            logger.info("Alerting %s (%s) about missed %s", contact.name, contact.email, name)
            sent = await self._alert_sender.send_alert(
                contact.email, subject, alert_message(contact.name, name, self._days)
            )
            self._metrics.alert(sent=sent)
            (result.alerts_sent if sent else result.alerts_failed).append(contact.email)

        await self._notifier.show(
            "Family Alert Triggered",
            f"We've notified your family members about missed doses of {name}.",
            tag=f"family-alert-{medication_id}",
        )
