"""Per-occurrence adherence lifecycle.

Each dispatched occurrence gets a response-window timer. The user can close
the window by marking the dose ``taken`` or ``missed``; if the timer fires
first the occurrence is recorded as ``not_taken_auto``. A timer firing after
a user action never overwrites it: the store's upsert is a compare-and-swap
on the stored status, so the guard holds even when both writes race.

Open windows are also persisted as pending responses so that ``recover()``
can re-arm them after a restart.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import date, time, timedelta
from typing import Any

from medminder.core.clock import Clock, system_clock
from medminder.core.metrics import ReminderMetrics
from medminder.core.tasks import BackgroundTasks
from medminder.core.telemetry import traced
from medminder.reminders.models import (
    AdherenceRecord,
    AdherenceStatus,
    OccurrenceKey,
    PendingResponse,
)
from medminder.reminders.store import ReminderStore

logger = logging.getLogger(__name__)

DEFAULT_RESPONSE_WINDOW_SECONDS = 300.0


class AdherenceTracker:
    """Own the response-window timers and every adherence write."""

    def __init__(
        self,
        store: ReminderStore,
        *,
        response_window: float = DEFAULT_RESPONSE_WINDOW_SECONDS,
        clock: Clock | None = None,
        on_change: Callable[[], Any] | None = None,
        metrics: ReminderMetrics | None = None,
    ) -> None:
        if response_window <= 0:
            raise ValueError(f"response_window must be > 0, got {response_window!r}")
        self._store = store
        self._response_window = response_window
        self._clock = clock or system_clock()
        self.on_change = on_change
        self._metrics = metrics or ReminderMetrics()
        self._timers: dict[OccurrenceKey, asyncio.TimerHandle] = {}
        self._tasks = BackgroundTasks("adherence")

    @property
    def pending(self) -> list[OccurrenceKey]:
        """Occurrences whose response window is still open."""
        return list(self._timers)

    def _today(self) -> date:
        return self._clock().date()

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def arm(self, key: OccurrenceKey) -> None:
        """Open (or restart) the response window for *key*.

        Re-arming an occurrence that already has a timer cancels the old one.
        """
        deadline = self._clock() + timedelta(seconds=self._response_window)
        self._arm_in(key, self._response_window)
        self._tasks.spawn(
            self._persist_pending(PendingResponse(key=key, deadline=deadline)),
            name=f"pending-save-{key}",
        )

    def _arm_in(self, key: OccurrenceKey, delay: float) -> None:
        previous = self._timers.pop(key, None)
        if previous is not None:
            previous.cancel()
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(max(delay, 0.0), self._on_timeout, key)
        logger.debug("Response window armed for %s (%.1fs)", key, delay)

    def cancel(self, key: OccurrenceKey) -> bool:
        """Cancel the timer for *key*. Returns True if one was outstanding."""
        handle = self._timers.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        """Cancel every outstanding timer. Persisted windows are kept for recovery."""
        for handle in self._timers.values():
            handle.cancel()
        if self._timers:
            logger.debug("Cancelled %d response window(s)", len(self._timers))
        self._timers.clear()

    def _on_timeout(self, key: OccurrenceKey) -> None:
        self._timers.pop(key, None)
        self._tasks.spawn(self._expire(key), name=f"timeout-{key}")

    async def _expire(self, key: OccurrenceKey) -> None:
        """Record ``not_taken_auto`` unless the user already responded."""
        record = await self.record_status(
            key, AdherenceStatus.NOT_TAKEN_AUTO, skip_if_completed=True
        )
        if record is None:
            self._metrics.timeout_discarded()

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    async def mark_taken(
        self,
        user_id: uuid.UUID | str,
        medication_id: uuid.UUID | str,
        reminder_time: str | time,
        *,
        on: date | None = None,
    ) -> AdherenceRecord | None:
        """Close the window for an occurrence as taken, stamping ``taken_at``."""
        key = OccurrenceKey.for_reminder(user_id, medication_id, reminder_time, on or self._today())
        self.cancel(key)
        return await self.record_status(key, AdherenceStatus.TAKEN)

    async def mark_missed(
        self,
        user_id: uuid.UUID | str,
        medication_id: uuid.UUID | str,
        reminder_time: str | time,
        *,
        on: date | None = None,
    ) -> AdherenceRecord | None:
        """Close the window for an occurrence as explicitly missed."""
        key = OccurrenceKey.for_reminder(user_id, medication_id, reminder_time, on or self._today())
        self.cancel(key)
        return await self.record_status(key, AdherenceStatus.MISSED)

    @traced("medminder.adherence.record")
    async def record_status(
        self,
        key: OccurrenceKey,
        status: AdherenceStatus,
        *,
        skip_if_completed: bool = False,
    ) -> AdherenceRecord | None:
        """Upsert the adherence record for *key*.

        ``taken_at`` is set to now only for ``taken``. With
        ``skip_if_completed`` an existing ``taken``/``missed`` record is left
        untouched. Returns the written record, or ``None`` when the write was
        skipped or failed. Failures are logged, never raised.
        """
        now = self._clock()
        scheduled_at = key.scheduled_at(now.tzinfo)

        if status is not AdherenceStatus.NOT_TAKEN_AUTO:
            self.cancel(key)

        if skip_if_completed:
            try:
                existing = await self._store.get_adherence_record(
                    key.medication_id, key.user_id, scheduled_at
                )
            except Exception:
                logger.exception("Failed to read adherence record for %s", key)
                existing = None
            if existing is not None and existing.status.user_authored:
                logger.debug("Skipping %s for %s; already %s", status, key, existing.status)
                await self._forget_pending(key)
                return None

        try:
            record = await self._store.upsert_adherence_record(
                AdherenceRecord(
                    medication_id=key.medication_id,
                    user_id=key.user_id,
                    scheduled_time=scheduled_at,
                    status=status,
                    taken_at=now if status is AdherenceStatus.TAKEN else None,
                ),
                skip_if_completed=skip_if_completed,
            )
        except Exception:
            logger.exception("Failed to record %s for %s", status, key)
            return None

        await self._forget_pending(key)
        if record is None:
            logger.debug("Write of %s for %s suppressed; already completed", status, key)
            return None

        logger.info(
            "Adherence recorded: medication=%s scheduled=%s status=%s",
            key.medication_id,
            scheduled_at.isoformat(),
            status,
        )
        self._metrics.adherence_written(str(status))
        self._tasks.invoke(self.on_change, label="refresh")
        return record

    # ------------------------------------------------------------------
    # Persistence of open windows
    # ------------------------------------------------------------------

    async def recover(self, user_id: uuid.UUID | str) -> int:
        """Re-arm response windows persisted by a previous session.

        Windows whose deadline already passed expire immediately. Returns the
        number of windows recovered.
        """
        uid = user_id if isinstance(user_id, uuid.UUID) else uuid.UUID(str(user_id))
        try:
            pending = await self._store.list_pending_responses(uid)
        except Exception:
            logger.exception("Failed to load pending responses for user %s", uid)
            return 0

        now = self._clock()
        for item in pending:
            remaining = (item.deadline - now).total_seconds()
            if remaining <= 0:
                logger.info("Pending response %s expired while stopped", item.key)
                self._timers.pop(item.key, None)
                self._tasks.spawn(self._expire(item.key), name=f"timeout-{item.key}")
            else:
                self._arm_in(item.key, remaining)
        if pending:
            logger.info("Recovered %d pending response window(s)", len(pending))
        return len(pending)

    async def _persist_pending(self, pending: PendingResponse) -> None:
        try:
            await self._store.save_pending_response(pending)
        except Exception:
            logger.exception("Failed to persist pending response %s", pending.key)

    async def _forget_pending(self, key: OccurrenceKey) -> None:
        try:
            await self._store.delete_pending_response(key)
        except Exception:
            logger.exception("Failed to delete pending response %s", key)

    async def wait_idle(self) -> None:
        """Wait for in-flight timeout writes and persistence tasks."""
        await self._tasks.wait_idle()

