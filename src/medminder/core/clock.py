"""Wall-clock helpers and the minute-aligned tick source.

``MinuteTicker`` invokes an async callback once per interval, with the first
invocation aligned to the next wall-clock boundary rather than a fixed offset
from start. All scheduling goes through ``loop.call_later`` handles so that
``stop()`` can cancel everything synchronously.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, tzinfo

from medminder.core.tasks import BackgroundTasks

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

DEFAULT_TICK_INTERVAL_SECONDS = 60.0


def system_clock(tz: tzinfo | None = None) -> Clock:
    """Return a clock reading the current time in *tz* (system local when None)."""

    def _now() -> datetime:
        if tz is None:
            return datetime.now().astimezone()
        return datetime.now(tz)

    return _now


def format_time_of_day(moment: datetime) -> str:
    """Truncate *moment* to minute granularity as ``HH:MM`` (24-hour)."""
    return moment.strftime("%H:%M")


def seconds_until_next_boundary(
    now: datetime, interval: float = DEFAULT_TICK_INTERVAL_SECONDS
) -> float:
    """Seconds from *now* until the next multiple of *interval* since midnight.

    For the default 60 second interval this is ``60 - currentSeconds``
    (fractional seconds included). Exactly on a boundary, the next boundary
    is a full interval away.
    """
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    elapsed = (now - midnight).total_seconds()
    return interval - (elapsed % interval)


class MinuteTicker:
    """Call *callback* on every wall-clock interval boundary until stopped.

    ``start()`` arms a one-shot alignment timer for the next boundary; when it
    fires the callback runs and a recurring timer takes over. Each callback
    invocation runs as its own task, so a slow evaluation never delays or
    blocks the next one. Callback exceptions are logged and swallowed.
    """

    def __init__(
        self,
        callback: Callable[[], Awaitable[None]],
        *,
        interval: float = DEFAULT_TICK_INTERVAL_SECONDS,
        clock: Clock | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval!r}")
        self._callback = callback
        self._interval = interval
        self._clock = clock or system_clock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._align_handle: asyncio.TimerHandle | None = None
        self._interval_handle: asyncio.TimerHandle | None = None
        self._tasks = BackgroundTasks("ticker")

    @property
    def running(self) -> bool:
        return self._align_handle is not None or self._interval_handle is not None

    @property
    def interval(self) -> float:
        return self._interval

    def start(self) -> None:
        """Arm the alignment timer. No-op when already running."""
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        delay = seconds_until_next_boundary(self._clock(), self._interval)
        logger.debug("Ticker aligned; first tick in %.3fs", delay)
        self._align_handle = self._loop.call_later(delay, self._on_boundary)

    def stop(self) -> None:
        """Cancel the alignment timer and the recurring timer. Safe to repeat."""
        if self._align_handle is not None:
            self._align_handle.cancel()
            self._align_handle = None
        if self._interval_handle is not None:
            self._interval_handle.cancel()
            self._interval_handle = None

    async def wait_idle(self) -> None:
        """Wait for every in-flight callback invocation to finish."""
        await self._tasks.wait_idle()

    def _on_boundary(self) -> None:
        self._align_handle = None
        self._fire()
        self._schedule_next()

    def _on_interval(self) -> None:
        self._interval_handle = None
        self._fire()
        self._schedule_next()

    def _schedule_next(self) -> None:
        assert self._loop is not None
        self._interval_handle = self._loop.call_later(self._interval, self._on_interval)

    def _fire(self) -> None:
        self._tasks.spawn(self._run_callback(), name="medminder-tick")

    async def _run_callback(self) -> None:
        try:
            await self._callback()
        except Exception:
            logger.exception("Reminder tick failed")
