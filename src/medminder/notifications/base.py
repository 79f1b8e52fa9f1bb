"""Best-effort platform notifications.

A notifier asks for permission once per session and then shows short
notifications identified by a tag. Showing a notification whose tag is still
on screen replaces it. Unattended notifications are dismissed after
``dismiss_after`` seconds.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from typing import Any

from medminder.core.tasks import BackgroundTasks

logger = logging.getLogger(__name__)

DEFAULT_DISMISS_AFTER_SECONDS = 10.0


class PlatformNotifier(abc.ABC):
    """Base class for a platform notification channel."""

    def __init__(self, *, dismiss_after: float = DEFAULT_DISMISS_AFTER_SECONDS) -> None:
        self._dismiss_after = dismiss_after
        self._permission: bool | None = None
        self._dismiss_handles: dict[str, asyncio.TimerHandle] = {}
        self._tasks = BackgroundTasks("notifier")

    @property
    def permission_granted(self) -> bool:
        return bool(self._permission)

    async def request_permission(self) -> bool:
        """Ask for permission once; later calls return the cached answer."""
        if self._permission is None:
            try:
                self._permission = await self._request_permission()
            except Exception:
                logger.exception("Error requesting notification permission")
                self._permission = False
            logger.info("Notification permission granted=%s", self._permission)
        return self._permission

    def reset_permission(self) -> None:
        """Forget the cached permission so the next session asks again."""
        self._permission = None

    async def show(self, title: str, body: str, *, tag: str) -> bool:
        """Show a notification. Returns False when not permitted or on error."""
        if not self.permission_granted:
            logger.debug("Notifications not available or not granted; skipping %s", tag)
            return False

        self._cancel_dismiss(tag)
        try:
            handle = await self._show(title, body, tag)
        except Exception:
            logger.exception("Error showing notification %s", tag)
            return False

        if handle is not None and self._dismiss_after > 0:
            loop = asyncio.get_running_loop()
            self._dismiss_handles[tag] = loop.call_later(
                self._dismiss_after, self._on_dismiss_timeout, tag, handle
            )
        return True

    async def close(self) -> None:
        """Cancel pending auto-dismiss timers and wait for in-flight dismissals."""
        for handle in self._dismiss_handles.values():
            handle.cancel()
        self._dismiss_handles.clear()
        await self._tasks.wait_idle()

    def _cancel_dismiss(self, tag: str) -> None:
        handle = self._dismiss_handles.pop(tag, None)
        if handle is not None:
            handle.cancel()

    def _on_dismiss_timeout(self, tag: str, handle: Any) -> None:
        self._dismiss_handles.pop(tag, None)
        self._tasks.spawn(self._safe_dismiss(tag, handle), name=f"dismiss-{tag}")

    async def _safe_dismiss(self, tag: str, handle: Any) -> None:
        try:
            await self._dismiss(tag, handle)
        except Exception:
            logger.warning("Failed to dismiss notification %s", tag, exc_info=True)

    @abc.abstractmethod
    async def _request_permission(self) -> bool: ...

    @abc.abstractmethod
    async def _show(self, title: str, body: str, tag: str) -> Any:
        """Display the notification; return a handle for dismissal or None."""

    async def _dismiss(self, tag: str, handle: Any) -> None:  # noqa: ARG002
        return None


class NullNotifier(PlatformNotifier):
    """A channel that never obtains permission, so every ``show`` is a no-op."""

    async def _request_permission(self) -> bool:
        return False

    async def _show(self, title: str, body: str, tag: str) -> Any:  # noqa: ARG002
        return None
