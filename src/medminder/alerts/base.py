"""Outbound family alert transport contract."""

from __future__ import annotations

import abc
import logging

logger = logging.getLogger(__name__)


class AlertSender(abc.ABC):
    """Deliver one alert message to one recipient.

    ``send_alert`` never raises: transport failures are logged and reported
    as ``False`` so a failing recipient does not stop the others.
    """

    async def send_alert(self, to: str, subject: str, message: str) -> bool:
        if not to or not to.strip():
            logger.warning("Skipping alert %r: empty recipient", subject)
            return False
        try:
            await self._send(to.strip(), subject, message)
        except Exception:
            logger.exception("Failed to send alert to %s", to)
            return False
        logger.info("Alert sent to %s: %s", to, subject)
        return True

    @abc.abstractmethod
    async def _send(self, to: str, subject: str, message: str) -> None: ...

    async def close(self) -> None:  # noqa: B027
        """Release transport resources. No-op by default."""


class NullAlertSender(AlertSender):
    """Used when no alert backend is configured; every alert is dropped."""

    async def send_alert(self, to: str, subject: str, message: str) -> bool:  # noqa: ARG002
        logger.warning("No alert backend configured; dropping alert to %s: %s", to, subject)
        return False

    async def _send(self, to: str, subject: str, message: str) -> None:
        raise RuntimeError("No alert backend configured")
