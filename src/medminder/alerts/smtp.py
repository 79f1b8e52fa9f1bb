"""Email alerts over SMTP."""

from __future__ import annotations

import asyncio
import logging
import os
import smtplib
from email.mime.text import MIMEText

from medminder.alerts.base import AlertSender
from medminder.config import SmtpConfig

logger = logging.getLogger(__name__)


class SmtpAlertSender(AlertSender):
    """Send alerts as plain-text email.

    Credentials are read from the environment variables named in the
    config at send time, never stored in the config itself.
    """

    def __init__(self, config: SmtpConfig) -> None:
        self._config = config

    def _get_credentials(self) -> tuple[str, str]:
        """Read SMTP credentials from environment variables.

        Raises ``RuntimeError`` if either variable is not set.
        """
        address = os.environ.get(self._config.address_env)
        password = os.environ.get(self._config.password_env)
        if not address or not password:
            raise RuntimeError(
                f"Missing SMTP credentials: set {self._config.address_env} and "
                f"{self._config.password_env}"
            )
        return address, password

    def _smtp_send(self, to: str, subject: str, body: str) -> None:
        """Blocking SMTP send, intended to be run via ``asyncio.to_thread``."""
        address, password = self._get_credentials()

        msg = MIMEText(body)
        msg["Subject"] = subject
        msg["From"] = address
        msg["To"] = to

        server = smtplib.SMTP(
            self._config.host, self._config.port, timeout=self._config.timeout_seconds
        )
        try:
            if self._config.use_tls:
                server.starttls()
            server.login(address, password)
            server.sendmail(address, [to], msg.as_string())
        finally:
            try:
                server.quit()
            except (smtplib.SMTPException, OSError):
                # the server may already have dropped the connection
                logger.debug("SMTP quit failed after send to %s", to, exc_info=True)

    async def _send(self, to: str, subject: str, message: str) -> None:
        await asyncio.to_thread(self._smtp_send, to, subject, message)
