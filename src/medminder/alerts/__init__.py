"""Family alert transports and the factory that picks one from config."""

from __future__ import annotations

from medminder.alerts.base import AlertSender, NullAlertSender
from medminder.alerts.relay import HttpRelayAlertSender
from medminder.alerts.smtp import SmtpAlertSender
from medminder.config import AlertBackend, AlertsConfig

__all__ = [
    "AlertSender",
    "HttpRelayAlertSender",
    "NullAlertSender",
    "SmtpAlertSender",
    "build_alert_sender",
]


def build_alert_sender(config: AlertsConfig) -> AlertSender:
    """Return the alert sender selected by ``[alerts].backend``."""
    if config.backend is AlertBackend.SMTP:
        return SmtpAlertSender(config.smtp)
    if config.backend is AlertBackend.HTTP:
        assert config.relay_url is not None
        return HttpRelayAlertSender(config.relay_url, timeout=config.relay_timeout_seconds)
    return NullAlertSender()
