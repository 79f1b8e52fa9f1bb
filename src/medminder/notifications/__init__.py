"""Platform notification channels used when no in-app handler is registered."""

from medminder.config import TelegramConfig
from medminder.notifications.base import NullNotifier, PlatformNotifier
from medminder.notifications.telegram import TelegramNotifier

__all__ = ["NullNotifier", "PlatformNotifier", "TelegramNotifier", "build_notifier"]


def build_notifier(config: TelegramConfig, *, dismiss_after: float) -> PlatformNotifier:
    """Return the platform notifier selected by ``[notifications.telegram]``."""
    if config.enabled:
        return TelegramNotifier(config, dismiss_after=dismiss_after)
    return NullNotifier(dismiss_after=dismiss_after)
