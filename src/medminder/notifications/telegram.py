"""Telegram notifier: reminders delivered as bot messages.

Permission is granted when a bot token is present in the configured
environment variable and the Bot API accepts it (``getMe``). "Dismissing" a
notification deletes the bot message; re-showing a tag deletes the message
previously shown under that tag so only the newest one stays on screen.
"""

from __future__ import annotations

import logging
import os
from typing import Any

import httpx

from medminder.config import TelegramConfig
from medminder.notifications.base import DEFAULT_DISMISS_AFTER_SECONDS, PlatformNotifier

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org/bot{token}"


class TelegramNotifier(PlatformNotifier):
    """Show reminders in a Telegram chat through the Bot API."""

    def __init__(
        self,
        config: TelegramConfig,
        *,
        dismiss_after: float = DEFAULT_DISMISS_AFTER_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(dismiss_after=dismiss_after)
        self._config = config
        self._client = client
        self._owns_client = client is None
        self._messages: dict[str, int] = {}

    def _get_bot_token(self) -> str | None:
        return os.environ.get(self._config.bot_token_env) or None

    def _base_url(self) -> str:
        token = self._get_bot_token()
        if not token:
            raise RuntimeError(
                f"Missing Telegram bot token: set {self._config.bot_token_env}"
            )
        return TELEGRAM_API_BASE.format(token=token)

    def _get_client(self) -> httpx.AsyncClient:
        """Return the HTTP client, creating one if needed."""
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def _call(self, method: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self._base_url()}/{method}"
        resp = await self._get_client().post(url, json=payload or {})
        resp.raise_for_status()
        data: dict[str, Any] = resp.json()
        if not data.get("ok", False):
            raise RuntimeError(f"Telegram {method} failed: {data.get('description', data)}")
        return data

    async def _request_permission(self) -> bool:
        if not self._config.enabled or not self._config.chat_id:
            logger.info("Telegram notifications disabled")
            return False
        if self._get_bot_token() is None:
            logger.warning(
                "Telegram notifications enabled but %s is not set", self._config.bot_token_env
            )
            return False
        data = await self._call("getMe")
        logger.info("Telegram notifications enabled for bot %s", data["result"].get("username"))
        return True

    async def _show(self, title: str, body: str, tag: str) -> int:
        previous = self._messages.pop(tag, None)
        if previous is not None:
            await self._delete_message(previous)

        data = await self._call(
            "sendMessage", {"chat_id": self._config.chat_id, "text": f"{title}\n\n{body}"}
        )
        message_id: int = data["result"]["message_id"]
        self._messages[tag] = message_id
        return message_id

    async def _dismiss(self, tag: str, handle: Any) -> None:
        if self._messages.get(tag) == handle:
            del self._messages[tag]
        await self._delete_message(handle)

    async def _delete_message(self, message_id: int) -> None:
        try:
            await self._call(
                "deleteMessage", {"chat_id": self._config.chat_id, "message_id": message_id}
            )
        except (httpx.HTTPError, RuntimeError):
            logger.warning("Failed to delete Telegram message %s", message_id, exc_info=True)

    async def close(self) -> None:
        await super().close()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
