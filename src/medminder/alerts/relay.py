"""Alerts posted to an HTTP relay (for example a hosted email function)."""

from __future__ import annotations

import logging

import httpx

from medminder.alerts.base import AlertSender

logger = logging.getLogger(__name__)


class HttpRelayAlertSender(AlertSender):
    """POST ``{"to", "subject", "message"}`` as JSON to a relay endpoint.

    Any non-2xx response counts as a failed alert.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def _send(self, to: str, subject: str, message: str) -> None:
        resp = await self._get_client().post(
            self._url, json={"to": to, "subject": subject, "message": message}
        )
        resp.raise_for_status()

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
