"""Tests for PlatformNotifier permission caching, tag replacement and auto-dismiss."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from medminder.config import TelegramConfig
from medminder.notifications import NullNotifier, TelegramNotifier, build_notifier
from medminder.notifications.base import PlatformNotifier
from tests.conftest import RecordingNotifier

pytestmark = pytest.mark.unit


class _ExplodingNotifier(PlatformNotifier):
    def __init__(self, *, fail_permission: bool = False) -> None:
        super().__init__()
        self._fail_permission = fail_permission

    async def _request_permission(self) -> bool:
        if self._fail_permission:
            raise RuntimeError("no platform")
        return True

    async def _show(self, title: str, body: str, tag: str) -> Any:
        raise RuntimeError("display failed")


class TestPermission:
    async def test_asked_once_and_cached(self):
        n = RecordingNotifier()
        assert await n.request_permission() is True
        assert await n.request_permission() is True
        assert n.permission_requests == 1
        assert n.permission_granted

    async def test_reset_asks_again(self):
        n = RecordingNotifier(granted=False)
        assert await n.request_permission() is False
        n.granted = True
        n.reset_permission()
        assert await n.request_permission() is True
        assert n.permission_requests == 2

    async def test_error_counts_as_denied(self, caplog):
        n = _ExplodingNotifier(fail_permission=True)
        assert await n.request_permission() is False
        assert "Error requesting notification permission" in caplog.text


class TestShow:
    async def test_not_shown_without_permission(self):
        n = RecordingNotifier(granted=False)
        await n.request_permission()
        assert await n.show("t", "b", tag="x") is False
        assert n.shown == []

    async def test_not_shown_before_asking(self):
        n = RecordingNotifier()
        assert await n.show("t", "b", tag="x") is False

    async def test_show_error_returns_false(self, caplog):
        n = _ExplodingNotifier()
        await n.request_permission()
        assert await n.show("t", "b", tag="x") is False
        assert "Error showing notification x" in caplog.text

    async def test_auto_dismiss_after_delay(self):
        n = RecordingNotifier(dismiss_after=0.03)
        await n.request_permission()
        assert await n.show("Medication Reminder: A", "Take 1 at 08:00", tag="reminder-a")
        assert n.dismissed == []
        await asyncio.sleep(0.08)
        await n.close()
        assert n.dismissed == ["reminder-a"]

    async def test_same_tag_restarts_dismiss_timer(self):
        n = RecordingNotifier(dismiss_after=0.05)
        await n.request_permission()
        await n.show("t", "first", tag="reminder-a")
        await asyncio.sleep(0.03)
        await n.show("t", "second", tag="reminder-a")
        await asyncio.sleep(0.03)
        assert n.dismissed == []
        await asyncio.sleep(0.05)
        await n.close()
        assert n.dismissed == ["reminder-a"]

    async def test_close_cancels_pending_dismissals(self):
        n = RecordingNotifier(dismiss_after=0.03)
        await n.request_permission()
        await n.show("t", "b", tag="x")
        await n.close()
        await asyncio.sleep(0.06)
        assert n.dismissed == []


class TestNullNotifier:
    async def test_never_granted(self):
        n = NullNotifier()
        assert await n.request_permission() is False
        assert await n.show("t", "b", tag="x") is False


class TestBuildNotifier:
    def test_disabled_gives_null(self):
        assert isinstance(build_notifier(TelegramConfig(), dismiss_after=10), NullNotifier)

    def test_enabled_gives_telegram(self):
        config = TelegramConfig(enabled=True, chat_id="42")
        assert isinstance(build_notifier(config, dismiss_after=10), TelegramNotifier)
