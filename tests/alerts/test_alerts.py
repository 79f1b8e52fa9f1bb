"""Tests for the family alert transports."""

from __future__ import annotations

import json
import smtplib
from unittest.mock import MagicMock, patch

import httpx
import pytest

from medminder.alerts import (
    HttpRelayAlertSender,
    NullAlertSender,
    SmtpAlertSender,
    build_alert_sender,
)
from medminder.config import AlertBackend, AlertsConfig, SmtpConfig
from tests.conftest import RecordingAlertSender

pytestmark = pytest.mark.unit


class TestAlertSenderBase:
    async def test_success(self, alert_sender):
        assert await alert_sender.send_alert("ana@example.com", "s", "m") is True
        assert alert_sender.sent == [{"to": "ana@example.com", "subject": "s", "message": "m"}]

    async def test_empty_recipient_skipped(self, alert_sender):
        assert await alert_sender.send_alert("  ", "s", "m") is False
        assert alert_sender.sent == []

    async def test_transport_error_is_false(self, caplog):
        sender = RecordingAlertSender()
        sender.fail_for.add("ana@example.com")
        assert await sender.send_alert("ana@example.com", "s", "m") is False
        assert "Failed to send alert to ana@example.com" in caplog.text

    async def test_null_sender_drops(self, caplog):
        assert await NullAlertSender().send_alert("ana@example.com", "s", "m") is False
        assert "No alert backend configured" in caplog.text


class TestSmtp:
    @pytest.fixture
    def config(self) -> SmtpConfig:
        return SmtpConfig(
            host="smtp.example.com",
            port=2525,
            use_tls=True,
            address_env="MM_TEST_SMTP_ADDRESS",
            password_env="MM_TEST_SMTP_PASSWORD",
        )

    async def test_sends_mail(self, config, monkeypatch):
        monkeypatch.setenv("MM_TEST_SMTP_ADDRESS", "bot@example.com")
        monkeypatch.setenv("MM_TEST_SMTP_PASSWORD", "secret")
        server = MagicMock()
        with patch("medminder.alerts.smtp.smtplib.SMTP", return_value=server) as smtp_cls:
            ok = await SmtpAlertSender(config).send_alert("ana@example.com", "Subj", "Body")

        assert ok is True
        smtp_cls.assert_called_once_with("smtp.example.com", 2525, timeout=30.0)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("bot@example.com", "secret")
        from_addr, to_addrs, raw = server.sendmail.call_args.args
        assert from_addr == "bot@example.com"
        assert to_addrs == ["ana@example.com"]
        assert "Subject: Subj" in raw
        server.quit.assert_called_once()

    async def test_no_tls(self, config, monkeypatch):
        monkeypatch.setenv("MM_TEST_SMTP_ADDRESS", "bot@example.com")
        monkeypatch.setenv("MM_TEST_SMTP_PASSWORD", "secret")
        config.use_tls = False
        server = MagicMock()
        with patch("medminder.alerts.smtp.smtplib.SMTP", return_value=server):
            await SmtpAlertSender(config).send_alert("ana@example.com", "s", "m")
        server.starttls.assert_not_called()

    async def test_missing_credentials(self, config, monkeypatch, caplog):
        monkeypatch.delenv("MM_TEST_SMTP_ADDRESS", raising=False)
        monkeypatch.delenv("MM_TEST_SMTP_PASSWORD", raising=False)
        with patch("medminder.alerts.smtp.smtplib.SMTP") as smtp_cls:
            ok = await SmtpAlertSender(config).send_alert("ana@example.com", "s", "m")
        assert ok is False
        smtp_cls.assert_not_called()
        assert "Missing SMTP credentials" in caplog.text

    async def test_quit_even_when_login_fails(self, config, monkeypatch):
        monkeypatch.setenv("MM_TEST_SMTP_ADDRESS", "bot@example.com")
        monkeypatch.setenv("MM_TEST_SMTP_PASSWORD", "wrong")
        server = MagicMock()
        server.login.side_effect = RuntimeError("auth failed")
        with patch("medminder.alerts.smtp.smtplib.SMTP", return_value=server):
            ok = await SmtpAlertSender(config).send_alert("ana@example.com", "s", "m")
        assert ok is False
        server.quit.assert_called_once()

    async def test_quit_failure_does_not_mask_login_error(self, config, monkeypatch, caplog):
        monkeypatch.setenv("MM_TEST_SMTP_ADDRESS", "bot@example.com")
        monkeypatch.setenv("MM_TEST_SMTP_PASSWORD", "wrong")
        server = MagicMock()
        server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")
        server.quit.side_effect = smtplib.SMTPServerDisconnected("connection closed")
        with patch("medminder.alerts.smtp.smtplib.SMTP", return_value=server):
            ok = await SmtpAlertSender(config).send_alert("ana@example.com", "s", "m")

        assert ok is False
        [failure] = [r for r in caplog.records if r.getMessage().startswith("Failed to send")]
        assert isinstance(failure.exc_info[1], smtplib.SMTPAuthenticationError)

    async def test_connect_timeout_from_config(self, config, monkeypatch):
        monkeypatch.setenv("MM_TEST_SMTP_ADDRESS", "bot@example.com")
        monkeypatch.setenv("MM_TEST_SMTP_PASSWORD", "secret")
        config.timeout_seconds = 5.0
        with patch("medminder.alerts.smtp.smtplib.SMTP", return_value=MagicMock()) as smtp_cls:
            await SmtpAlertSender(config).send_alert("ana@example.com", "s", "m")
        assert smtp_cls.call_args.kwargs["timeout"] == 5.0


class TestHttpRelay:
    async def test_posts_json(self):
        seen: list[httpx.Request] = []

        def _handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        client = httpx.AsyncClient(transport=httpx.MockTransport(_handler))
        sender = HttpRelayAlertSender("https://relay.example.com/alert", client=client)

        assert await sender.send_alert("ana@example.com", "Subj", "Body") is True
        assert str(seen[0].url) == "https://relay.example.com/alert"
        assert json.loads(seen[0].content) == {
            "to": "ana@example.com",
            "subject": "Subj",
            "message": "Body",
        }
        await client.aclose()

    async def test_non_2xx_is_failure(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(502)))
        sender = HttpRelayAlertSender("https://relay.example.com/alert", client=client)
        assert await sender.send_alert("ana@example.com", "s", "m") is False
        await client.aclose()

    async def test_close_releases_owned_client(self):
        sender = HttpRelayAlertSender("https://relay.example.com/alert")
        client = sender._get_client()
        await sender.close()
        assert client.is_closed


class TestBuildAlertSender:
    def test_none(self):
        assert isinstance(build_alert_sender(AlertsConfig()), NullAlertSender)

    def test_smtp(self):
        assert isinstance(
            build_alert_sender(AlertsConfig(backend=AlertBackend.SMTP)), SmtpAlertSender
        )

    def test_http(self):
        sender = build_alert_sender(
            AlertsConfig(backend=AlertBackend.HTTP, relay_url="https://relay.example.com")
        )
        assert isinstance(sender, HttpRelayAlertSender)
