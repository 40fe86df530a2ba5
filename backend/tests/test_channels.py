"""Tests for channel adapters."""
import json
from datetime import datetime
from unittest.mock import MagicMock, patch

import httpx
import pytest

from pulseguard.channels import NotificationMessage, ServiceSnapshot, build_adapters
from pulseguard.channels.email import EmailAdapter, EmailConfig
from pulseguard.channels.http import TelegramAdapter

NOW = datetime(2026, 3, 1, 12, 0, 0)


def message(event="down"):
    return NotificationMessage(
        event=event,
        title="Service Down",
        body='Service "API" is DOWN: HTTP 500 - Server Error',
        timestamp=NOW,
        service=ServiceSnapshot(id=1, name="API", target="http://api.example.test", response_time=40, uptime=98.5),
    )


@pytest.fixture
def requests():
    return []


def adapters_replying(requests, response=None):
    def handler(request):
        requests.append(request)
        if callable(response):
            return response(request)
        return response or httpx.Response(200, json={"ok": True})

    return build_adapters(httpx.MockTransport(handler))


async def test_webhook_posts_generic_payload(requests):
    adapter = adapters_replying(requests)["webhook"]

    outcome = await adapter.send(
        {"url": "http://hooks.example.test/in", "headers": {"X-Token": "s3cret"}},
        message(),
    )

    assert outcome.success
    body = json.loads(requests[0].content)
    assert body["event"] == "down"
    assert body["service"]["uptime"] == 98.5
    assert body["timestamp"] == "2026-03-01T12:00:00Z"
    assert requests[0].headers["x-token"] == "s3cret"


async def test_webhook_http_error_is_failure(requests):
    adapter = adapters_replying(requests, httpx.Response(503, text="unavailable"))["webhook"]

    outcome = await adapter.send({"url": "http://hooks.example.test/in"}, message())

    assert not outcome.success
    assert not outcome.config_error
    assert outcome.error.startswith("HTTP 503")


async def test_missing_config_is_config_error(requests):
    adapter = adapters_replying(requests)["discord"]

    outcome = await adapter.send({}, message())

    assert not outcome.success
    assert outcome.config_error
    assert "webhookUrl" in outcome.error
    assert requests == []


async def test_discord_embed_uses_event_colour(requests):
    adapter = adapters_replying(requests, httpx.Response(204))["discord"]

    outcome = await adapter.send({"webhookUrl": "http://discord.test/hook", "mentionRole": "42"}, message("up"))

    assert outcome.success
    body = json.loads(requests[0].content)
    assert body["content"] == "<@&42>"
    assert body["embeds"][0]["color"] == 0x00FF00


async def test_slack_attachment(requests):
    adapter = adapters_replying(requests)["slack"]

    await adapter.send({"webhookUrl": "http://slack.test/hook", "channel": "#ops"}, message())

    body = json.loads(requests[0].content)
    assert body["channel"] == "#ops"
    assert body["attachments"][0]["color"] == "#FF0000"
    assert body["attachments"][0]["ts"] == 1772366400


async def test_telegram_retries_as_plain_text(requests):
    def reply(request):
        if "parse_mode" in json.loads(request.content):
            return httpx.Response(400, json={"ok": False, "description": "Bad Request: can't parse entities"})
        return httpx.Response(200, json={"ok": True})

    adapter = adapters_replying(requests, reply)["telegram"]

    outcome = await adapter.send({"botToken": "123:abc", "chatId": -100200}, message())

    assert outcome.success
    assert len(requests) == 2
    assert "bot123:abc/sendMessage" in str(requests[0].url)
    assert json.loads(requests[1].content)["chat_id"] == -100200


async def test_telegram_api_error(requests):
    adapter = adapters_replying(
        requests, httpx.Response(403, json={"ok": False, "description": "Forbidden: bot was blocked"})
    )["telegram"]

    outcome = await adapter.send({"botToken": "123:abc", "chatId": "@ops"}, message())

    assert not outcome.success
    assert "bot was blocked" in outcome.error


def test_telegram_markdown_escape():
    assert TelegramAdapter.escape_markdown("HTTP 500 - Server.Error") == "HTTP 500 \\- Server\\.Error"


class TestEmail:
    CONFIG = {
        "smtpHost": "smtp.example.test",
        "smtpPort": 587,
        "smtpUser": "alerts",
        "smtpPass": "pw",
        "fromEmail": "alerts@example.test",
        "toEmails": "ops@example.test, oncall@example.test",
    }

    def test_recipients_from_comma_list(self):
        config = EmailConfig.model_validate(self.CONFIG)

        assert config.toEmails == ["ops@example.test", "oncall@example.test"]

    async def test_empty_recipients_is_config_error(self):
        outcome = await EmailAdapter().send({**self.CONFIG, "toEmails": " , "}, message())

        assert outcome.config_error

    def test_subject_names_service(self):
        config = EmailConfig.model_validate(self.CONFIG)

        msg = EmailAdapter().build_email(config, message())

        assert msg["Subject"].endswith("PulseGuard: Service Down - API")
        assert msg["To"] == "ops@example.test, oncall@example.test"

    async def test_sends_with_starttls(self):
        with patch("pulseguard.channels.email.smtplib.SMTP") as smtp:
            server = MagicMock()
            smtp.return_value = server
            server.__enter__.return_value = server

            outcome = await EmailAdapter().send(self.CONFIG, message())

        assert outcome.success
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("alerts", "pw")
        server.sendmail.assert_called_once()

    async def test_connection_failure_is_reported(self):
        with patch("pulseguard.channels.email.smtplib.SMTP", side_effect=ConnectionRefusedError("refused")):
            outcome = await EmailAdapter().send(self.CONFIG, message())

        assert not outcome.success
        assert "Failed to connect" in outcome.error
