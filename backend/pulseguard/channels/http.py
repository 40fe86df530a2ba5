"""HTTP-based channel adapters - webhook, Discord, Slack and Telegram."""
import calendar
import logging
import re
from typing import Dict, Optional, Union

import httpx
from pydantic import BaseModel, Field

from ..config import settings
from .base import ChannelAdapter, DeliveryOutcome, NotificationMessage

logger = logging.getLogger(__name__)

# Embed/attachment colours per event
DISCORD_COLORS = {
    "down": 0xFF0000,
    "up": 0x00FF00,
    "degraded": 0xFFFF00,
    "ssl_expiry": 0xFF8C00,
    "ssl_warning": 0xFFFF00,
    "test": 0x7289DA,
}

SLACK_COLORS = {
    "down": "#FF0000",
    "up": "#36a64f",
    "degraded": "#FFD700",
    "ssl_expiry": "#FF8C00",
    "ssl_warning": "#FFD700",
    "test": "#7289DA",
}

TELEGRAM_EMOJI = {
    "down": "🔴",
    "up": "🟢",
    "degraded": "🟡",
    "ssl_expiry": "🟠",
    "ssl_warning": "🟡",
    "test": "🔵",
}

_TELEGRAM_MARKDOWN = re.compile(r"([_*\[\]()~`>#+\-=|{}.!\\])")


class WebhookConfig(BaseModel):
    url: str = Field(..., min_length=1)
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)


class DiscordConfig(BaseModel):
    webhookUrl: str = Field(..., min_length=1)
    username: str = "PulseGuard"
    avatarUrl: Optional[str] = None
    mentionRole: Optional[str] = None
    mentionUser: Optional[str] = None
    mentionEveryone: bool = False


class SlackConfig(BaseModel):
    webhookUrl: str = Field(..., min_length=1)
    channel: Optional[str] = None
    username: str = "PulseGuard"
    iconEmoji: str = ":shield:"
    mentionChannel: bool = False


class TelegramConfig(BaseModel):
    botToken: str = Field(..., min_length=1)
    chatId: Union[int, str]
    disablePreview: bool = False


class HttpChannelAdapter(ChannelAdapter):
    """Shared plumbing for adapters that POST JSON."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=settings.notification_timeout_seconds,
            transport=self._transport,
        )

    async def _post_json(
        self,
        url: str,
        payload: dict,
        method: str = "POST",
        headers: Optional[dict] = None,
    ) -> DeliveryOutcome:
        request_headers = {"Content-Type": "application/json", "User-Agent": "PulseGuard-Webhook/1.0"}
        request_headers.update(headers or {})
        try:
            async with self._client() as client:
                response = await client.request(method, url, json=payload, headers=request_headers)
        except httpx.HTTPError as e:
            return DeliveryOutcome.failed(f"{type(e).__name__}: {e}")

        if response.status_code >= 400:
            return DeliveryOutcome.failed(f"HTTP {response.status_code}: {response.text[:200]}")
        return DeliveryOutcome.sent()

    @staticmethod
    def _service_fields(message: NotificationMessage) -> list:
        """(label, value) pairs describing the service."""
        service = message.service
        if service is None:
            return []
        fields = [("Service", service.name), ("Target", service.target or "N/A")]
        if service.response_time is not None:
            fields.append(("Response time", f"{service.response_time}ms"))
        if service.uptime is not None:
            fields.append(("Uptime", f"{service.uptime:.2f}%"))
        return fields


class WebhookAdapter(HttpChannelAdapter):
    channel_type = "webhook"
    config_model = WebhookConfig

    async def deliver(self, config: WebhookConfig, message: NotificationMessage) -> DeliveryOutcome:
        return await self._post_json(
            config.url,
            message.as_payload(),
            method=config.method.upper(),
            headers=config.headers,
        )


class DiscordAdapter(HttpChannelAdapter):
    channel_type = "discord"
    config_model = DiscordConfig

    async def deliver(self, config: DiscordConfig, message: NotificationMessage) -> DeliveryOutcome:
        embed = {
            "title": f"🔔 {message.title}",
            "description": message.body,
            "color": DISCORD_COLORS.get(message.event, 0x7289DA),
            "fields": [
                {"name": label, "value": value, "inline": True}
                for label, value in self._service_fields(message)
            ],
            "timestamp": message.timestamp.isoformat() + "Z",
            "footer": {"text": "PulseGuard Monitor"},
        }

        content = ""
        if config.mentionRole:
            content = f"<@&{config.mentionRole}>"
        elif config.mentionUser:
            content = f"<@{config.mentionUser}>"
        elif config.mentionEveryone:
            content = "@everyone"

        payload = {"content": content, "username": config.username, "embeds": [embed]}
        if config.avatarUrl:
            payload["avatar_url"] = config.avatarUrl
        return await self._post_json(config.webhookUrl, payload)


class SlackAdapter(HttpChannelAdapter):
    channel_type = "slack"
    config_model = SlackConfig

    async def deliver(self, config: SlackConfig, message: NotificationMessage) -> DeliveryOutcome:
        attachment = {
            "color": SLACK_COLORS.get(message.event, "#7289DA"),
            "pretext": "<!channel>" if config.mentionChannel else "",
            "title": f"🔔 {message.title}",
            "text": message.body,
            "fields": [
                {"title": label, "value": value, "short": True}
                for label, value in self._service_fields(message)
            ],
            "footer": "PulseGuard Monitor",
            "ts": calendar.timegm(message.timestamp.utctimetuple()),
        }
        payload = {
            "username": config.username,
            "icon_emoji": config.iconEmoji,
            "attachments": [attachment],
        }
        if config.channel:
            payload["channel"] = config.channel
        return await self._post_json(config.webhookUrl, payload)


class TelegramAdapter(HttpChannelAdapter):
    channel_type = "telegram"
    config_model = TelegramConfig

    API_URL = "https://api.telegram.org/bot{token}/sendMessage"

    @staticmethod
    def escape_markdown(value: str) -> str:
        return _TELEGRAM_MARKDOWN.sub(r"\\\1", value)

    def _render(self, message: NotificationMessage) -> str:
        esc = self.escape_markdown
        lines = [
            f"{TELEGRAM_EMOJI.get(message.event, '🔔')} *{esc(message.title)}*",
            "",
            esc(message.body),
            "",
        ]
        lines.extend(f"*{esc(label)}:* {esc(value)}" for label, value in self._service_fields(message))
        lines.append("")
        lines.append(f"_{esc('PulseGuard Monitor')}_")
        return "\n".join(lines)

    async def deliver(self, config: TelegramConfig, message: NotificationMessage) -> DeliveryOutcome:
        url = self.API_URL.format(token=config.botToken)
        body = {
            "chat_id": config.chatId,
            "text": self._render(message),
            "parse_mode": "MarkdownV2",
            "disable_web_page_preview": config.disablePreview,
        }
        try:
            async with self._client() as client:
                response = await client.post(url, json=body)
                result = response.json()
                if not result.get("ok") and "parse" in str(result.get("description", "")):
                    # Retry as plain text when Telegram rejects the markup
                    body.pop("parse_mode")
                    body["text"] = f"{message.title}\n\n{message.body}"
                    response = await client.post(url, json=body)
                    result = response.json()
        except (httpx.HTTPError, ValueError) as e:
            return DeliveryOutcome.failed(f"{type(e).__name__}: {e}")

        if not result.get("ok"):
            return DeliveryOutcome.failed(f"Telegram API error: {result.get('description', response.status_code)}")
        return DeliveryOutcome.sent()
