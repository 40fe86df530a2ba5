"""Notification channel adapters.

The set of channel types is closed: each type maps to exactly one adapter.
"""
from typing import Dict, Optional

import httpx

from .base import (
    ChannelAdapter,
    DeliveryOutcome,
    NotificationMessage,
    ServiceSnapshot,
    event_title,
)
from .email import EmailAdapter
from .http import DiscordAdapter, SlackAdapter, TelegramAdapter, WebhookAdapter

CHANNEL_TYPES = ("webhook", "discord", "slack", "telegram", "email")


def build_adapters(transport: Optional[httpx.AsyncBaseTransport] = None) -> Dict[str, ChannelAdapter]:
    """One adapter per channel type; HTTP adapters share the given transport."""
    return {
        "webhook": WebhookAdapter(transport),
        "discord": DiscordAdapter(transport),
        "slack": SlackAdapter(transport),
        "telegram": TelegramAdapter(transport),
        "email": EmailAdapter(),
    }


__all__ = [
    "CHANNEL_TYPES",
    "ChannelAdapter",
    "DeliveryOutcome",
    "NotificationMessage",
    "ServiceSnapshot",
    "build_adapters",
    "event_title",
]
