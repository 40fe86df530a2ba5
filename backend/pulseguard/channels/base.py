"""Channel adapter contract - send(config, message) -> DeliveryOutcome."""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Type

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

EVENT_TITLES = {
    "down": "Service Down",
    "up": "Service Recovered",
    "degraded": "Service Degraded",
    "ssl_expiry": "SSL Certificate Expired",
    "ssl_warning": "SSL Certificate Expiring Soon",
    "test": "Test Notification",
}


def event_title(event: str) -> str:
    return EVENT_TITLES.get(event, event)


@dataclass
class ServiceSnapshot:
    """The service fields a message carries."""
    id: Optional[int]
    name: str
    target: str
    response_time: Optional[int] = None
    uptime: Optional[float] = None


@dataclass
class NotificationMessage:
    """A rendered notification, independent of provider."""
    event: str
    title: str
    body: str
    timestamp: datetime
    service: Optional[ServiceSnapshot] = None
    metadata: dict = field(default_factory=dict)

    def as_payload(self) -> dict:
        """Generic JSON payload used by webhooks."""
        payload = {
            "event": self.event,
            "title": self.title,
            "message": self.body,
            "timestamp": self.timestamp.isoformat() + "Z",
            "metadata": self.metadata,
        }
        if self.service:
            payload["service"] = {
                "id": self.service.id,
                "name": self.service.name,
                "target": self.service.target,
                "responseTime": self.service.response_time,
                "uptime": self.service.uptime,
            }
        return payload


@dataclass
class DeliveryOutcome:
    """Result of a delivery attempt. Failures are values, never exceptions."""
    success: bool
    error: Optional[str] = None
    config_error: bool = False

    @classmethod
    def sent(cls) -> "DeliveryOutcome":
        return cls(success=True)

    @classmethod
    def failed(cls, error: str, config_error: bool = False) -> "DeliveryOutcome":
        return cls(success=False, error=error, config_error=config_error)


class ChannelAdapter:
    """Base adapter: validates the provider config, then delivers.

    Subclasses set `channel_type` and `config_model` and implement `deliver`.
    """

    channel_type: str = ""
    config_model: Type[BaseModel] = BaseModel

    async def send(self, config: dict, message: NotificationMessage) -> DeliveryOutcome:
        try:
            parsed = self.config_model.model_validate(config)
        except ValidationError as e:
            errors = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
                for err in e.errors()
            )
            return DeliveryOutcome.failed(f"Invalid {self.channel_type} config: {errors}", config_error=True)

        try:
            outcome = await self.deliver(parsed, message)
        except Exception as e:
            logger.error(f"[{self.channel_type}] Error: {type(e).__name__}: {e}")
            return DeliveryOutcome.failed(f"{type(e).__name__}: {e}")

        if outcome.success:
            logger.info(f"[{self.channel_type}] Sent {message.event} notification")
        else:
            logger.warning(f"[{self.channel_type}] Delivery failed: {outcome.error}")
        return outcome

    async def deliver(self, config: BaseModel, message: NotificationMessage) -> DeliveryOutcome:
        raise NotImplementedError
