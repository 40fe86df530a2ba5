"""Email channel adapter - sends notifications via SMTP."""
import asyncio
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional, Union

from pydantic import BaseModel, Field, field_validator

from .base import ChannelAdapter, DeliveryOutcome, NotificationMessage

logger = logging.getLogger(__name__)

EMAIL_EMOJI = {
    "down": "🔴",
    "up": "🟢",
    "degraded": "🟡",
    "ssl_expiry": "🟠",
    "ssl_warning": "🟡",
    "test": "🔵",
}


class EmailConfig(BaseModel):
    """SMTP configuration for sending emails."""
    smtpHost: str = Field(..., min_length=1)
    smtpPort: int = 587
    smtpSecure: bool = False  # implicit TLS; port 465 implies it
    useStartTls: bool = True
    smtpUser: Optional[str] = None
    smtpPass: Optional[str] = None
    rejectUnauthorized: bool = True
    fromEmail: str = Field(..., min_length=1)
    toEmails: Union[List[str], str]

    @field_validator("toEmails")
    @classmethod
    def _split_recipients(cls, value):
        """Accept a list or a comma-separated string; require at least one address."""
        if isinstance(value, str):
            value = value.split(",")
        recipients = [addr.strip() for addr in value if addr and addr.strip()]
        if not recipients:
            raise ValueError("at least one recipient is required")
        return recipients


class EmailAdapter(ChannelAdapter):
    """Sends a plain-text email; smtplib runs in a worker thread."""

    channel_type = "email"
    config_model = EmailConfig

    def build_email(self, config: EmailConfig, message: NotificationMessage) -> MIMEMultipart:
        subject = f"{EMAIL_EMOJI.get(message.event, '🔔')} PulseGuard: {message.title}"
        if message.service:
            subject += f" - {message.service.name}"

        lines = [
            f"PulseGuard {message.title}",
            "=" * 40,
            "",
            message.body,
            "",
        ]
        if message.service:
            service = message.service
            lines.append(f"Service: {service.name}")
            lines.append(f"Target: {service.target or 'N/A'}")
            if service.response_time is not None:
                lines.append(f"Response time: {service.response_time}ms")
            if service.uptime is not None:
                lines.append(f"Uptime: {service.uptime:.2f}%")
        lines.append(f"Time: {message.timestamp.strftime('%Y-%m-%d %H:%M:%S UTC')}")
        lines.append("")
        lines.append("--")
        lines.append("PulseGuard Monitoring System")

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = config.fromEmail
        msg["To"] = ", ".join(config.toEmails)
        msg.attach(MIMEText("\n".join(lines), "plain"))
        return msg

    async def deliver(self, config: EmailConfig, message: NotificationMessage) -> DeliveryOutcome:
        msg = self.build_email(config, message)
        return await asyncio.to_thread(self._send_blocking, config, msg)

    def _send_blocking(self, config: EmailConfig, msg: MIMEMultipart) -> DeliveryOutcome:
        """Send over SMTP (blocking). Returns a failed outcome on SMTP errors."""
        context = ssl.create_default_context()
        if not config.rejectUnauthorized:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE

        implicit_tls = config.smtpSecure or config.smtpPort == 465
        logger.info(f"Connecting to {config.smtpHost}:{config.smtpPort} (tls={'implicit' if implicit_tls else config.useStartTls})")

        try:
            if implicit_tls:
                server = smtplib.SMTP_SSL(config.smtpHost, config.smtpPort, timeout=30, context=context)
            else:
                server = smtplib.SMTP(config.smtpHost, config.smtpPort, timeout=30)
            with server:
                if not implicit_tls and config.useStartTls:
                    server.starttls(context=context)
                if config.smtpUser and config.smtpPass:
                    server.login(config.smtpUser, config.smtpPass)
                server.sendmail(config.fromEmail, config.toEmails, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            return DeliveryOutcome.failed(f"SMTP authentication failed for user '{config.smtpUser}': {e}")
        except smtplib.SMTPRecipientsRefused as e:
            return DeliveryOutcome.failed(f"Recipients refused by server: {e}")
        except smtplib.SMTPException as e:
            return DeliveryOutcome.failed(f"SMTP error: {type(e).__name__}: {e}")
        except OSError as e:
            return DeliveryOutcome.failed(f"Failed to connect to SMTP server {config.smtpHost}:{config.smtpPort}: {e}")

        logger.info(f"Email sent to {len(config.toEmails)} recipient(s): {msg['Subject']}")
        return DeliveryOutcome.sent()
