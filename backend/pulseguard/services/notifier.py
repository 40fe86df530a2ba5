"""Notification engine - evaluates alert rules and dispatches to channels.

Rule definitions are read-only here. Their runtime counters live in
NotificationRuleState, one row per (rule, service), and are only updated
under that rule's lock inside a single transaction.
"""
import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.orm import selectinload

from ..channels import (
    ChannelAdapter,
    DeliveryOutcome,
    NotificationMessage,
    ServiceSnapshot,
    build_adapters,
    event_title,
)
from ..database import async_session
from ..models import (
    NotificationChannel,
    NotificationHistory,
    NotificationRule,
    NotificationRuleState,
    Service,
)
from ..models.notification import (
    EVENT_TEST,
    EVENT_UP,
    FAILURE_EVENTS,
    SSL_EVENTS,
)
from ..models.service import FAILURE_STATUSES
from ..utils.db_utils import retry_on_lock, utcnow
from .evaluator import Evaluation
from .maintenance import MaintenanceGate, maintenance_gate

logger = logging.getLogger(__name__)

HISTORY_SENT = "sent"
HISTORY_FAILED = "failed"

EVENT_MESSAGES = {
    "down": 'Service "{name}" is DOWN',
    "up": 'Service "{name}" is back ONLINE',
    "degraded": 'Service "{name}" is DEGRADED',
    "ssl_expiry": 'The SSL certificate for "{name}" has EXPIRED',
    "ssl_warning": 'The SSL certificate for "{name}" expires in {days} days',
}


def render_message(
    service: Service,
    event: str,
    detail: Optional[str] = None,
    now: Optional[datetime] = None,
) -> NotificationMessage:
    """Build the provider-independent message for a service event."""
    template = EVENT_MESSAGES.get(event, "Event {event} on service \"{name}\"")
    body = template.format(name=service.name, event=event, days=service.ssl_days_remaining)
    if detail and event in FAILURE_EVENTS:
        body = f"{body}: {detail}"

    metadata = {"status": service.status}
    if event in SSL_EVENTS:
        metadata["daysRemaining"] = service.ssl_days_remaining
        if service.ssl_expiry_date:
            metadata["expiresAt"] = service.ssl_expiry_date.isoformat() + "Z"

    return NotificationMessage(
        event=event,
        title=event_title(event),
        body=body,
        timestamp=now or utcnow(),
        service=ServiceSnapshot(
            id=service.id,
            name=service.name,
            target=service.url or service.host or "",
            response_time=service.response_time,
            uptime=service.uptime,
        ),
        metadata=metadata,
    )


def build_test_message(now: Optional[datetime] = None) -> NotificationMessage:
    """Synthetic message for the manual channel test."""
    return NotificationMessage(
        event=EVENT_TEST,
        title=event_title(EVENT_TEST),
        body=(
            "This is a test notification from PulseGuard.\n\n"
            "If you received this message, your notification channel is configured correctly."
        ),
        timestamp=now or utcnow(),
        service=ServiceSnapshot(
            id=0,
            name="Test Service",
            target="https://example.com",
            response_time=150,
            uptime=99.95,
        ),
    )


def cooldown_elapsed(rule: NotificationRule, state: NotificationRuleState, event: str, now: datetime) -> bool:
    """Whether this rule may fire this event again.

    Each event has its own cooldown, so firing one event never
    resets or bypasses the cooldown of another.
    """
    last = state.notified_at(event)
    if last is None:
        return True
    return now - last >= timedelta(seconds=rule.cooldown or 0)


def apply_rule_policy(rule: NotificationRule, state: NotificationRuleState, event: str, now: datetime) -> bool:
    """Advance a rule's counters for an event and decide whether it fires.

    - Failure events count towards the threshold, then repeat per cooldown.
    - Recovery fires immediately and resets the failure count.
    - SSL events ignore the threshold but respect cooldown.
    """
    if event in FAILURE_EVENTS:
        state.consecutive_failures = (state.consecutive_failures or 0) + 1
        threshold = max(1, rule.threshold or 1)
        if state.consecutive_failures < threshold:
            logger.debug(
                f"Rule {rule.id} below threshold for service {state.service_id}: "
                f"{state.consecutive_failures}/{threshold} failures"
            )
            return False
        return cooldown_elapsed(rule, state, event, now)

    if event == EVENT_UP:
        state.consecutive_failures = 0
        return True

    if event in SSL_EVENTS:
        return cooldown_elapsed(rule, state, event, now)

    return False


class NotificationEngine:
    """Service for evaluating notification rules and sending notifications."""

    def __init__(
        self,
        session_factory=None,
        adapters: Optional[Dict[str, ChannelAdapter]] = None,
        gate: Optional[MaintenanceGate] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory or async_session
        self._adapters = adapters if adapters is not None else build_adapters()
        self._gate = gate or maintenance_gate
        self._clock = clock
        self._rule_locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._reported_channel_errors = set()

    async def process_check(
        self,
        service: Service,
        evaluation: Evaluation,
        ssl_event: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[NotificationHistory]:
        """Run rules for everything a single check produced.

        Returns the history rows written for dispatch attempts.
        """
        now = now or self._clock()
        history = []

        if evaluation.new_status not in FAILURE_STATUSES:
            await self.reset_failures(service.id)

        if evaluation.event:
            history.extend(await self.handle_event(service, evaluation.event, evaluation.detail, now))
        if ssl_event:
            history.extend(await self.handle_event(service, ssl_event, None, now))
        return history

    async def reset_failures(self, service_id: int):
        """Zero every rule counter for a service after a non-failure check."""
        async def write():
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        update(NotificationRuleState)
                        .where(
                            NotificationRuleState.service_id == service_id,
                            NotificationRuleState.consecutive_failures > 0,
                        )
                        .values(consecutive_failures=0)
                    )

        await retry_on_lock(write)

    async def handle_event(
        self,
        service: Service,
        event: str,
        detail: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[NotificationHistory]:
        """Evaluate all matching rules for one service event and dispatch."""
        now = now or self._clock()
        rules = await self._get_candidate_rules(service.id, event)
        if not rules:
            return []

        suppressed = await self._is_suppressed(service.id, now)
        message = render_message(service, event, detail, now)

        history = []
        for rule in rules:
            # Rules fire independently; a global and a service rule on the
            # same channel each send.
            async with self._rule_locks[rule.id]:
                fire = await self._advance_rule(rule, service.id, event, now, suppressed)
            if fire:
                history.append(
                    await self._dispatch(rule.channel, message, service.id, rule.id, now)
                )

        if suppressed:
            logger.info(f"Notifications for {service.name} ({event}) withheld: maintenance window active")
        return history

    async def test_channel(self, channel_id: int) -> Optional[NotificationHistory]:
        """Send a synthetic test event to a channel, bypassing rules.

        Returns the history row, or None if the channel does not exist.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(NotificationChannel).where(NotificationChannel.id == channel_id)
            )
            channel = result.scalar_one_or_none()

        if channel is None:
            return None
        return await self._dispatch(channel, build_test_message(self._clock()), None, None, self._clock())

    async def _get_candidate_rules(self, service_id: int, event: str) -> List[NotificationRule]:
        """Enabled rules on enabled channels that target this service (or all) and event."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(NotificationRule)
                .join(NotificationChannel, NotificationRule.channel_id == NotificationChannel.id)
                .options(selectinload(NotificationRule.channel))
                .where(
                    NotificationRule.is_enabled.is_(True),
                    NotificationChannel.is_enabled.is_(True),
                    or_(
                        NotificationRule.service_id == service_id,
                        NotificationRule.service_id.is_(None),
                    ),
                )
                .order_by(NotificationRule.id)
            )
            rules = result.scalars().all()
        return [rule for rule in rules if event in rule.event_set()]

    async def _is_suppressed(self, service_id: int, now: datetime) -> bool:
        async with self._session_factory() as session:
            return await self._gate.is_suppressed(session, service_id, now)

    async def _advance_rule(
        self,
        rule: NotificationRule,
        service_id: int,
        event: str,
        now: datetime,
        suppressed: bool,
    ) -> bool:
        """Update a rule's runtime state in one transaction; True if it should dispatch.

        Maintenance keeps the failure count but withholds the dispatch and
        leaves last_notified untouched.
        """
        async def write() -> bool:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        select(NotificationRuleState)
                        .where(
                            NotificationRuleState.rule_id == rule.id,
                            NotificationRuleState.service_id == service_id,
                        )
                        .with_for_update()
                    )
                    state = result.scalar_one_or_none()
                    if state is None:
                        state = NotificationRuleState(
                            rule_id=rule.id,
                            service_id=service_id,
                            consecutive_failures=0,
                        )
                        session.add(state)

                    fire = apply_rule_policy(rule, state, event, now)
                    if fire and suppressed:
                        return False
                    if fire:
                        state.mark_notified(event, now)
                    return fire

        return await retry_on_lock(write)

    async def _deliver(self, channel: NotificationChannel, message: NotificationMessage) -> DeliveryOutcome:
        adapter = self._adapters.get(channel.type)
        if adapter is None:
            return DeliveryOutcome.failed(f"Unsupported channel type: {channel.type}", config_error=True)
        try:
            config = channel.config_dict()
        except ValueError as e:
            return DeliveryOutcome.failed(f"Malformed channel config: {e}", config_error=True)
        return await adapter.send(config, message)

    async def _dispatch(
        self,
        channel: NotificationChannel,
        message: NotificationMessage,
        service_id: Optional[int],
        rule_id: Optional[int],
        now: datetime,
    ) -> NotificationHistory:
        """Deliver via the channel's adapter and record the attempt."""
        outcome = await self._deliver(channel, message)

        if outcome.config_error:
            key = (channel.id, outcome.error)
            if key not in self._reported_channel_errors:
                self._reported_channel_errors.add(key)
                logger.warning(f"Configuration error on channel {channel.id} ({channel.name}): {outcome.error}")

        entry = NotificationHistory(
            channel_id=channel.id,
            service_id=service_id,
            rule_id=rule_id,
            event=message.event,
            message=message.body,
            status=HISTORY_SENT if outcome.success else HISTORY_FAILED,
            error_message=outcome.error,
            sent_at=now,
        )

        async def write():
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(entry)
                    await session.execute(
                        update(NotificationChannel)
                        .where(NotificationChannel.id == channel.id)
                        .values(config_error=outcome.error if outcome.config_error else None)
                    )

        await retry_on_lock(write)
        logger.info(
            f"Notification {message.event} via {channel.type} channel {channel.id}: "
            f"{entry.status}{' - ' + outcome.error if outcome.error else ''}"
        )
        return entry


# Global instance
notification_engine = NotificationEngine()
