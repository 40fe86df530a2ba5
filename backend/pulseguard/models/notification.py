"""Notification models - channels, rules, rule runtime state and history."""
import json
from datetime import datetime
from typing import Optional
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Boolean, UniqueConstraint
from sqlalchemy.orm import relationship

from ..database import Base

# Events a rule can subscribe to
EVENT_DOWN = "down"
EVENT_UP = "up"
EVENT_DEGRADED = "degraded"
EVENT_SSL_EXPIRY = "ssl_expiry"
EVENT_SSL_WARNING = "ssl_warning"
EVENT_TEST = "test"

RULE_EVENTS = (EVENT_DOWN, EVENT_UP, EVENT_DEGRADED, EVENT_SSL_EXPIRY, EVENT_SSL_WARNING)
FAILURE_EVENTS = (EVENT_DOWN, EVENT_DEGRADED)
SSL_EVENTS = (EVENT_SSL_EXPIRY, EVENT_SSL_WARNING)


class NotificationChannel(Base):
    """A delivery target - webhook, discord, slack, telegram or email."""
    
    __tablename__ = "notification_channels"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    type = Column(String, nullable=False)
    config = Column(String, nullable=False, default="{}")  # JSON, provider-specific
    is_enabled = Column(Boolean, default=True)
    is_default = Column(Boolean, default=False)
    config_error = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    
    rules = relationship("NotificationRule", back_populates="channel", cascade="all, delete-orphan")
    
    def config_dict(self) -> dict:
        """Parsed config; raises ValueError when it is not a JSON object."""
        value = json.loads(self.config or "{}")
        if not isinstance(value, dict):
            raise ValueError("channel config must be a JSON object")
        return value


class NotificationRule(Base):
    """Declarative rule definition, managed by CRUD.
    
    service_id NULL means the rule applies to every service.
    """
    
    __tablename__ = "notification_rules"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    service_id = Column(Integer, ForeignKey("services.id", ondelete="CASCADE"), nullable=True, index=True)
    channel_id = Column(Integer, ForeignKey("notification_channels.id", ondelete="CASCADE"), nullable=False, index=True)
    events = Column(String, nullable=False, default="[]")  # JSON list of event names
    threshold = Column(Integer, default=1)  # consecutive failures before first firing
    cooldown = Column(Integer, default=300)  # seconds between repeat firings
    is_enabled = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    
    channel = relationship("NotificationChannel", back_populates="rules")
    states = relationship("NotificationRuleState", back_populates="rule", cascade="all, delete-orphan")
    
    def event_set(self) -> frozenset:
        try:
            value = json.loads(self.events or "[]")
        except json.JSONDecodeError:
            return frozenset()
        if isinstance(value, str):
            value = [value]
        return frozenset(e for e in value if e in RULE_EVENTS)


class NotificationRuleState(Base):
    """Runtime counters for a rule, written only by the notification engine.
    
    Kept per (rule, service) so a global rule tracks each service separately.
    """
    
    __tablename__ = "notification_rule_states"
    __table_args__ = (UniqueConstraint("rule_id", "service_id", name="uq_rule_state_rule_service"),)
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    rule_id = Column(Integer, ForeignKey("notification_rules.id", ondelete="CASCADE"), nullable=False)
    service_id = Column(Integer, ForeignKey("services.id", ondelete="CASCADE"), nullable=False)
    consecutive_failures = Column(Integer, default=0, nullable=False)
    last_notified = Column(DateTime, nullable=True)
    last_event = Column(String, nullable=True)
    event_notified = Column(String, nullable=True)  # JSON: event -> ISO time it last fired
    
    rule = relationship("NotificationRule", back_populates="states")
    
    def _stamps(self) -> dict:
        try:
            value = json.loads(self.event_notified or "{}")
        except json.JSONDecodeError:
            return {}
        return value if isinstance(value, dict) else {}
    
    def notified_at(self, event: str) -> Optional[datetime]:
        """When this rule last fired the event for the service."""
        value = self._stamps().get(event)
        if not value:
            return None
        try:
            return datetime.fromisoformat(value)
        except (TypeError, ValueError):
            return None
    
    def mark_notified(self, event: str, now: datetime):
        stamps = self._stamps()
        stamps[event] = now.isoformat()
        self.event_notified = json.dumps(stamps)
        self.last_notified = now
        self.last_event = event


class NotificationHistory(Base):
    """Immutable audit record of each dispatch attempt."""
    
    __tablename__ = "notification_history"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    channel_id = Column(Integer, ForeignKey("notification_channels.id", ondelete="SET NULL"), nullable=True, index=True)
    service_id = Column(Integer, ForeignKey("services.id", ondelete="SET NULL"), nullable=True, index=True)
    rule_id = Column(Integer, nullable=True)
    event = Column(String, nullable=False)
    message = Column(String, nullable=False)
    status = Column(String, nullable=False)  # sent, failed
    error_message = Column(String, nullable=True)
    sent_at = Column(DateTime, default=datetime.utcnow, index=True)
