"""Database models."""
from .service import Service
from .service_log import ServiceLog
from .performance_metric import PerformanceMetric
from .notification import (
    NotificationChannel,
    NotificationRule,
    NotificationRuleState,
    NotificationHistory,
)
from .maintenance_window import MaintenanceWindow

__all__ = [
    "Service",
    "ServiceLog",
    "PerformanceMetric",
    "NotificationChannel",
    "NotificationRule",
    "NotificationRuleState",
    "NotificationHistory",
    "MaintenanceWindow",
]
