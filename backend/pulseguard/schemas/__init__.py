"""Pydantic schemas for API responses."""
from .status import (
    ServiceSummary,
    StatusOverview,
    ServiceLogEntry,
    ServiceDetail,
    MetricPoint,
    MaintenanceWindowInfo,
    MaintenanceStatus,
)
from .service import (
    CheckResponse,
    LifecycleResponse,
)
from .notification import NotificationHistoryEntry

__all__ = [
    "ServiceSummary",
    "StatusOverview",
    "ServiceLogEntry",
    "ServiceDetail",
    "MetricPoint",
    "MaintenanceWindowInfo",
    "MaintenanceStatus",
    "CheckResponse",
    "LifecycleResponse",
    "NotificationHistoryEntry",
]
