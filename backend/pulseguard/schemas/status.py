"""Status schemas for dashboards."""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel


class ServiceSummary(BaseModel):
    """Current state of one service."""
    id: int
    name: str
    type: str
    status: str  # unknown, online, degraded, offline, timeout
    response_time: Optional[int] = None
    uptime: float
    last_checked: Optional[datetime] = None
    ssl_days_remaining: Optional[int] = None
    config_error: Optional[str] = None
    is_active: bool

    class Config:
        from_attributes = True


class StatusOverview(BaseModel):
    """Counts per status plus a summary of each service."""
    total_services: int
    services_online: int
    services_degraded: int
    services_offline: int
    services_timeout: int
    services_unknown: int
    overall_uptime: float
    services: List[ServiceSummary]


class ServiceLogEntry(BaseModel):
    """One check event."""
    id: int
    timestamp: datetime
    status: str
    response_time: Optional[int] = None
    message: Optional[str] = None

    class Config:
        from_attributes = True


class ServiceDetail(ServiceSummary):
    """Service state with monitoring counters and recent events."""
    url: str
    total_monitored_time: float
    online_time: float
    ssl_expiry_date: Optional[datetime] = None
    recent_logs: List[ServiceLogEntry] = []


class MetricPoint(BaseModel):
    """One performance sample."""
    timestamp: datetime
    response_time: int
    status: str
    uptime: float

    class Config:
        from_attributes = True


class MaintenanceWindowInfo(BaseModel):
    id: int
    title: str
    service_id: Optional[int] = None
    start_time: datetime
    end_time: datetime
    is_recurring: bool

    class Config:
        from_attributes = True


class MaintenanceStatus(BaseModel):
    """Whether notifications for a service are currently withheld."""
    service_id: int
    in_maintenance: bool
    windows: List[MaintenanceWindowInfo]
