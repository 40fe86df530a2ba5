"""Service model - endpoints being monitored."""
import json
from datetime import datetime
from sqlalchemy import Column, Integer, Float, String, DateTime, Boolean
from sqlalchemy.orm import relationship

from ..database import Base

# Statuses a service can be classified as
STATUS_UNKNOWN = "unknown"
STATUS_ONLINE = "online"
STATUS_DEGRADED = "degraded"
STATUS_OFFLINE = "offline"
STATUS_TIMEOUT = "timeout"

FAILURE_STATUSES = (STATUS_DEGRADED, STATUS_OFFLINE, STATUS_TIMEOUT)

SERVICE_TYPES = ("HTTP", "HTTPS", "TCP", "DNS", "DB")


class Service(Base):
    """A monitored service - HTTP(S) endpoint, TCP port, DNS name, or database.
    
    Config fields are managed by CRUD; status and metric fields are written
    only by the monitoring engine.
    """
    
    __tablename__ = "services"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, nullable=True)  # Owning user, managed by auth layer
    name = Column(String, nullable=False)
    type = Column(String, nullable=False, default="HTTP")  # HTTP, HTTPS, TCP, DNS, DB
    url = Column(String, nullable=False)  # URL, hostname or host:port
    host = Column(String, nullable=True)
    port = Column(Integer, nullable=True)
    description = Column(String, nullable=True)
    check_interval = Column(Integer, default=60)  # seconds
    content_match = Column(String, nullable=True)  # substring or /pattern/flags
    headers = Column(String, nullable=True)  # JSON object of request headers
    db_type = Column(String, nullable=True)
    db_connection_string = Column(String, nullable=True)
    degraded_threshold_ms = Column(Integer, nullable=True)
    
    # Engine-maintained state
    status = Column(String, default=STATUS_UNKNOWN)
    response_time = Column(Integer, nullable=True)  # ms, last sample
    uptime = Column(Float, default=100.0)  # percentage
    total_monitored_time = Column(Float, default=0.0)  # seconds
    online_time = Column(Float, default=0.0)  # seconds
    last_checked = Column(DateTime, nullable=True)
    ssl_expiry_date = Column(DateTime, nullable=True)
    ssl_days_remaining = Column(Integer, nullable=True)
    config_error = Column(String, nullable=True)
    
    # Lifecycle
    is_active = Column(Boolean, default=True)
    is_deleted = Column(Boolean, default=False)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    
    # Relationships
    logs = relationship(
        "ServiceLog", back_populates="service",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    metrics = relationship(
        "PerformanceMetric", back_populates="service",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    
    def header_dict(self) -> dict:
        """Custom request headers, or {} when unset or unparseable."""
        if not self.headers:
            return {}
        try:
            value = json.loads(self.headers)
        except json.JSONDecodeError:
            return {}
        return value if isinstance(value, dict) else {}
    
    @property
    def is_schedulable(self) -> bool:
        return bool(self.is_active) and not self.is_deleted
