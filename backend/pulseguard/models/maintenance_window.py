"""MaintenanceWindow model - notification suppression windows."""
import json
from datetime import datetime
from typing import Optional
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Boolean

from ..database import Base


class MaintenanceWindow(Base):
    """A time range during which notifications are withheld.
    
    service_id NULL means the window covers every service.
    """
    
    __tablename__ = "maintenance_windows"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    service_id = Column(Integer, ForeignKey("services.id", ondelete="CASCADE"), nullable=True, index=True)
    title = Column(String, nullable=False)
    description = Column(String, nullable=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    is_recurring = Column(Boolean, default=False)
    recurring_pattern = Column(String, nullable=True)  # JSON: {"type": "weekly", "interval": 1}
    is_active = Column(Boolean, default=True)
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    
    def pattern_dict(self) -> Optional[dict]:
        if not self.recurring_pattern:
            return None
        try:
            value = json.loads(self.recurring_pattern)
        except json.JSONDecodeError:
            return None
        return value if isinstance(value, dict) else None
