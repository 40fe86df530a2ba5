"""PerformanceMetric model - time-series samples for charts and heatmaps."""
from datetime import datetime
from sqlalchemy import Column, Integer, Float, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from ..database import Base


class PerformanceMetric(Base):
    """One sample per check, written whether or not the status changed."""
    
    __tablename__ = "performance_metrics"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    service_id = Column(Integer, ForeignKey("services.id", ondelete="CASCADE"), nullable=False, index=True)
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)
    response_time = Column(Integer, nullable=False)  # ms, 0 when unmeasured
    status = Column(String, nullable=False)
    uptime = Column(Float, nullable=False)  # uptime percentage at sample time
    
    service = relationship("Service", back_populates="metrics")
