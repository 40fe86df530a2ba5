"""ServiceLog model - append-only check event log."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from ..database import Base


class ServiceLog(Base):
    """One row per completed check."""
    
    __tablename__ = "service_logs"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    service_id = Column(Integer, ForeignKey("services.id", ondelete="CASCADE"), nullable=False, index=True)
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)
    status = Column(String, nullable=False)
    response_time = Column(Integer, nullable=True)  # ms
    message = Column(String, nullable=True)
    
    service = relationship("Service", back_populates="logs")
