"""Notification history schemas."""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel


class NotificationHistoryEntry(BaseModel):
    """One dispatch attempt."""
    id: int
    channel_id: Optional[int] = None
    service_id: Optional[int] = None
    rule_id: Optional[int] = None
    event: str
    message: str
    status: str  # sent, failed
    error_message: Optional[str] = None
    sent_at: datetime

    class Config:
        from_attributes = True
