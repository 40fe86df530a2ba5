"""Schemas for service actions."""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel


class CheckResponse(BaseModel):
    """Result of a manual check."""
    service_id: int
    status: str
    previous_status: Optional[str] = None
    response_time: Optional[int] = None
    detail: Optional[str] = None
    uptime: float
    checked_at: Optional[datetime] = None
    ssl_days_remaining: Optional[int] = None


class LifecycleResponse(BaseModel):
    """Lifecycle flags after a delete or restore."""
    id: int
    name: str
    is_active: bool
    is_deleted: bool
    deleted_at: Optional[datetime] = None

    class Config:
        from_attributes = True
