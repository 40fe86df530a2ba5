"""Notification API - channel tests and dispatch history."""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models import NotificationHistory
from ..schemas.notification import NotificationHistoryEntry
from ..services.notifier import notification_engine

router = APIRouter(prefix="/api", tags=["notifications"])


@router.post("/channels/{channel_id}/test", response_model=NotificationHistoryEntry)
async def test_channel(channel_id: int):
    """Send a test notification through a channel and return the recorded attempt."""
    entry = await notification_engine.test_channel(channel_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="Channel not found")
    return NotificationHistoryEntry.model_validate(entry)


@router.get("/notifications/history", response_model=List[NotificationHistoryEntry])
async def get_notification_history(
    service_id: Optional[int] = None,
    channel_id: Optional[int] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
):
    """Latest dispatch attempts, newest first."""
    query = select(NotificationHistory)
    if service_id is not None:
        query = query.where(NotificationHistory.service_id == service_id)
    if channel_id is not None:
        query = query.where(NotificationHistory.channel_id == channel_id)
    result = await db.execute(
        query.order_by(NotificationHistory.sent_at.desc(), NotificationHistory.id.desc()).limit(limit)
    )
    return [NotificationHistoryEntry.model_validate(h) for h in result.scalars().all()]
