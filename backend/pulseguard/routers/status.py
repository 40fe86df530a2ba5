"""Status API for dashboards."""
from datetime import timedelta
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models import PerformanceMetric, Service, ServiceLog
from ..models.service import (
    STATUS_DEGRADED,
    STATUS_OFFLINE,
    STATUS_ONLINE,
    STATUS_TIMEOUT,
    STATUS_UNKNOWN,
)
from ..schemas.status import (
    MaintenanceStatus,
    MaintenanceWindowInfo,
    MetricPoint,
    ServiceDetail,
    ServiceLogEntry,
    ServiceSummary,
    StatusOverview,
)
from ..services.maintenance import maintenance_gate
from ..utils.db_utils import utcnow

router = APIRouter(prefix="/api/status", tags=["status"])

RECENT_LOG_LIMIT = 50


async def _get_service(db: AsyncSession, service_id: int) -> Service:
    result = await db.execute(
        select(Service).where(Service.id == service_id, Service.is_deleted.is_(False))
    )
    service = result.scalar_one_or_none()
    if not service:
        raise HTTPException(status_code=404, detail="Service not found")
    return service


@router.get("/overview", response_model=StatusOverview)
async def get_status_overview(db: AsyncSession = Depends(get_db)):
    """Get dashboard overview data."""
    result = await db.execute(
        select(Service).where(Service.is_deleted.is_(False)).order_by(Service.name)
    )
    services = result.scalars().all()

    counts = {
        STATUS_ONLINE: 0,
        STATUS_DEGRADED: 0,
        STATUS_OFFLINE: 0,
        STATUS_TIMEOUT: 0,
        STATUS_UNKNOWN: 0,
    }
    for service in services:
        status = service.status if service.status in counts else STATUS_UNKNOWN
        counts[status] += 1

    overall_uptime = (sum(s.uptime or 0 for s in services) / len(services)) if services else 100.0

    return StatusOverview(
        total_services=len(services),
        services_online=counts[STATUS_ONLINE],
        services_degraded=counts[STATUS_DEGRADED],
        services_offline=counts[STATUS_OFFLINE],
        services_timeout=counts[STATUS_TIMEOUT],
        services_unknown=counts[STATUS_UNKNOWN],
        overall_uptime=round(overall_uptime, 2),
        services=[ServiceSummary.model_validate(s) for s in services],
    )


@router.get("/services/{service_id}", response_model=ServiceDetail)
async def get_service_status(service_id: int, db: AsyncSession = Depends(get_db)):
    """Current status and counters for a service, with its latest events."""
    service = await _get_service(db, service_id)

    logs_result = await db.execute(
        select(ServiceLog)
        .where(ServiceLog.service_id == service_id)
        .order_by(ServiceLog.timestamp.desc(), ServiceLog.id.desc())
        .limit(RECENT_LOG_LIMIT)
    )

    detail = ServiceDetail.model_validate(service)
    detail.recent_logs = [ServiceLogEntry.model_validate(log) for log in logs_result.scalars().all()]
    return detail


@router.get("/services/{service_id}/metrics", response_model=List[MetricPoint])
async def get_service_metrics(
    service_id: int,
    hours: int = Query(default=24, ge=1, le=24 * 90),
    db: AsyncSession = Depends(get_db),
):
    """Performance samples for charts, oldest first."""
    await _get_service(db, service_id)

    cutoff = utcnow() - timedelta(hours=hours)
    result = await db.execute(
        select(PerformanceMetric)
        .where(
            PerformanceMetric.service_id == service_id,
            PerformanceMetric.timestamp >= cutoff,
        )
        .order_by(PerformanceMetric.timestamp.asc(), PerformanceMetric.id.asc())
    )
    return [MetricPoint.model_validate(m) for m in result.scalars().all()]


@router.get("/services/{service_id}/maintenance", response_model=MaintenanceStatus)
async def get_service_maintenance(service_id: int, db: AsyncSession = Depends(get_db)):
    """Whether notifications for the service are being withheld right now."""
    await _get_service(db, service_id)

    windows = await maintenance_gate.active_windows(db, service_id, utcnow())
    return MaintenanceStatus(
        service_id=service_id,
        in_maintenance=bool(windows),
        windows=[MaintenanceWindowInfo.model_validate(w) for w in windows],
    )
