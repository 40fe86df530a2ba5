"""Service lifecycle - soft delete, restore and purge.

Soft delete keeps all history and only takes the service off the schedule.
Purge is the one path that removes logs and metrics.
"""
import logging
from typing import Optional

from sqlalchemy import delete, select

from ..database import async_session
from ..models import NotificationRuleState, PerformanceMetric, Service, ServiceLog
from ..utils.db_utils import retry_on_lock, utcnow
from .scheduler import SchedulerService, scheduler_service

logger = logging.getLogger(__name__)


class ServiceLifecycle:
    """Applies lifecycle changes to a service and keeps the scheduler in step."""

    def __init__(self, session_factory=None, scheduler: Optional[SchedulerService] = None):
        self._session_factory = session_factory or async_session
        self._scheduler = scheduler or scheduler_service

    async def soft_delete(self, service_id: int) -> Optional[Service]:
        """Mark a service deleted and inactive, and stop its timer."""
        async def write():
            async with self._session_factory() as session:
                async with session.begin():
                    service = await self._get_for_update(session, service_id)
                    if service is None:
                        return None
                    service.is_deleted = True
                    service.is_active = False
                    service.deleted_at = utcnow()
                    return service

        service = await retry_on_lock(write)
        if service is not None:
            self._scheduler.unschedule_service(service_id)
            logger.info(f"Service {service_id} ({service.name}) moved to trash")
        return service

    async def restore(self, service_id: int) -> Optional[Service]:
        """Bring a soft-deleted service back and reschedule it."""
        async def write():
            async with self._session_factory() as session:
                async with session.begin():
                    service = await self._get_for_update(session, service_id)
                    if service is None:
                        return None
                    service.is_deleted = False
                    service.is_active = True
                    service.deleted_at = None
                    return service

        service = await retry_on_lock(write)
        if service is not None:
            self._scheduler.schedule_service(service.id, service.check_interval)
            logger.info(f"Service {service_id} ({service.name}) restored")
        return service

    async def purge(self, service_id: int) -> bool:
        """Permanently delete a service with its logs, metrics and rule state.

        Returns False if the service does not exist.
        """
        async def write() -> bool:
            async with self._session_factory() as session:
                async with session.begin():
                    service = await self._get_for_update(session, service_id)
                    if service is None:
                        return False
                    await session.execute(delete(ServiceLog).where(ServiceLog.service_id == service_id))
                    await session.execute(delete(PerformanceMetric).where(PerformanceMetric.service_id == service_id))
                    await session.execute(
                        delete(NotificationRuleState).where(NotificationRuleState.service_id == service_id)
                    )
                    await session.delete(service)
                    return True

        purged = await retry_on_lock(write)
        if purged:
            self._scheduler.unschedule_service(service_id)
            logger.warning(f"Service {service_id} permanently deleted with its history")
        return purged

    @staticmethod
    async def _get_for_update(session, service_id: int) -> Optional[Service]:
        result = await session.execute(
            select(Service).where(Service.id == service_id).with_for_update()
        )
        return result.scalar_one_or_none()


# Global instance
service_lifecycle = ServiceLifecycle()
