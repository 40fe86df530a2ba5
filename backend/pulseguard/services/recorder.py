"""History recorder - persists check outcomes and service counters."""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select

from ..database import async_session
from ..models import PerformanceMetric, Service, ServiceLog
from ..models.service import STATUS_ONLINE
from ..utils.db_utils import retry_on_lock, utcnow
from .evaluator import Evaluation
from .probe import ProbeResult

logger = logging.getLogger(__name__)


def compute_uptime(online_time: float, total_monitored_time: float) -> float:
    """Uptime percentage; 100 until any time has been monitored."""
    if not total_monitored_time:
        return 100.0
    return min(100.0, (online_time / total_monitored_time) * 100)


def apply_check(
    service: Service,
    result: ProbeResult,
    evaluation: Evaluation,
    checked_at: datetime,
):
    """Update a service row's status and counters for one check.

    Time since the previous check counts towards total monitored time, and
    towards online time only when this check is online. Counters never go
    backwards, even if checked_at is older than last_checked.
    """
    elapsed = 0.0
    if service.last_checked is not None:
        elapsed = max(0.0, (checked_at - service.last_checked).total_seconds())

    service.total_monitored_time = (service.total_monitored_time or 0.0) + elapsed
    service.online_time = service.online_time or 0.0
    if evaluation.new_status == STATUS_ONLINE:
        service.online_time += elapsed
    service.uptime = compute_uptime(service.online_time, service.total_monitored_time)

    service.status = evaluation.new_status
    service.response_time = result.response_time_ms
    if service.last_checked is None or checked_at > service.last_checked:
        service.last_checked = checked_at

    # Keep the last known certificate data when this lookup failed
    if result.ssl_days_remaining is not None:
        service.ssl_days_remaining = result.ssl_days_remaining
        service.ssl_expiry_date = result.ssl_expiry_date

    service.config_error = result.config_error


class HistoryRecorder:
    """Writes one ServiceLog and one PerformanceMetric per check.

    The two appends and the service update share one transaction.
    """

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or async_session

    async def record(
        self,
        service_id: int,
        result: ProbeResult,
        evaluation: Evaluation,
        checked_at: Optional[datetime] = None,
    ) -> Optional[Service]:
        """Persist a check. Returns the updated service, or None if it is gone.

        Raises:
            PersistenceError: If storage stays unavailable through retries
        """
        checked_at = checked_at or utcnow()

        async def write() -> Optional[Service]:
            async with self._session_factory() as session:
                async with session.begin():
                    row = await session.execute(
                        select(Service).where(Service.id == service_id).with_for_update()
                    )
                    service = row.scalar_one_or_none()
                    if service is None:
                        return None

                    apply_check(service, result, evaluation, checked_at)

                    session.add(ServiceLog(
                        service_id=service_id,
                        timestamp=checked_at,
                        status=evaluation.new_status,
                        response_time=result.response_time_ms,
                        message=evaluation.detail,
                    ))
                    session.add(PerformanceMetric(
                        service_id=service_id,
                        timestamp=checked_at,
                        response_time=result.response_time_ms or 0,
                        status=evaluation.new_status,
                        uptime=service.uptime,
                    ))
                return service

        service = await retry_on_lock(write)
        if service is not None:
            logger.debug(
                f"Recorded check for {service.name}: {service.status} "
                f"({service.response_time}ms, uptime {service.uptime:.2f}%)"
            )
        return service


# Global instance
history_recorder = HistoryRecorder()
