"""Maintenance gate - decides whether notifications for a service are suppressed.

Only notification dispatch is affected; checks and history carry on.
"""
import calendar
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import MaintenanceWindow

logger = logging.getLogger(__name__)

RECURRENCE_TYPES = ("daily", "weekly", "monthly")


def _add_months(moment: datetime, months: int) -> datetime:
    """Shift by whole months, clamping the day to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _parse_until(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def current_occurrence_start(window: MaintenanceWindow, now: datetime) -> Optional[datetime]:
    """Start of the occurrence that began most recently at or before now.

    Non-recurring windows have a single occurrence at start_time. Returns None
    when no occurrence has started yet, the recurrence has ended, or the
    pattern is unusable.
    """
    start = window.start_time
    if now < start:
        return None
    if not window.is_recurring:
        return start

    pattern = window.pattern_dict()
    if not pattern or pattern.get("type") not in RECURRENCE_TYPES:
        logger.warning(f"Maintenance window {window.id} has an invalid recurring pattern; using its first occurrence")
        return start

    try:
        interval = max(1, int(pattern.get("interval", 1)))
    except (TypeError, ValueError):
        interval = 1

    kind = pattern["type"]
    if kind == "monthly":
        months_elapsed = (now.year - start.year) * 12 + (now.month - start.month)
        steps = months_elapsed // interval
        occurrence = _add_months(start, steps * interval)
        while occurrence > now and steps > 0:
            steps -= 1
            occurrence = _add_months(start, steps * interval)
    else:
        period = timedelta(days=interval if kind == "daily" else 7 * interval)
        steps = (now - start) // period
        occurrence = start + steps * period

    until = _parse_until(pattern.get("until"))
    if until is not None and occurrence > until:
        return None
    return occurrence


def window_covers(window: MaintenanceWindow, now: datetime) -> bool:
    """Whether an active window (or its current recurrence) contains now."""
    if not window.is_active:
        return False
    occurrence = current_occurrence_start(window, now)
    if occurrence is None:
        return False
    duration = window.end_time - window.start_time
    return occurrence <= now <= occurrence + duration


class MaintenanceGate:
    """Looks up active maintenance windows for a service."""

    async def active_windows(
        self,
        session: AsyncSession,
        service_id: Optional[int],
        now: datetime,
    ) -> List[MaintenanceWindow]:
        """Windows covering the service (or all services) at this moment."""
        scope = MaintenanceWindow.service_id.is_(None)
        if service_id is not None:
            scope = or_(MaintenanceWindow.service_id == service_id, scope)

        result = await session.execute(
            select(MaintenanceWindow).where(
                MaintenanceWindow.is_active.is_(True),
                scope,
                MaintenanceWindow.start_time <= now,
                or_(
                    MaintenanceWindow.is_recurring.is_(True),
                    MaintenanceWindow.end_time >= now,
                ),
            )
        )
        return [w for w in result.scalars().all() if window_covers(w, now)]

    async def is_suppressed(
        self,
        session: AsyncSession,
        service_id: Optional[int],
        now: datetime,
    ) -> bool:
        windows = await self.active_windows(session, service_id, now)
        if windows:
            logger.debug(
                f"Service {service_id} in maintenance: {', '.join(w.title for w in windows)}"
            )
        return bool(windows)


# Global instance
maintenance_gate = MaintenanceGate()
