"""Scheduler service - runs each service's checks on its own timer.

Scheduling design:
- One APScheduler interval job per active service, keyed by service ID, so
  adding, removing or re-timing a service never touches the others
- Each service's first run is offset by its ID to avoid bursts when many
  services share an interval
- At most one in-flight check per service: a tick that arrives while the
  previous check is still running is skipped, not queued
- A global semaphore bounds concurrent checks; ticks wait for a slot
- A reconciliation job re-reads configuration so CRUD changes are picked up
  without a restart
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from ..config import settings
from ..database import async_session
from ..exceptions import EngineStartupError, PersistenceError
from ..models import Service
from ..utils.db_utils import utcnow
from .evaluator import Evaluation, evaluate, evaluate_ssl
from .notifier import NotificationEngine, notification_engine
from .probe import ProbeExecutor, ProbeResult, probe_executor
from .recorder import HistoryRecorder, history_recorder

logger = logging.getLogger(__name__)

# Prime number for offset calculation to ensure good distribution
OFFSET_PRIME = 7

# First runs are spread over at most this many seconds
MAX_STAGGER_SECONDS = 30

# Intervals below this are raised to it
MIN_CHECK_INTERVAL = 5

DEFAULT_CHECK_INTERVAL = 60


@dataclass
class CheckOutcome:
    """Everything one completed check produced."""
    service: Service
    result: ProbeResult
    evaluation: Evaluation
    ssl_event: Optional[str] = None


class SchedulerService:
    """Service for scheduling and running periodic checks per service."""

    def __init__(
        self,
        session_factory=None,
        probe: Optional[ProbeExecutor] = None,
        recorder: Optional[HistoryRecorder] = None,
        notifier: Optional[NotificationEngine] = None,
        max_concurrent: Optional[int] = None,
    ):
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._running = False
        self._session_factory = session_factory or async_session
        self._probe = probe or probe_executor
        self._recorder = recorder or history_recorder
        self._notifier = notifier or notification_engine
        self._semaphore = asyncio.Semaphore(max_concurrent or settings.max_concurrent_checks)
        # service_id -> interval of its scheduled job
        self._jobs: Dict[int, int] = {}
        # service_id -> running check task
        self._in_flight: Dict[int, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Load active services and start their timers.

        Raises:
            EngineStartupError: If storage cannot be read
        """
        if self._running:
            return

        try:
            services = await self._load_schedulable()
        except (SQLAlchemyError, OSError) as e:
            raise EngineStartupError(f"Cannot load services from storage: {e}") from e

        self.scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self.scheduler.add_job(
            self.sync,
            trigger=IntervalTrigger(seconds=settings.sync_interval_seconds),
            id="sync_services",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        self._running = True

        self._apply(services)
        logger.info(
            f"Scheduler started ({len(self._jobs)} services, "
            f"max_concurrent={settings.max_concurrent_checks})"
        )

    async def stop(self, grace_seconds: Optional[float] = None):
        """Cancel all timers and wait for in-flight checks up to the grace period."""
        if not self._running:
            return

        self.scheduler.shutdown(wait=False)
        self._running = False
        self._jobs.clear()

        grace = settings.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        pending = [task for task in self._in_flight.values() if not task.done()]
        if pending:
            logger.info(f"Waiting up to {grace}s for {len(pending)} in-flight checks")
            _, unfinished = await asyncio.wait(pending, timeout=grace)
            for task in unfinished:
                task.cancel()
            if unfinished:
                await asyncio.gather(*unfinished, return_exceptions=True)
                logger.warning(f"Cancelled {len(unfinished)} checks still running after {grace}s")

        logger.info("Scheduler stopped")

    def status(self) -> dict:
        """Snapshot of the scheduler for display."""
        return {
            "running": self._running,
            "scheduled_services": sorted(self._jobs),
            "in_flight": sum(1 for task in self._in_flight.values() if not task.done()),
        }

    def is_scheduled(self, service_id: int) -> bool:
        return service_id in self._jobs

    def _calculate_service_offset(self, service_id: int, check_interval: int) -> int:
        """Calculate a deterministic first-run offset for a service.

        Uses prime multiplication of the ID so services with the same interval
        don't all fire at once.
        """
        return (service_id * OFFSET_PRIME) % max(1, min(check_interval, MAX_STAGGER_SECONDS))

    def schedule_service(self, service_id: int, check_interval: Optional[int]):
        """Start (or re-time) a service's timer. No-op if already on this interval."""
        if not self._running:
            return

        interval = max(check_interval or DEFAULT_CHECK_INTERVAL, MIN_CHECK_INTERVAL)
        if self._jobs.get(service_id) == interval:
            return

        offset = self._calculate_service_offset(service_id, interval)
        self.scheduler.add_job(
            self._tick,
            trigger=IntervalTrigger(
                seconds=interval,
                start_date=datetime.now(timezone.utc) + timedelta(seconds=offset),
            ),
            args=[service_id],
            id=f"service-{service_id}",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=interval,
        )
        action = "Rescheduled" if service_id in self._jobs else "Scheduled"
        self._jobs[service_id] = interval
        logger.info(f"{action} service {service_id} every {interval}s (offset {offset}s)")

    def unschedule_service(self, service_id: int):
        """Stop a service's timer. A check already running is left to finish."""
        if self._jobs.pop(service_id, None) is None:
            return
        if self.scheduler is not None and self._running:
            try:
                self.scheduler.remove_job(f"service-{service_id}")
            except JobLookupError:
                pass
        logger.info(f"Unscheduled service {service_id}")

    async def sync(self):
        """Reconcile timers with the current service configuration."""
        try:
            services = await self._load_schedulable()
        except SQLAlchemyError as e:
            logger.error(f"Could not refresh services, keeping current schedule: {e}")
            return
        self._apply(services)

    def _apply(self, services: List[Tuple[int, int]]):
        wanted = dict(services)
        for service_id in list(self._jobs):
            if service_id not in wanted:
                self.unschedule_service(service_id)
        for service_id, interval in wanted.items():
            self.schedule_service(service_id, interval)

    async def _load_schedulable(self) -> List[Tuple[int, int]]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Service.id, Service.check_interval).where(
                    Service.is_active.is_(True),
                    Service.is_deleted.is_(False),
                )
            )
            return [(row[0], row[1]) for row in result.fetchall()]

    async def _tick(self, service_id: int):
        """Timer callback: start a check unless one is already running."""
        task = self._in_flight.get(service_id)
        if task is not None and not task.done():
            logger.debug(f"Service {service_id} still being checked, skipping tick")
            return
        self._start_check(service_id)

    def _start_check(self, service_id: int) -> asyncio.Task:
        task = asyncio.create_task(self._check_with_limit(service_id))
        self._in_flight[service_id] = task
        task.add_done_callback(lambda done, sid=service_id: self._forget(sid, done))
        return task

    def _forget(self, service_id: int, task: asyncio.Task):
        if self._in_flight.get(service_id) is task:
            del self._in_flight[service_id]

    async def check_now(self, service_id: int) -> Optional[CheckOutcome]:
        """Check a service immediately, outside its timer.

        If a check is already running for the service, waits for that one
        instead of starting another.
        """
        task = self._in_flight.get(service_id)
        if task is None or task.done():
            task = self._start_check(service_id)
        return await asyncio.shield(task)

    async def _check_with_limit(self, service_id: int) -> Optional[CheckOutcome]:
        """Run one check under the concurrency limit, isolating its failures."""
        async with self._semaphore:
            try:
                return await self.run_check(service_id)
            except PersistenceError as e:
                logger.warning(f"Dropping check result for service {service_id}: {e}")
            except SQLAlchemyError as e:
                logger.error(f"Database error checking service {service_id}: {e}")
            except Exception as e:
                logger.error(f"Error checking service {service_id}: {type(e).__name__}: {e}")
        return None

    async def run_check(self, service_id: int) -> Optional[CheckOutcome]:
        """Probe, evaluate, record and notify for one service.

        Returns None if the service no longer exists or is not schedulable.
        """
        async with self._session_factory() as session:
            result = await session.execute(select(Service).where(Service.id == service_id))
            service = result.scalar_one_or_none()

        if service is None or not service.is_schedulable:
            self.unschedule_service(service_id)
            return None

        previous_status = service.status
        previous_ssl_days = service.ssl_days_remaining

        probe_result = await self._probe.probe(service)
        checked_at = utcnow()
        evaluation = evaluate(previous_status, probe_result, service, settings.degraded_response_time_ms)

        if evaluation.transitioned:
            logger.info(f"Service {service.name}: {previous_status} -> {evaluation.new_status} ({evaluation.detail})")
        else:
            logger.debug(f"Service {service.name}: {evaluation.new_status} ({probe_result.response_time_ms}ms)")

        updated = await self._recorder.record(service_id, probe_result, evaluation, checked_at)
        if updated is None:
            return None

        ssl_event = evaluate_ssl(previous_ssl_days, probe_result.ssl_days_remaining, settings.ssl_warning_days)

        # History is already committed; a notification failure must not undo it
        try:
            await self._notifier.process_check(updated, evaluation, ssl_event, checked_at)
        except (PersistenceError, SQLAlchemyError) as e:
            logger.error(f"Notification processing failed for service {service_id}: {e}")

        return CheckOutcome(
            service=updated,
            result=probe_result,
            evaluation=evaluation,
            ssl_event=ssl_event,
        )


# Global instance
scheduler_service = SchedulerService()
