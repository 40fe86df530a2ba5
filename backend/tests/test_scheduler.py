"""Tests for the scheduler and the per-check pipeline."""
import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from pulseguard.channels import build_adapters
from pulseguard.database import Base
from pulseguard.exceptions import EngineStartupError, PersistenceError
from pulseguard.models import NotificationHistory, PerformanceMetric, Service, ServiceLog
from pulseguard.services.notifier import NotificationEngine
from pulseguard.services.probe import ProbeOutcome, ProbeResult
from pulseguard.services.recorder import HistoryRecorder
from pulseguard.services.scheduler import SchedulerService
from pulseguard.utils.db_utils import utcnow


def probe_returning(*results):
    probe = AsyncMock()
    probe.probe.side_effect = list(results)
    return probe


def online(ms=80, **fields):
    return ProbeResult(outcome=ProbeOutcome.ONLINE, response_time_ms=ms, detail="HTTP 200 - OK", **fields)


def offline(detail="HTTP 500 - Server Error"):
    return ProbeResult(outcome=ProbeOutcome.OFFLINE, response_time_ms=40, detail=detail)


class BlockingProbe:
    """Probe that waits until released, counting calls and overlap."""

    def __init__(self):
        self.calls = 0
        self.active = 0
        self.peak = 0
        self.release = asyncio.Event()

    async def probe(self, service):
        self.calls += 1
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await self.release.wait()
        finally:
            self.active -= 1
        return online()


@pytest.fixture
def webhook_calls():
    return []


@pytest.fixture
def notifier(session_factory, webhook_calls):
    def handler(request):
        webhook_calls.append(json.loads(request.content))
        return httpx.Response(200)

    return NotificationEngine(session_factory, adapters=build_adapters(httpx.MockTransport(handler)))


def scheduler_with(session_factory, probe, notifier=None, recorder=None):
    return SchedulerService(
        session_factory=session_factory,
        probe=probe,
        recorder=recorder or HistoryRecorder(session_factory),
        notifier=notifier or AsyncMock(),
        max_concurrent=4,
    )


async def count(session_factory, model):
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar()


async def test_pipeline_records_and_notifies(session_factory, notifier, webhook_calls, make_service, make_channel, make_rule):
    service = await make_service(status="online")
    channel = await make_channel()
    await make_rule(channel.id, service_id=service.id)
    scheduler = scheduler_with(session_factory, probe_returning(offline(), online()), notifier)

    outcome = await scheduler.run_check(service.id)
    assert outcome.evaluation.new_status == "offline"
    assert outcome.evaluation.transitioned

    outcome = await scheduler.run_check(service.id)
    assert outcome.evaluation.event == "up"

    assert await count(session_factory, ServiceLog) == 2
    assert await count(session_factory, PerformanceMetric) == 2
    assert [call["event"] for call in webhook_calls] == ["down", "up"]
    assert webhook_calls[0]["message"] == 'Service "API" is DOWN: HTTP 500 - Server Error'


async def test_maintenance_keeps_recording(session_factory, notifier, webhook_calls, make_service, make_channel, make_rule, make_window):
    service = await make_service(status="online")
    channel = await make_channel()
    await make_rule(channel.id, service_id=service.id)
    now = utcnow()
    await make_window(now - timedelta(hours=1), now + timedelta(hours=1), service_id=service.id)
    scheduler = scheduler_with(session_factory, probe_returning(offline(), offline()), notifier)

    await scheduler.run_check(service.id)
    await scheduler.run_check(service.id)

    assert await count(session_factory, ServiceLog) == 2
    assert await count(session_factory, PerformanceMetric) == 2
    assert await count(session_factory, NotificationHistory) == 0
    assert webhook_calls == []


async def test_ssl_warning_sent_once(session_factory, notifier, webhook_calls, make_service, make_channel, make_rule):
    service = await make_service(type="HTTPS", url="https://api.example.test", status="online", ssl_days_remaining=20)
    channel = await make_channel()
    await make_rule(channel.id, events=["ssl_warning", "ssl_expiry"], service_id=service.id)
    scheduler = scheduler_with(
        session_factory,
        probe_returning(online(ssl_days_remaining=10), online(ssl_days_remaining=9)),
        notifier,
    )

    first = await scheduler.run_check(service.id)
    second = await scheduler.run_check(service.id)

    assert first.ssl_event == "ssl_warning"
    assert second.ssl_event is None
    assert [call["event"] for call in webhook_calls] == ["ssl_warning"]


async def test_deleted_service_is_skipped(session_factory, make_service):
    service = await make_service(is_deleted=True, is_active=False)
    probe = probe_returning(online())
    scheduler = scheduler_with(session_factory, probe)

    assert await scheduler.run_check(service.id) is None
    probe.probe.assert_not_called()


async def test_tick_skipped_while_check_in_flight(session_factory, make_service):
    service = await make_service()
    probe = BlockingProbe()
    scheduler = scheduler_with(session_factory, probe)

    await scheduler._tick(service.id)
    await asyncio.sleep(0.05)
    await scheduler._tick(service.id)
    await asyncio.sleep(0.05)
    assert probe.calls == 1

    probe.release.set()
    outcome = await scheduler.check_now(service.id)
    assert outcome is not None
    assert await count(session_factory, ServiceLog) == 1


async def test_manual_check_joins_in_flight_check(session_factory, make_service):
    service = await make_service()
    probe = BlockingProbe()
    scheduler = scheduler_with(session_factory, probe)

    first = asyncio.create_task(scheduler.check_now(service.id))
    await asyncio.sleep(0.05)
    second = asyncio.create_task(scheduler.check_now(service.id))
    await asyncio.sleep(0.05)
    probe.release.set()

    results = await asyncio.gather(first, second)
    assert probe.calls == 1
    assert results[0] is results[1]


@pytest.fixture
async def file_session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/checks.db", connect_args={"timeout": 30})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


async def test_concurrency_cap_limits_checks_in_flight(file_session_factory):
    services = [
        Service(
            name=f"svc-{i}",
            type="HTTP",
            url=f"http://svc{i}.example.test",
            check_interval=60,
            status="unknown",
            uptime=100.0,
            total_monitored_time=0.0,
            online_time=0.0,
            is_active=True,
            is_deleted=False,
        )
        for i in range(5)
    ]
    async with file_session_factory() as session:
        session.add_all(services)
        await session.commit()
    by_id = {service.id: service for service in services}

    probe = BlockingProbe()
    scheduler = SchedulerService(
        session_factory=file_session_factory,
        probe=probe,
        recorder=AsyncMock(**{"record.side_effect": lambda service_id, *args: by_id[service_id]}),
        notifier=AsyncMock(),
        max_concurrent=2,
    )

    checks = [asyncio.create_task(scheduler.check_now(service.id)) for service in services]
    for _ in range(200):
        if probe.calls >= 2:
            break
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.1)

    # Only two checks may be probing; the rest wait for a slot
    assert probe.calls == 2
    assert probe.active == 2
    assert scheduler.status()["in_flight"] == 5

    probe.release.set()
    outcomes = await asyncio.gather(*checks)

    assert probe.calls == 5
    assert probe.peak == 2
    assert [outcome.service.id for outcome in outcomes] == list(by_id)


async def test_failing_service_does_not_affect_others(session_factory, make_service):
    broken = await make_service(name="Broken")
    healthy = await make_service(name="Healthy")

    recorder = HistoryRecorder(session_factory)
    real_record = recorder.record

    async def record(service_id, *args):
        if service_id == broken.id:
            raise PersistenceError("Database unavailable after 3 attempts")
        return await real_record(service_id, *args)

    recorder.record = record
    scheduler = scheduler_with(session_factory, probe_returning(online(), online()), recorder=recorder)

    assert await scheduler.check_now(broken.id) is None
    outcome = await scheduler.check_now(healthy.id)

    assert outcome.service.status == "online"
    assert await count(session_factory, ServiceLog) == 1


async def test_notification_failure_keeps_history(session_factory, make_service):
    service = await make_service()
    notifier = AsyncMock()
    notifier.process_check.side_effect = PersistenceError("locked")
    scheduler = scheduler_with(session_factory, probe_returning(offline()), notifier)

    outcome = await scheduler.run_check(service.id)

    assert outcome.evaluation.new_status == "offline"
    assert await count(session_factory, ServiceLog) == 1


class TestLifecycle:
    async def test_start_schedules_active_services(self, session_factory, make_service):
        active = await make_service(name="Active", check_interval=30)
        paused = await make_service(name="Paused", is_active=False)
        trashed = await make_service(name="Trashed", is_deleted=True)
        scheduler = scheduler_with(session_factory, probe_returning())

        await scheduler.start()
        try:
            assert scheduler.is_scheduled(active.id)
            assert not scheduler.is_scheduled(paused.id)
            assert not scheduler.is_scheduled(trashed.id)
            assert scheduler.scheduler.get_job(f"service-{active.id}") is not None
        finally:
            await scheduler.stop()
        assert not scheduler.running

    async def test_sync_picks_up_changes(self, session_factory, make_service):
        first = await make_service(name="First")
        scheduler = scheduler_with(session_factory, probe_returning())
        await scheduler.start()
        try:
            second = await make_service(name="Second", check_interval=120)
            async with session_factory() as session:
                stored = await session.get(Service, first.id)
                stored.is_active = False
                await session.commit()

            await scheduler.sync()

            assert not scheduler.is_scheduled(first.id)
            assert scheduler.status()["scheduled_services"] == [second.id]
        finally:
            await scheduler.stop()

    async def test_start_fails_when_storage_unreachable(self, tmp_path):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/missing/dir/db.sqlite")
        factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        scheduler = scheduler_with(factory, probe_returning())

        with pytest.raises(EngineStartupError):
            await scheduler.start()
        await engine.dispose()

    async def test_stop_cancels_checks_after_grace(self, session_factory, make_service):
        service = await make_service()
        probe = BlockingProbe()
        scheduler = scheduler_with(session_factory, probe)
        await scheduler.start()

        await scheduler._tick(service.id)
        await asyncio.sleep(0.05)
        await scheduler.stop(grace_seconds=0.05)

        assert probe.calls == 1
        assert scheduler.status()["in_flight"] == 0
        assert await count(session_factory, ServiceLog) == 0


def test_offsets_are_deterministic_and_bounded():
    scheduler = SchedulerService(session_factory=object(), probe=AsyncMock(), recorder=AsyncMock(), notifier=AsyncMock())

    offsets = [scheduler._calculate_service_offset(service_id, 60) for service_id in range(1, 50)]

    assert offsets == [scheduler._calculate_service_offset(service_id, 60) for service_id in range(1, 50)]
    assert all(0 <= offset < 30 for offset in offsets)
    assert len(set(offsets)) > 10
