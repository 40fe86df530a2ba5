"""Tests for the HTTP API."""
import json
from datetime import timedelta
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy import func, select

import pulseguard.routers.notifications as notifications_api
import pulseguard.routers.services as services_api
from pulseguard.channels import build_adapters
from pulseguard.database import get_db
from pulseguard.main import app
from pulseguard.models import PerformanceMetric, ServiceLog
from pulseguard.services.lifecycle import ServiceLifecycle
from pulseguard.services.notifier import NotificationEngine
from pulseguard.services.probe import ProbeOutcome, ProbeResult
from pulseguard.services.recorder import HistoryRecorder
from pulseguard.services.scheduler import SchedulerService
from pulseguard.utils.db_utils import utcnow


@pytest.fixture
def probe():
    probe = AsyncMock()
    probe.probe.return_value = ProbeResult(
        outcome=ProbeOutcome.ONLINE, response_time_ms=85, detail="HTTP 200 - OK"
    )
    return probe


@pytest.fixture
def hook_requests():
    return []


@pytest.fixture
def scheduler(session_factory, probe, hook_requests):
    def handler(request):
        hook_requests.append(json.loads(request.content))
        return httpx.Response(200)

    notifier = NotificationEngine(session_factory, adapters=build_adapters(httpx.MockTransport(handler)))
    return SchedulerService(
        session_factory=session_factory,
        probe=probe,
        recorder=HistoryRecorder(session_factory),
        notifier=notifier,
    )


@pytest.fixture
async def client(session_factory, scheduler, monkeypatch):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    monkeypatch.setattr(services_api, "scheduler_service", scheduler)
    monkeypatch.setattr(services_api, "service_lifecycle", ServiceLifecycle(session_factory, scheduler))
    monkeypatch.setattr(notifications_api, "notification_engine", scheduler._notifier)
    app.dependency_overrides[get_db] = override_get_db

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


async def test_overview_counts_by_status(client, make_service):
    await make_service(name="API", status="online", uptime=100.0)
    await make_service(name="Web", status="offline", uptime=90.0)
    await make_service(name="Old", status="online", is_deleted=True)

    data = (await client.get("/api/status/overview")).json()

    assert data["total_services"] == 2
    assert data["services_online"] == 1
    assert data["services_offline"] == 1
    assert data["overall_uptime"] == 95.0
    assert [s["name"] for s in data["services"]] == ["API", "Web"]


async def test_manual_check_then_detail_and_metrics(client, make_service):
    service = await make_service()

    response = await client.post(f"/api/services/{service.id}/check")
    assert response.status_code == 200
    assert response.json()["status"] == "online"
    assert response.json()["response_time"] == 85

    detail = (await client.get(f"/api/status/services/{service.id}")).json()
    assert detail["status"] == "online"
    assert detail["recent_logs"][0]["message"] == "HTTP 200 - OK"

    metrics = (await client.get(f"/api/status/services/{service.id}/metrics", params={"hours": 1})).json()
    assert len(metrics) == 1
    assert metrics[0]["response_time"] == 85


async def test_manual_check_unknown_service(client):
    response = await client.post("/api/services/9999/check")

    assert response.status_code == 404


async def test_maintenance_status(client, make_service, make_window):
    service = await make_service()
    now = utcnow()
    await make_window(now - timedelta(minutes=5), now + timedelta(minutes=55), service_id=service.id)

    data = (await client.get(f"/api/status/services/{service.id}/maintenance")).json()

    assert data["in_maintenance"] is True
    assert data["windows"][0]["title"] == "Planned upgrade"


async def test_soft_delete_and_restore(client, make_service):
    service = await make_service()

    response = await client.delete(f"/api/services/{service.id}")
    assert response.status_code == 200
    assert response.json()["is_deleted"] is True
    assert response.json()["is_active"] is False
    assert (await client.get(f"/api/status/services/{service.id}")).status_code == 404
    assert (await client.post(f"/api/services/{service.id}/check")).status_code == 404

    response = await client.post(f"/api/services/{service.id}/restore")
    assert response.status_code == 200
    assert response.json()["is_deleted"] is False
    assert (await client.get(f"/api/status/services/{service.id}")).status_code == 200


async def test_soft_delete_keeps_history(client, make_service, session_factory):
    service = await make_service()
    await client.post(f"/api/services/{service.id}/check")

    await client.delete(f"/api/services/{service.id}")

    async with session_factory() as session:
        logs = (await session.execute(select(func.count()).select_from(ServiceLog))).scalar()
    assert logs == 1


async def test_purge_removes_history(client, make_service, session_factory):
    service = await make_service()
    await client.post(f"/api/services/{service.id}/check")

    response = await client.delete(f"/api/services/{service.id}/permanent")
    assert response.status_code == 204

    async with session_factory() as session:
        logs = (await session.execute(select(func.count()).select_from(ServiceLog))).scalar()
        metrics = (await session.execute(select(func.count()).select_from(PerformanceMetric))).scalar()
    assert logs == 0
    assert metrics == 0
    assert (await client.delete(f"/api/services/{service.id}/permanent")).status_code == 404


async def test_channel_test_and_history(client, make_channel, hook_requests):
    channel = await make_channel()

    response = await client.post(f"/api/channels/{channel.id}/test")
    assert response.status_code == 200
    assert response.json()["event"] == "test"
    assert response.json()["status"] == "sent"
    assert hook_requests[0]["title"] == "Test Notification"

    history = (await client.get("/api/notifications/history", params={"channel_id": channel.id})).json()
    assert [h["event"] for h in history] == ["test"]


async def test_channel_test_unknown_channel(client):
    assert (await client.post("/api/channels/404/test")).status_code == 404
