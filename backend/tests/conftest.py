"""Shared fixtures: an in-memory database and row factories."""
import json
from datetime import datetime

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from pulseguard import models  # noqa: F401
from pulseguard.database import Base
from pulseguard.models import (
    MaintenanceWindow,
    NotificationChannel,
    NotificationRule,
    Service,
)


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def _add(session_factory, row):
    async with session_factory() as session:
        session.add(row)
        await session.commit()
    return row


@pytest.fixture
def make_service(session_factory):
    async def factory(**fields) -> Service:
        values = {
            "name": "API",
            "type": "HTTP",
            "url": "http://api.example.test/health",
            "check_interval": 60,
            "status": "unknown",
            "uptime": 100.0,
            "total_monitored_time": 0.0,
            "online_time": 0.0,
            "is_active": True,
            "is_deleted": False,
        }
        values.update(fields)
        return await _add(session_factory, Service(**values))

    return factory


@pytest.fixture
def make_channel(session_factory):
    async def factory(**fields) -> NotificationChannel:
        values = {
            "name": "Ops webhook",
            "type": "webhook",
            "config": json.dumps({"url": "http://hooks.example.test/notify"}),
            "is_enabled": True,
        }
        values.update(fields)
        if isinstance(values["config"], dict):
            values["config"] = json.dumps(values["config"])
        return await _add(session_factory, NotificationChannel(**values))

    return factory


@pytest.fixture
def make_rule(session_factory):
    async def factory(channel_id: int, events=("down", "up"), **fields) -> NotificationRule:
        values = {
            "channel_id": channel_id,
            "events": json.dumps(list(events)),
            "threshold": 1,
            "cooldown": 300,
            "is_enabled": True,
        }
        values.update(fields)
        return await _add(session_factory, NotificationRule(**values))

    return factory


@pytest.fixture
def make_window(session_factory):
    async def factory(start: datetime, end: datetime, **fields) -> MaintenanceWindow:
        values = {
            "title": "Planned upgrade",
            "start_time": start,
            "end_time": end,
            "is_recurring": False,
            "is_active": True,
        }
        values.update(fields)
        if isinstance(values.get("recurring_pattern"), dict):
            values["recurring_pattern"] = json.dumps(values["recurring_pattern"])
        return await _add(session_factory, MaintenanceWindow(**values))

    return factory
