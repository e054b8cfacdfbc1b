import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from alert_engine.domain.alerts.schemas import Alert, AlertSeverity
from alert_engine.domain.channels.schemas import ChannelType, NotificationChannel
from alert_engine.domain.channels.senders import DeliveryAdapters, SendOutcome, SendRequest
from alert_engine.domain.errors import ChannelDeliveryError
from alert_engine.domain.escalation.scheduler import TimerHandle
from alert_engine.domain.teams.db_models import Team, TeamEscalationConfig, TeamMemberRecord
from alert_engine.infra.db import Base
from alert_engine.services import build_engine_services
from alert_engine.settings import settings

# Wednesday, inside default business hours.
WEDNESDAY_10AM = datetime(2026, 1, 14, 10, 0, tzinfo=timezone.utc)
SATURDAY_10AM = datetime(2026, 1, 17, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = WEDNESDAY_10AM) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class ManualScheduler:
    """Collects timers instead of sleeping; tests fire them explicitly."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.clock = clock
        self.handles: list[TimerHandle] = []

    def schedule(self, key, delay_seconds, callback) -> TimerHandle:
        handle = TimerHandle(key, max(delay_seconds, 0.0), callback)
        self.handles.append(handle)
        return handle

    def pending(self, key: str | None = None) -> list[TimerHandle]:
        return [handle for handle in self.handles if handle.pending and (key is None or handle.key == key)]

    async def fire_next(self, key: str | None = None) -> TimerHandle | None:
        pending = self.pending(key)
        if not pending:
            return None
        handle = pending[0]
        if self.clock is not None:
            self.clock.advance(seconds=handle.delay_seconds)
        await handle.fire()
        return handle

    async def drain(self, key: str | None = None, limit: int = 50) -> int:
        fired = 0
        while fired < limit and await self.fire_next(key) is not None:
            fired += 1
        return fired

    async def shutdown(self) -> None:
        for handle in self.handles:
            handle.cancel()


class RecordingSender:
    def __init__(self, channel_type: ChannelType, *, fail: bool = False) -> None:
        self.channel_type = channel_type
        self.fail = fail
        self.requests: list[SendRequest] = []

    async def send(self, request: SendRequest) -> SendOutcome:
        self.requests.append(request)
        if self.fail:
            raise ChannelDeliveryError(f"{self.channel_type.value} unavailable")
        return SendOutcome(external_message_id=f"{self.channel_type.value}-{len(self.requests)}")


def make_alert(**overrides) -> Alert:
    values = {
        "id": "alert-1",
        "severity": AlertSeverity.CRITICAL,
        "title": "Disk usage high",
        "description": "Disk usage above threshold on db-1",
        "metric_name": "disk_usage",
        "metric_value": 97.0,
        "threshold_value": 90.0,
        "threshold_operator": ">",
        "created_at": WEDNESDAY_10AM,
    }
    values.update(overrides)
    return Alert(**values)


def make_channel(channel_type: ChannelType, **overrides) -> NotificationChannel:
    configurations = {
        ChannelType.EMAIL: {"recipients": ["oncall@example.com"]},
        ChannelType.SMS: {"phone_numbers": ["+15550001111"]},
        ChannelType.PUSH: {"user_ids": ["user-1"]},
        ChannelType.IN_APP: {"user_ids": ["user-1"]},
        ChannelType.WEBHOOK: {"url": "https://hooks.example.com/alerts"},
        ChannelType.SLACK: {"webhook_url": "https://slack.example.com/hook"},
    }
    values = {
        "id": f"{channel_type.value}-channel",
        "name": f"{channel_type.value} channel",
        "channel_type": channel_type,
        "configuration": configurations[channel_type],
    }
    values.update(overrides)
    return NotificationChannel(**values)


async def seed_team(
    session_factory,
    team_id: str = "team-1",
    *,
    members: list[tuple[str, str]] = (("owner-1", "owner"), ("member-1", "member"), ("member-2", "member")),
    override: dict | None = None,
) -> None:
    async with session_factory() as session:
        session.add(Team(id=team_id, name=f"Team {team_id}"))
        for user_id, role in members:
            session.add(TeamMemberRecord(team_id=team_id, user_id=user_id, role=role))
        if override is not None:
            session.add(TeamEscalationConfig(team_id=team_id, **override))
        await session.commit()


@pytest.fixture(scope="session")
def test_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(truncate_tables())
    yield


@pytest.fixture(autouse=True)
def restore_settings():
    original_app_env = settings.app_env
    original_metrics_enabled = settings.metrics_enabled
    original_metrics_token = settings.metrics_token
    yield
    settings.app_env = original_app_env
    settings.metrics_enabled = original_metrics_enabled
    settings.metrics_token = original_metrics_token


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def scheduler(clock):
    return ManualScheduler(clock)


@pytest.fixture()
def senders():
    return {channel_type: RecordingSender(channel_type) for channel_type in ChannelType}


@pytest.fixture()
def services(async_session_maker, clock, scheduler, senders):
    return build_engine_services(
        settings,
        session_factory=async_session_maker,
        adapters=DeliveryAdapters(extra_senders=senders),
        scheduler=scheduler,
        clock=clock,
    )
