from __future__ import annotations

from typing import Iterable, Protocol

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alert_engine.domain.alerts.schemas import AlertSeverity
from alert_engine.domain.channels.db_models import NotificationChannelRecord
from alert_engine.domain.channels.schemas import ChannelType, NotificationChannel


class ChannelRegistry(Protocol):
    async def list_enabled(
        self,
        *,
        severity: AlertSeverity | None = None,
        channel_ids: Iterable[str] | None = None,
        channel_types: Iterable[ChannelType] | None = None,
    ) -> list[NotificationChannel]:
        ...

    async def get_channel(self, channel_id: str) -> NotificationChannel | None:
        ...


class SqlChannelRegistry:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def list_enabled(
        self,
        *,
        severity: AlertSeverity | None = None,
        channel_ids: Iterable[str] | None = None,
        channel_types: Iterable[ChannelType] | None = None,
    ) -> list[NotificationChannel]:
        stmt = sa.select(NotificationChannelRecord).where(NotificationChannelRecord.enabled.is_(True))
        if channel_ids is not None:
            ids = list(channel_ids)
            if not ids:
                return []
            stmt = stmt.where(NotificationChannelRecord.id.in_(ids))
        if channel_types is not None:
            types = [channel_type.value for channel_type in channel_types]
            if not types:
                return []
            stmt = stmt.where(NotificationChannelRecord.channel_type.in_(types))
        stmt = stmt.order_by(NotificationChannelRecord.created_at, NotificationChannelRecord.id)
        async with self._session_factory() as session:
            records = (await session.scalars(stmt)).all()
        channels = [NotificationChannel.model_validate(record) for record in records]
        if severity is not None:
            channels = [channel for channel in channels if channel.accepts(severity)]
        return channels

    async def get_channel(self, channel_id: str) -> NotificationChannel | None:
        async with self._session_factory() as session:
            record = await session.get(NotificationChannelRecord, channel_id)
            return NotificationChannel.model_validate(record) if record else None

    async def save_channel(self, channel: NotificationChannel) -> NotificationChannel:
        values = channel.model_dump(mode="json")
        async with self._session_factory() as session:
            record = await session.get(NotificationChannelRecord, channel.id)
            if record is None:
                record = NotificationChannelRecord(**values)
                session.add(record)
            else:
                for key, value in values.items():
                    setattr(record, key, value)
            await session.commit()
        return channel
