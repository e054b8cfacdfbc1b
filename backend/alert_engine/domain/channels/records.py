from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alert_engine.domain.alerts.schemas import as_utc
from alert_engine.domain.channels.db_models import AlertNotification, InAppNotification
from alert_engine.domain.channels.schemas import ChannelType, DeliveryStatus


@dataclass(frozen=True)
class DeliveryRecord:
    id: str
    alert_id: str
    channel_id: str
    channel_type: ChannelType
    status: DeliveryStatus
    attempt_number: int
    max_attempts: int
    subject: str | None
    message: str | None
    recipients: list[str]
    external_message_id: str | None
    error_message: str | None
    created_at: datetime


class DeliveryRecordStore(Protocol):
    async def create(
        self,
        *,
        alert_id: str,
        channel_id: str,
        channel_type: ChannelType,
        subject: str | None,
        message: str | None,
        recipients: list[str],
        max_attempts: int,
        created_at: datetime,
    ) -> str:
        ...

    async def mark_result(
        self,
        delivery_id: str,
        *,
        success: bool,
        at: datetime,
        external_message_id: str | None = None,
        error: str | None = None,
        delivery_time_ms: int | None = None,
    ) -> None:
        ...

    async def mark_retrying(self, delivery_id: str, *, attempt_number: int, at: datetime) -> None:
        ...

    async def get(self, delivery_id: str) -> DeliveryRecord | None:
        ...

    async def count_since(self, channel_id: str, since: datetime) -> int:
        ...

    async def statistics(self, channel_id: str, since: datetime) -> dict[str, Any]:
        ...


def _to_record(row: AlertNotification) -> DeliveryRecord:
    return DeliveryRecord(
        id=row.id,
        alert_id=row.alert_id,
        channel_id=row.channel_id,
        channel_type=ChannelType(row.channel_type),
        status=DeliveryStatus(row.status),
        attempt_number=row.attempt_number,
        max_attempts=row.max_attempts,
        subject=row.subject,
        message=row.message,
        recipients=list(row.recipients or []),
        external_message_id=row.external_message_id,
        error_message=row.error_message,
        created_at=as_utc(row.created_at),
    )


class SqlDeliveryRecordStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(
        self,
        *,
        alert_id: str,
        channel_id: str,
        channel_type: ChannelType,
        subject: str | None,
        message: str | None,
        recipients: list[str],
        max_attempts: int,
        created_at: datetime,
    ) -> str:
        async with self._session_factory() as session:
            row = AlertNotification(
                alert_id=alert_id,
                channel_id=channel_id,
                channel_type=channel_type.value,
                status=DeliveryStatus.PENDING.value,
                attempt_number=1,
                max_attempts=max_attempts,
                subject=subject[:255] if subject else subject,
                message=message,
                recipients=recipients,
                created_at=created_at,
                updated_at=created_at,
            )
            session.add(row)
            await session.commit()
            return row.id

    async def mark_result(
        self,
        delivery_id: str,
        *,
        success: bool,
        at: datetime,
        external_message_id: str | None = None,
        error: str | None = None,
        delivery_time_ms: int | None = None,
    ) -> None:
        values: dict[str, Any] = {
            "status": (DeliveryStatus.SENT if success else DeliveryStatus.FAILED).value,
            "delivery_time_ms": delivery_time_ms,
            "updated_at": at,
        }
        if success:
            values.update(sent_at=at, external_message_id=external_message_id, error_message=None)
        else:
            values.update(failed_at=at, error_message=error)
        async with self._session_factory() as session:
            await session.execute(
                sa.update(AlertNotification).where(AlertNotification.id == delivery_id).values(**values)
            )
            await session.commit()

    async def mark_retrying(self, delivery_id: str, *, attempt_number: int, at: datetime) -> None:
        async with self._session_factory() as session:
            await session.execute(
                sa.update(AlertNotification)
                .where(AlertNotification.id == delivery_id)
                .values(status=DeliveryStatus.RETRYING.value, attempt_number=attempt_number, updated_at=at)
            )
            await session.commit()

    async def get(self, delivery_id: str) -> DeliveryRecord | None:
        async with self._session_factory() as session:
            row = await session.get(AlertNotification, delivery_id)
            return _to_record(row) if row else None

    async def count_since(self, channel_id: str, since: datetime) -> int:
        stmt = sa.select(sa.func.count(AlertNotification.id)).where(
            AlertNotification.channel_id == channel_id,
            AlertNotification.created_at >= since,
        )
        async with self._session_factory() as session:
            return int(await session.scalar(stmt) or 0)

    async def statistics(self, channel_id: str, since: datetime) -> dict[str, Any]:
        stmt = (
            sa.select(
                AlertNotification.status,
                sa.func.count(AlertNotification.id),
                sa.func.avg(AlertNotification.delivery_time_ms),
            )
            .where(AlertNotification.channel_id == channel_id, AlertNotification.created_at >= since)
            .group_by(AlertNotification.status)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()
        counts = {status.value: 0 for status in DeliveryStatus}
        latency_total = 0.0
        latency_samples = 0
        for status, count, avg_ms in rows:
            counts[status] = int(count)
            if avg_ms is not None and status == DeliveryStatus.SENT.value:
                latency_total += float(avg_ms) * int(count)
                latency_samples += int(count)
        total = sum(counts.values())
        return {
            "channel_id": channel_id,
            "total": total,
            "sent": counts[DeliveryStatus.SENT.value],
            "failed": counts[DeliveryStatus.FAILED.value],
            "pending": counts[DeliveryStatus.PENDING.value] + counts[DeliveryStatus.RETRYING.value],
            "success_rate": round(counts[DeliveryStatus.SENT.value] / total, 4) if total else 0.0,
            "avg_delivery_time_ms": round(latency_total / latency_samples, 1) if latency_samples else None,
        }


class InAppNotificationStore(Protocol):
    async def create(
        self,
        *,
        recipient_id: str,
        alert_id: str,
        team_id: str | None,
        type: str,
        priority: str,
        title: str,
        body: str,
        action_href: str | None,
        details: dict[str, Any],
    ) -> str:
        ...


class SqlInAppNotificationStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(
        self,
        *,
        recipient_id: str,
        alert_id: str,
        team_id: str | None,
        type: str,
        priority: str,
        title: str,
        body: str,
        action_href: str | None,
        details: dict[str, Any],
    ) -> str:
        async with self._session_factory() as session:
            row = InAppNotification(
                recipient_id=recipient_id,
                alert_id=alert_id,
                team_id=team_id,
                type=type,
                priority=priority,
                title=title[:255],
                body=body,
                action_href=action_href,
                details=details,
            )
            session.add(row)
            await session.commit()
            return row.id

    async def list_for_alert(self, alert_id: str) -> list[InAppNotification]:
        stmt = sa.select(InAppNotification).where(InAppNotification.alert_id == alert_id)
        async with self._session_factory() as session:
            return list((await session.scalars(stmt)).all())
