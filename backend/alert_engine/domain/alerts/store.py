from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Protocol

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alert_engine.domain.alerts.db_models import AlertHistory, AlertRecord
from alert_engine.domain.alerts.schemas import ESCALATABLE_STATUSES, Alert, AlertStatus

logger = logging.getLogger(__name__)


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


class AlertStore(Protocol):
    async def get_alert(self, alert_id: str) -> Alert | None:
        ...

    async def save_alert(self, alert: Alert) -> Alert:
        ...

    async def update_escalation(
        self,
        alert_id: str,
        *,
        escalation_level: int = UNSET,
        next_escalation_at: datetime | None = UNSET,
        last_escalated_at: datetime | None = UNSET,
    ) -> None:
        ...

    async def set_status(self, alert_id: str, status: AlertStatus) -> Alert | None:
        ...

    async def list_due_escalations(self, now: datetime, *, limit: int = 500) -> list[Alert]:
        ...

    async def add_history(
        self, alert_id: str, action: str, details: dict[str, Any], *, actor: str = "alert_engine"
    ) -> None:
        ...


def _to_alert(record: AlertRecord) -> Alert:
    return Alert.model_validate(record)


class SqlAlertStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_alert(self, alert_id: str) -> Alert | None:
        async with self._session_factory() as session:
            record = await session.get(AlertRecord, alert_id)
            return _to_alert(record) if record else None

    async def save_alert(self, alert: Alert) -> Alert:
        values = alert.model_dump(mode="python")
        values["severity"] = alert.severity.value
        values["status"] = alert.status.value
        async with self._session_factory() as session:
            record = await session.get(AlertRecord, alert.id)
            if record is None:
                record = AlertRecord(**values)
                session.add(record)
            else:
                for key, value in values.items():
                    setattr(record, key, value)
            await session.commit()
            await session.refresh(record)
            return _to_alert(record)

    async def update_escalation(
        self,
        alert_id: str,
        *,
        escalation_level: int = UNSET,
        next_escalation_at: datetime | None = UNSET,
        last_escalated_at: datetime | None = UNSET,
    ) -> None:
        values: dict[str, Any] = {}
        if escalation_level is not UNSET:
            values["escalation_level"] = escalation_level
        if next_escalation_at is not UNSET:
            values["next_escalation_at"] = next_escalation_at
        if last_escalated_at is not UNSET:
            values["last_escalated_at"] = last_escalated_at
        if not values:
            return
        async with self._session_factory() as session:
            await session.execute(sa.update(AlertRecord).where(AlertRecord.id == alert_id).values(**values))
            await session.commit()

    async def set_status(self, alert_id: str, status: AlertStatus) -> Alert | None:
        async with self._session_factory() as session:
            record = await session.get(AlertRecord, alert_id)
            if record is None:
                return None
            record.status = status.value
            await session.commit()
            await session.refresh(record)
            return _to_alert(record)

    async def list_due_escalations(self, now: datetime, *, limit: int = 500) -> list[Alert]:
        stmt = (
            sa.select(AlertRecord)
            .where(
                AlertRecord.status.in_([status.value for status in ESCALATABLE_STATUSES]),
                AlertRecord.next_escalation_at.is_not(None),
                AlertRecord.next_escalation_at <= now,
            )
            .order_by(AlertRecord.next_escalation_at)
            .limit(limit)
        )
        async with self._session_factory() as session:
            records = (await session.scalars(stmt)).all()
            return [_to_alert(record) for record in records]

    async def add_history(
        self, alert_id: str, action: str, details: dict[str, Any], *, actor: str = "alert_engine"
    ) -> None:
        async with self._session_factory() as session:
            session.add(AlertHistory(alert_id=alert_id, action=action, actor=actor, details=details))
            await session.commit()

    async def list_history(self, alert_id: str) -> list[AlertHistory]:
        stmt = (
            sa.select(AlertHistory)
            .where(AlertHistory.alert_id == alert_id)
            .order_by(AlertHistory.created_at, AlertHistory.id)
        )
        async with self._session_factory() as session:
            return list((await session.scalars(stmt)).all())
