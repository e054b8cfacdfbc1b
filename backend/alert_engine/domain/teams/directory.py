from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alert_engine.domain.teams.db_models import Team, TeamEscalationConfig, TeamMemberRecord
from alert_engine.domain.teams.schemas import TeamEscalationOverride, TeamMember

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TeamRecord:
    team_id: str
    name: str | None
    members: tuple[TeamMember, ...]


class TeamDirectory(Protocol):
    async def fetch_team(self, team_id: str) -> TeamRecord | None:
        ...

    async def fetch_escalation_override(self, team_id: str) -> TeamEscalationOverride | None:
        ...

    async def list_members(self, team_id: str) -> list[TeamMember]:
        ...


def _to_member(record: TeamMemberRecord) -> TeamMember:
    return TeamMember(
        user_id=record.user_id,
        role=record.role,
        email=record.email,
        phone=record.phone,
        full_name=record.full_name,
    )


class SqlTeamDirectory:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def fetch_team(self, team_id: str) -> TeamRecord | None:
        async with self._session_factory() as session:
            team = await session.get(Team, team_id)
            if team is None:
                return None
            members = tuple(_to_member(member) for member in team.members if member.is_active)
            return TeamRecord(team_id=team.id, name=team.name, members=members)

    async def fetch_escalation_override(self, team_id: str) -> TeamEscalationOverride | None:
        async with self._session_factory() as session:
            config = await session.get(TeamEscalationConfig, team_id)
            if config is None or not config.enabled:
                return None
            return TeamEscalationOverride.from_row(
                {
                    "business_hours": config.business_hours,
                    "escalation_chain": config.escalation_chain,
                    "primary_contacts": config.primary_contacts,
                    "escalation_contacts": config.escalation_contacts,
                }
            )

    async def list_members(self, team_id: str) -> list[TeamMember]:
        stmt = (
            sa.select(TeamMemberRecord)
            .where(TeamMemberRecord.team_id == team_id, TeamMemberRecord.is_active.is_(True))
            .order_by(TeamMemberRecord.user_id)
        )
        async with self._session_factory() as session:
            records = (await session.scalars(stmt)).all()
            return [_to_member(record) for record in records]
