from __future__ import annotations

import logging
import math
import time
from typing import Callable

from alert_engine.domain.alerts.schemas import AlertSeverity
from alert_engine.domain.channels.schemas import ChannelType
from alert_engine.domain.severity.policy import SeverityConfig, SeverityPolicyTable
from alert_engine.domain.teams.directory import TeamDirectory
from alert_engine.domain.teams.schemas import (
    BusinessHours,
    EscalationStep,
    TeamAssignment,
    TeamSnapshot,
)
from alert_engine.shared.locks import KeyedLock

logger = logging.getLogger(__name__)

IMMEDIATE_CHANNEL_TYPES: tuple[ChannelType, ...] = (ChannelType.PUSH, ChannelType.SMS, ChannelType.IN_APP)


def default_channel_types(severity: AlertSeverity, level: int) -> tuple[ChannelType, ...]:
    if severity == AlertSeverity.CRITICAL:
        if level == 1:
            return (ChannelType.PUSH, ChannelType.SMS, ChannelType.IN_APP)
        return (ChannelType.EMAIL, ChannelType.SLACK, ChannelType.WEBHOOK)
    if severity == AlertSeverity.HIGH:
        if level == 1:
            return (ChannelType.PUSH, ChannelType.IN_APP)
        return (ChannelType.EMAIL, ChannelType.SLACK)
    if severity == AlertSeverity.MEDIUM:
        return (ChannelType.EMAIL, ChannelType.IN_APP)
    return (ChannelType.IN_APP,)


def build_default_chain(config: SeverityConfig) -> tuple[EscalationStep, ...]:
    return tuple(
        EscalationStep(
            level=level,
            contacts=(),
            delay_minutes=config.default_escalation_delay * level,
            channel_types=default_channel_types(config.severity, level),
        )
        for level in range(1, config.max_escalation_level + 1)
    )


def contacts_for_level(assignment: TeamAssignment | None, level: int, max_level: int) -> list[str]:
    if assignment is None or level < 1:
        return []
    step = assignment.step_for_level(level)
    if step is not None and step.contacts:
        return list(step.contacts)
    pool = assignment.escalation_contacts
    if not pool:
        return []
    per_level = math.ceil(len(pool) / max(max_level, 1))
    start = (level - 1) * per_level
    return list(pool[start : start + per_level])


def channel_types_for_level(
    assignment: TeamAssignment | None, severity: AlertSeverity, level: int
) -> tuple[ChannelType, ...]:
    if assignment is not None:
        step = assignment.step_for_level(level)
        if step is not None and step.channel_types:
            return step.channel_types
    return default_channel_types(severity, level)


def immediate_contacts(assignment: TeamAssignment | None, severity: AlertSeverity) -> list[str]:
    if assignment is None:
        return []
    if severity == AlertSeverity.CRITICAL:
        return list(assignment.primary_contacts)
    if severity == AlertSeverity.HIGH:
        return list(assignment.primary_contacts[:2])
    return []


class TeamAssignmentResolver:
    """Resolves and caches team contacts, business hours and escalation chains.

    The cache holds team-level data only; the default chain is derived per
    severity on every call so alerts of different severities for the same
    team never share a chain. Entries live until `invalidate` is called or,
    when `cache_ttl_seconds` is set, until they expire.
    """

    def __init__(
        self,
        directory: TeamDirectory,
        policy: SeverityPolicyTable,
        *,
        default_business_hours: BusinessHours,
        cache_ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._directory = directory
        self._policy = policy
        self._default_business_hours = default_business_hours
        self._cache_ttl_seconds = cache_ttl_seconds
        self._clock = clock
        self._cache: dict[str, tuple[float, TeamSnapshot]] = {}
        self._locks = KeyedLock()

    async def resolve(self, team_id: str | None, severity: AlertSeverity | None = None) -> TeamAssignment | None:
        if not team_id:
            return None
        snapshot = await self._snapshot(team_id)
        if snapshot is None:
            return None
        chain = snapshot.escalation_chain
        if not chain and severity is not None:
            chain = build_default_chain(self._policy.get(severity))
        return TeamAssignment(
            team_id=snapshot.team_id,
            team_name=snapshot.team_name,
            primary_contacts=snapshot.primary_contacts,
            escalation_contacts=snapshot.escalation_contacts,
            business_hours=snapshot.business_hours,
            escalation_chain=chain,
            members=snapshot.members,
        )

    def invalidate(self, team_id: str | None = None) -> None:
        if team_id is None:
            self._cache.clear()
        else:
            self._cache.pop(team_id, None)
        logger.info("team_assignment_cache_invalidated", extra={"extra": {"team_id": team_id or "*"}})

    def cached_team_ids(self) -> list[str]:
        return sorted(self._cache)

    def _cached(self, team_id: str) -> TeamSnapshot | None:
        entry = self._cache.get(team_id)
        if entry is None:
            return None
        stored_at, snapshot = entry
        if self._cache_ttl_seconds is not None and self._clock() - stored_at >= self._cache_ttl_seconds:
            self._cache.pop(team_id, None)
            return None
        return snapshot

    async def _snapshot(self, team_id: str) -> TeamSnapshot | None:
        snapshot = self._cached(team_id)
        if snapshot is not None:
            return snapshot
        async with self._locks.hold(team_id):
            snapshot = self._cached(team_id)
            if snapshot is not None:
                return snapshot
            try:
                snapshot = await self._load(team_id)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "team_assignment_load_failed",
                    extra={"extra": {"team_id": team_id, "reason": type(exc).__name__}},
                )
                return None
            if snapshot is not None:
                self._cache[team_id] = (self._clock(), snapshot)
            return snapshot

    async def _load(self, team_id: str) -> TeamSnapshot | None:
        team = await self._directory.fetch_team(team_id)
        if team is None:
            logger.warning("team_not_found", extra={"extra": {"team_id": team_id}})
            return None
        override = await self._directory.fetch_escalation_override(team_id)
        primary = tuple(member.user_id for member in team.members if member.is_primary)
        escalation = tuple(member.user_id for member in team.members)
        business_hours = self._default_business_hours
        chain: tuple[EscalationStep, ...] = ()
        if override is not None:
            if override.primary_contacts:
                primary = tuple(override.primary_contacts)
            if override.escalation_contacts:
                escalation = tuple(override.escalation_contacts)
            if override.business_hours is not None:
                business_hours = override.business_hours.to_business_hours()
            chain = tuple(sorted((step.to_step() for step in override.escalation_chain), key=lambda s: s.level))
        return TeamSnapshot(
            team_id=team.team_id,
            team_name=team.name,
            members=team.members,
            business_hours=business_hours,
            escalation_chain=chain,
            primary_contacts=primary,
            escalation_contacts=escalation,
        )
