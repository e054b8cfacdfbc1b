import anyio

from alert_engine.domain.alerts.schemas import AlertSeverity
from alert_engine.domain.channels.schemas import ChannelType
from alert_engine.domain.severity.policy import SeverityPolicyTable
from alert_engine.domain.teams.assignments import (
    TeamAssignmentResolver,
    contacts_for_level,
    default_channel_types,
    immediate_contacts,
)
from alert_engine.domain.teams.directory import SqlTeamDirectory, TeamRecord
from alert_engine.domain.teams.schemas import (
    BusinessHours,
    EscalationStep,
    TeamAssignment,
    TeamMember,
)
from tests.conftest import seed_team

DEFAULT_HOURS = BusinessHours()


class CountingDirectory:
    def __init__(self) -> None:
        self.fetches = 0
        self.members = (TeamMember("lead", "owner"), TeamMember("dev", "member"))

    async def fetch_team(self, team_id):
        self.fetches += 1
        return TeamRecord(team_id=team_id, name="Platform", members=self.members)

    async def fetch_escalation_override(self, team_id):
        return None

    async def list_members(self, team_id):
        return list(self.members)


class BrokenDirectory(CountingDirectory):
    async def fetch_team(self, team_id):
        raise RuntimeError("directory offline")


class FakeMonotonic:
    def __init__(self) -> None:
        self.value = 100.0

    def __call__(self) -> float:
        return self.value


def _assignment(pool, steps=()) -> TeamAssignment:
    return TeamAssignment(
        team_id="team-1",
        team_name="Team",
        primary_contacts=("lead",),
        escalation_contacts=tuple(pool),
        business_hours=DEFAULT_HOURS,
        escalation_chain=tuple(steps),
    )


def test_resolve_builds_contacts_and_default_chain(async_session_maker):
    async def _run():
        await seed_team(async_session_maker)
        resolver = TeamAssignmentResolver(
            SqlTeamDirectory(async_session_maker),
            SeverityPolicyTable(),
            default_business_hours=DEFAULT_HOURS,
        )

        critical = await resolver.resolve("team-1", AlertSeverity.CRITICAL)
        medium = await resolver.resolve("team-1", AlertSeverity.MEDIUM)

        assert critical.primary_contacts == ("owner-1",)
        assert critical.escalation_contacts == ("member-1", "member-2", "owner-1")
        assert [step.delay_minutes for step in critical.escalation_chain] == [5, 10, 15, 20, 25]
        assert critical.escalation_chain[0].channel_types == (ChannelType.PUSH, ChannelType.SMS, ChannelType.IN_APP)
        assert len(medium.escalation_chain) == 3
        assert resolver.cached_team_ids() == ["team-1"]

        assert await resolver.resolve(None, AlertSeverity.CRITICAL) is None
        assert await resolver.resolve("missing-team", AlertSeverity.CRITICAL) is None

    anyio.run(_run)


def test_resolve_applies_team_override(async_session_maker):
    async def _run():
        await seed_team(
            async_session_maker,
            override={
                "business_hours": {
                    "timezone": "Europe/Berlin",
                    "weekdays": {"start": "08:00", "end": "18:00"},
                    "weekends": {"enabled": True, "start": "10:00", "end": "12:00"},
                },
                "escalation_chain": [
                    {"level": 2, "contacts": ["member-2"], "delayMinutes": 20, "channels": ["email"]},
                    {"level": 1, "contacts": ["member-1"], "delay_minutes": 3, "channel_types": ["sms"]},
                ],
                "primary_contacts": ["member-1"],
            },
        )
        resolver = TeamAssignmentResolver(
            SqlTeamDirectory(async_session_maker),
            SeverityPolicyTable(),
            default_business_hours=DEFAULT_HOURS,
        )

        assignment = await resolver.resolve("team-1", AlertSeverity.HIGH)

        assert assignment.primary_contacts == ("member-1",)
        assert assignment.business_hours.timezone == "Europe/Berlin"
        assert assignment.business_hours.weekends_enabled is True
        assert [step.level for step in assignment.escalation_chain] == [1, 2]
        assert assignment.step_for_level(1) == EscalationStep(
            level=1, contacts=("member-1",), delay_minutes=3, channel_types=(ChannelType.SMS,)
        )
        assert assignment.step_for_level(2).channel_types == (ChannelType.EMAIL,)

    anyio.run(_run)


def test_resolver_cache_invalidation_and_ttl():
    async def _run():
        directory = CountingDirectory()
        monotonic = FakeMonotonic()
        resolver = TeamAssignmentResolver(
            directory,
            SeverityPolicyTable(),
            default_business_hours=DEFAULT_HOURS,
            cache_ttl_seconds=60,
            clock=monotonic,
        )

        await resolver.resolve("team-1", AlertSeverity.CRITICAL)
        await resolver.resolve("team-1", AlertSeverity.LOW)
        assert directory.fetches == 1

        resolver.invalidate("team-1")
        await resolver.resolve("team-1", AlertSeverity.CRITICAL)
        assert directory.fetches == 2

        monotonic.value += 61
        await resolver.resolve("team-1", AlertSeverity.CRITICAL)
        assert directory.fetches == 3

        resolver.invalidate()
        assert resolver.cached_team_ids() == []

    anyio.run(_run)


def test_resolver_failure_is_not_cached():
    async def _run():
        resolver = TeamAssignmentResolver(
            BrokenDirectory(), SeverityPolicyTable(), default_business_hours=DEFAULT_HOURS
        )

        assert await resolver.resolve("team-1", AlertSeverity.CRITICAL) is None
        assert resolver.cached_team_ids() == []

    anyio.run(_run)


def test_contacts_for_level_splits_the_pool():
    assignment = _assignment(["a", "b", "c", "d", "e"])

    assert contacts_for_level(assignment, 1, 3) == ["a", "b"]
    assert contacts_for_level(assignment, 2, 3) == ["c", "d"]
    assert contacts_for_level(assignment, 3, 3) == ["e"]
    assert contacts_for_level(assignment, 0, 3) == []
    assert contacts_for_level(None, 1, 3) == []


def test_contacts_for_level_prefers_step_contacts():
    assignment = _assignment(["a", "b"], steps=[EscalationStep(level=1, contacts=("z",))])

    assert contacts_for_level(assignment, 1, 2) == ["z"]
    assert contacts_for_level(assignment, 2, 2) == ["b"]


def test_immediate_contacts_by_severity():
    assignment = TeamAssignment(
        team_id="team-1",
        team_name=None,
        primary_contacts=("p1", "p2", "p3"),
        escalation_contacts=(),
        business_hours=DEFAULT_HOURS,
    )

    assert immediate_contacts(assignment, AlertSeverity.CRITICAL) == ["p1", "p2", "p3"]
    assert immediate_contacts(assignment, AlertSeverity.HIGH) == ["p1", "p2"]
    assert immediate_contacts(assignment, AlertSeverity.MEDIUM) == []
    assert immediate_contacts(None, AlertSeverity.CRITICAL) == []


def test_default_channel_types():
    assert default_channel_types(AlertSeverity.CRITICAL, 2) == (
        ChannelType.EMAIL,
        ChannelType.SLACK,
        ChannelType.WEBHOOK,
    )
    assert default_channel_types(AlertSeverity.HIGH, 1) == (ChannelType.PUSH, ChannelType.IN_APP)
    assert default_channel_types(AlertSeverity.MEDIUM, 1) == (ChannelType.EMAIL, ChannelType.IN_APP)
    assert default_channel_types(AlertSeverity.INFO, 1) == (ChannelType.IN_APP,)
