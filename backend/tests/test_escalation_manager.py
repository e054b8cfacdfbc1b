from datetime import datetime, timedelta, timezone

import anyio

from alert_engine.domain.alerts.schemas import AlertSeverity, AlertStatus
from alert_engine.domain.channels.schemas import ChannelType
from alert_engine.domain.escalation.scheduler import CANCELLED, FIRED
from tests.conftest import SATURDAY_10AM, WEDNESDAY_10AM, make_alert, make_channel, seed_team


async def _save_channels(services, *channel_types, **overrides):
    for channel_type in channel_types:
        await services.channels.save_channel(make_channel(channel_type, **overrides))


async def _escalated_rows(services, alert_id):
    return [row for row in await services.alerts.list_history(alert_id) if row.action == "escalated"]


def test_critical_alert_without_team_escalates_every_five_minutes(services, scheduler, senders, clock):
    async def _run():
        alert = await services.alerts.save_alert(make_alert())
        await _save_channels(services, ChannelType.SMS, ChannelType.EMAIL)

        context = await services.escalations.process_alert_escalation(alert)

        assert context.max_level == 5
        assert context.current_level == 0
        stored = await services.alerts.get_alert(alert.id)
        assert stored.next_escalation_at == WEDNESDAY_10AM + timedelta(minutes=5)

        delays = []
        while scheduler.pending(alert.id):
            handle = await scheduler.fire_next(alert.id)
            delays.append(handle.delay_seconds)
            if len(delays) == 2:
                assert len(context.escalation_history) == 2
                assert [entry.level for entry in context.escalation_history] == [1, 2]

        assert delays == [300.0] * 5
        assert clock() == WEDNESDAY_10AM + timedelta(minutes=25)
        assert services.escalations.is_tracked(alert.id) is False
        assert scheduler.pending() == []
        assert len(senders[ChannelType.SMS].requests) == 1
        assert len(senders[ChannelType.EMAIL].requests) == 4

        stored = await services.alerts.get_alert(alert.id)
        assert stored.escalation_level == 5
        assert stored.next_escalation_at is None
        assert stored.last_escalated_at == WEDNESDAY_10AM + timedelta(minutes=25)

        rows = await _escalated_rows(services, alert.id)
        assert sorted(row.details["level"] for row in rows) == [1, 2, 3, 4, 5]
        level_one = next(row for row in rows if row.details["level"] == 1)
        assert level_one.details["channels"] == ["sms channel"]
        assert level_one.details["success"] is True
        assert level_one.details["business_hours"] is True

        stats = services.escalations.get_statistics()
        assert stats["totals"]["levels_executed"] == 5
        assert stats["totals"]["max_level_reached"] == 1
        assert stats["active_escalations"] == 0

    anyio.run(_run)


def test_team_escalation_runs_immediate_pass_and_follows_chain(services, scheduler, senders, async_session_maker):
    async def _run():
        await seed_team(async_session_maker)
        alert = await services.alerts.save_alert(make_alert(team_id="team-1"))
        await _save_channels(services, ChannelType.PUSH, configuration={})

        context = await services.escalations.process_alert_escalation(alert)

        immediate = context.escalation_history[0]
        assert immediate.level == 0
        assert immediate.reason == "immediate_escalation"
        assert immediate.contacts == ("owner-1",)
        assert senders[ChannelType.PUSH].requests[0].recipients == ["owner-1"]
        assert scheduler.pending(alert.id)[0].delay_seconds == 300.0

        await scheduler.fire_next(alert.id)

        assert context.current_level == 1
        assert senders[ChannelType.PUSH].requests[1].recipients == ["member-1"]
        # Level 2 of the default chain waits twice the severity delay.
        assert scheduler.pending(alert.id)[0].delay_seconds == 600.0

    anyio.run(_run)


def test_level_without_channels_is_recorded(services, scheduler):
    async def _run():
        alert = await services.alerts.save_alert(make_alert())
        context = await services.escalations.process_alert_escalation(alert)

        await scheduler.fire_next(alert.id)

        entry = context.escalation_history[-1]
        assert entry.level == 1
        assert entry.success is False
        assert entry.reason == "no_channels"
        rows = await _escalated_rows(services, alert.id)
        assert rows[0].details["reason"] == "no_channels"
        assert rows[0].details["total_channels"] == 0

    anyio.run(_run)


def test_off_hours_delay_is_capped(services, scheduler, clock, async_session_maker):
    async def _run():
        clock.now = WEDNESDAY_10AM.replace(hour=20)
        await seed_team(
            async_session_maker,
            override={"escalation_chain": [{"level": 1, "delay_minutes": 60}, {"level": 2, "delay_minutes": 90}]},
        )
        alert = await services.alerts.save_alert(make_alert(team_id="team-1", severity=AlertSeverity.HIGH))

        context = await services.escalations.process_alert_escalation(alert)

        assert context.is_business_hours is False
        assert context.max_level == 2
        assert services.escalations.next_delay_minutes(context) == 15
        assert scheduler.pending(alert.id)[0].delay_seconds == 900.0

        context.is_business_hours = True
        assert services.escalations.next_delay_minutes(context) == 60

    anyio.run(_run)


def test_weekend_medium_alert_is_deferred_until_monday(services, scheduler, clock, async_session_maker):
    async def _run():
        clock.now = SATURDAY_10AM
        await seed_team(async_session_maker)
        alert = await services.alerts.save_alert(make_alert(team_id="team-1", severity=AlertSeverity.MEDIUM))
        monday_morning = datetime(2026, 1, 19, 9, 0, tzinfo=timezone.utc)

        assert await services.escalations.process_alert_escalation(alert) is None

        assert services.escalations.is_tracked(alert.id) is True
        assert services.escalations.get_escalation_status(alert.id) is None
        stored = await services.alerts.get_alert(alert.id)
        assert stored.next_escalation_at == monday_morning
        handle = scheduler.pending(alert.id)[0]
        assert handle.delay_seconds == (monday_morning - SATURDAY_10AM).total_seconds()

        # A second trigger while deferred does not schedule anything new.
        await services.escalations.process_alert_escalation(alert)
        assert len(scheduler.pending(alert.id)) == 1

        await scheduler.fire_next(alert.id)

        assert clock() == monday_morning
        context = services.escalations.get_escalation_status(alert.id)
        assert context.current_level == 0
        assert context.is_business_hours is True
        assert scheduler.pending(alert.id)[0].delay_seconds == 1800.0
        assert services.escalations.get_statistics()["totals"]["deferred"] == 1

    anyio.run(_run)


def test_level_outside_business_hours_is_held_without_escalating(services, scheduler, clock, async_session_maker):
    async def _run():
        clock.now = WEDNESDAY_10AM.replace(hour=16, minute=50)
        await seed_team(async_session_maker)
        alert = await services.alerts.save_alert(make_alert(team_id="team-1", severity=AlertSeverity.MEDIUM))
        context = await services.escalations.process_alert_escalation(alert)
        thursday_morning = datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)

        await scheduler.fire_next(alert.id)

        assert clock() == WEDNESDAY_10AM.replace(hour=17, minute=20)
        assert context.current_level == 0
        assert context.next_escalation_at == thursday_morning
        assert scheduler.pending(alert.id)[0].delay_seconds == (thursday_morning - clock()).total_seconds()
        stored = await services.alerts.get_alert(alert.id)
        assert stored.next_escalation_at == thursday_morning
        assert await _escalated_rows(services, alert.id) == []

        await scheduler.fire_next(alert.id)

        assert context.current_level == 1

    anyio.run(_run)


def test_cancel_then_fire_delivers_nothing(services, scheduler, senders):
    async def _run():
        alert = await services.alerts.save_alert(make_alert())
        await _save_channels(services, ChannelType.SMS)
        await services.escalations.process_alert_escalation(alert)
        handle = scheduler.pending(alert.id)[0]

        assert await services.escalations.cancel_escalation(alert.id) is True

        assert handle.state == CANCELLED
        assert await handle.fire() is False
        assert senders[ChannelType.SMS].requests == []
        assert await _escalated_rows(services, alert.id) == []
        assert services.escalations.is_tracked(alert.id) is False
        stored = await services.alerts.get_alert(alert.id)
        assert stored.next_escalation_at is None
        assert await services.escalations.cancel_escalation(alert.id) is False

    anyio.run(_run)


def test_cancel_deferred_escalation(services, scheduler, clock, async_session_maker):
    async def _run():
        clock.now = SATURDAY_10AM
        await seed_team(async_session_maker)
        alert = await services.alerts.save_alert(make_alert(team_id="team-1", severity=AlertSeverity.LOW))
        await services.escalations.process_alert_escalation(alert)

        assert await services.escalations.cancel_escalation(alert.id) is True

        assert scheduler.pending() == []
        assert services.escalations.is_tracked(alert.id) is False
        assert (await services.alerts.get_alert(alert.id)).next_escalation_at is None

    anyio.run(_run)


def test_resolved_alert_terminates_on_next_timer(services, scheduler, senders):
    async def _run():
        alert = await services.alerts.save_alert(make_alert())
        await _save_channels(services, ChannelType.SMS)
        await services.escalations.process_alert_escalation(alert)
        await services.alerts.set_status(alert.id, AlertStatus.RESOLVED)

        handle = await scheduler.fire_next(alert.id)

        assert handle.state == FIRED
        assert senders[ChannelType.SMS].requests == []
        assert services.escalations.is_tracked(alert.id) is False
        assert services.escalations.get_statistics()["totals"]["resolved"] == 1

    anyio.run(_run)


def test_terminal_alerts_are_not_escalated(services, scheduler):
    async def _run():
        alert = await services.alerts.save_alert(make_alert(status=AlertStatus.SUPPRESSED))

        assert await services.escalations.process_alert_escalation(alert) is None
        assert scheduler.pending() == []

    anyio.run(_run)


def test_process_alert_escalation_is_idempotent(services, scheduler):
    async def _run():
        alert = await services.alerts.save_alert(make_alert())

        first = await services.escalations.process_alert_escalation(alert)
        second = await services.escalations.process_alert_escalation(alert)

        assert first is second
        assert len(scheduler.pending(alert.id)) == 1

    anyio.run(_run)


def test_execute_escalation_runs_next_level_now(services, scheduler, clock):
    async def _run():
        alert = await services.alerts.save_alert(make_alert())
        await services.escalations.process_alert_escalation(alert)
        original = scheduler.pending(alert.id)[0]

        context = await services.escalations.execute_escalation(alert.id)

        assert context.current_level == 1
        assert original.state == CANCELLED
        assert len(scheduler.pending(alert.id)) == 1
        assert context.escalation_history[-1].triggered_at == WEDNESDAY_10AM
        assert await services.escalations.execute_escalation("unknown") is None

    anyio.run(_run)


def test_resume_starts_from_persisted_level(services, scheduler, clock):
    async def _run():
        alert = await services.alerts.save_alert(
            make_alert(escalation_level=2, next_escalation_at=WEDNESDAY_10AM - timedelta(minutes=1))
        )

        context = await services.escalations.resume_escalation(alert)

        assert context.current_level == 2
        handle = scheduler.pending(alert.id)[0]
        assert handle.delay_seconds == 0

        await scheduler.fire_next(alert.id)

        assert context.current_level == 3
        assert (await services.alerts.get_alert(alert.id)).escalation_level == 3
        assert services.escalations.get_statistics()["totals"]["resumed"] == 1

    anyio.run(_run)


def test_resume_at_max_level_clears_schedule(services, scheduler):
    async def _run():
        alert = await services.alerts.save_alert(
            make_alert(escalation_level=5, next_escalation_at=WEDNESDAY_10AM - timedelta(minutes=1))
        )

        assert await services.escalations.resume_escalation(alert) is None

        assert scheduler.pending() == []
        assert (await services.alerts.get_alert(alert.id)).next_escalation_at is None

    anyio.run(_run)


def test_shutdown_clears_registry_without_touching_persistence(services, scheduler):
    async def _run():
        alert = await services.alerts.save_alert(make_alert())
        await services.escalations.process_alert_escalation(alert)

        await services.escalations.shutdown()

        assert services.escalations.get_active_escalations() == {}
        assert scheduler.pending() == []
        stored = await services.alerts.get_alert(alert.id)
        assert stored.next_escalation_at == WEDNESDAY_10AM + timedelta(minutes=5)

    anyio.run(_run)
