from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from alert_engine.domain.alerts.schemas import Alert, utcnow
from alert_engine.domain.alerts.store import AlertStore
from alert_engine.domain.channels.registry import ChannelRegistry
from alert_engine.domain.channels.schemas import ChannelType, DeliveryBatch, NotificationChannel
from alert_engine.domain.channels.service import DeliveryEngine
from alert_engine.domain.escalation.context import (
    IMMEDIATE_ESCALATION,
    NO_CHANNELS,
    EscalationContext,
    EscalationHistoryEntry,
)
from alert_engine.domain.escalation.registry import EscalationRegistry
from alert_engine.domain.escalation.scheduler import AsyncioScheduler, Scheduler, TimerHandle
from alert_engine.domain.severity.policy import SeverityConfig, SeverityPolicyTable
from alert_engine.domain.teams.assignments import (
    IMMEDIATE_CHANNEL_TYPES,
    TeamAssignmentResolver,
    channel_types_for_level,
    contacts_for_level,
    default_channel_types,
    immediate_contacts,
)
from alert_engine.domain.teams.business_hours import (
    evaluate_business_hours,
    next_business_hours_start,
    should_escalate,
)
from alert_engine.domain.teams.schemas import TeamAssignment
from alert_engine.infra.metrics import metrics

logger = logging.getLogger(__name__)


class EscalationManager:
    """Drives per-alert escalation: immediate pass, timed levels, deferral and cancellation.

    State lives in an `EscalationRegistry`; every transition for an alert runs
    under that alert's lock. Timers come from a `Scheduler`, so tests can swap
    in a manual one and fire levels deterministically.
    """

    def __init__(
        self,
        *,
        alerts: AlertStore,
        channels: ChannelRegistry,
        delivery: DeliveryEngine,
        policy: SeverityPolicyTable,
        resolver: TeamAssignmentResolver,
        scheduler: Scheduler | None = None,
        registry: EscalationRegistry | None = None,
        off_hours_max_delay_minutes: int = 15,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.alerts = alerts
        self.channels = channels
        self.delivery = delivery
        self.policy = policy
        self.resolver = resolver
        self.scheduler = scheduler or AsyncioScheduler()
        self.registry = registry or EscalationRegistry()
        self.off_hours_max_delay_minutes = off_hours_max_delay_minutes
        self.clock = clock
        self._totals: Counter[str] = Counter()

    # Entry points

    async def process_alert_escalation(self, alert: Alert) -> EscalationContext | None:
        async with self.registry.lock.hold(alert.id):
            if self.registry.is_tracked(alert.id):
                logger.info("escalation_already_tracked", extra={"extra": {"alert_id": alert.id}})
                return self.registry.contexts.get(alert.id)
            if alert.is_terminal:
                logger.info(
                    "escalation_skipped_terminal",
                    extra={"extra": {"alert_id": alert.id, "status": alert.status.value}},
                )
                return None
            return await self._create(alert)

    async def resume_escalation(self, alert: Alert) -> EscalationContext | None:
        """Re-create a context for an alert whose timer did not survive a restart."""
        async with self.registry.lock.hold(alert.id):
            if self.registry.is_tracked(alert.id) or alert.is_terminal:
                return self.registry.contexts.get(alert.id)
            return await self._resume(alert)

    async def cancel_escalation(self, alert_id: str) -> bool:
        # Stop a pending timer before waiting on the lock so it cannot fire meanwhile.
        handle = self.registry.timers.get(alert_id)
        if handle is not None:
            handle.cancel()
        context = self.registry.contexts.get(alert_id)
        if context is not None:
            context.cancelled = True
        async with self.registry.lock.hold(alert_id):
            tracked = self.registry.forget(alert_id)
            await self._persist(alert_id, next_escalation_at=None)
        if tracked:
            self._totals["cancelled"] += 1
            metrics.record_escalation(context.alert.severity.value if context else "unknown", "cancelled")
            logger.info("escalation_cancelled", extra={"extra": {"alert_id": alert_id}})
        self._publish_active()
        return tracked

    def get_escalation_status(self, alert_id: str) -> EscalationContext | None:
        return self.registry.contexts.get(alert_id)

    def get_active_escalations(self) -> dict[str, EscalationContext]:
        return dict(self.registry.contexts)

    def is_tracked(self, alert_id: str) -> bool:
        return self.registry.is_tracked(alert_id)

    def get_statistics(self) -> dict[str, Any]:
        by_level: Counter[int] = Counter()
        by_severity: Counter[str] = Counter()
        for context in self.registry.contexts.values():
            by_level[context.current_level] += 1
            by_severity[context.alert.severity.value] += 1
        return {
            "active_escalations": len(self.registry.contexts),
            "deferred_escalations": len(self.registry.deferred),
            "armed_timers": len(self.registry.timers),
            "escalations_by_level": dict(sorted(by_level.items())),
            "escalations_by_severity": dict(sorted(by_severity.items())),
            "totals": dict(sorted(self._totals.items())),
        }

    async def shutdown(self) -> None:
        self.registry.clear()
        await self.scheduler.shutdown()
        self._publish_active()

    # Creation and deferral

    async def _create(self, alert: Alert) -> EscalationContext | None:
        config = self.policy.get(alert.severity)
        assignment = await self.resolver.resolve(alert.team_id, alert.severity)
        now = self.clock()
        state = evaluate_business_hours(assignment.business_hours if assignment else None, now)
        if not should_escalate(config, state.is_business_hours, state.is_weekend):
            await self._defer(alert, config, assignment, now)
            return None

        context = EscalationContext(
            alert=alert,
            severity_config=config,
            team_assignment=assignment,
            max_level=_max_level(config, assignment),
            is_business_hours=state.is_business_hours,
            is_weekend=state.is_weekend,
        )
        self.registry.contexts[alert.id] = context
        self._totals["started"] += 1
        metrics.record_escalation(alert.severity.value, "started")
        logger.info(
            "escalation_started",
            extra={
                "extra": {
                    "alert_id": alert.id,
                    "severity": alert.severity.value,
                    "team_id": alert.team_id,
                    "max_level": context.max_level,
                }
            },
        )
        if config.requires_immediate_attention:
            await self._immediate(context)
        await self._schedule_next(context)
        self._publish_active()
        return context

    async def _resume(self, alert: Alert) -> EscalationContext | None:
        config = self.policy.get(alert.severity)
        assignment = await self.resolver.resolve(alert.team_id, alert.severity)
        now = self.clock()
        state = evaluate_business_hours(assignment.business_hours if assignment else None, now)
        if not should_escalate(config, state.is_business_hours, state.is_weekend):
            await self._defer(alert, config, assignment, now)
            return None
        max_level = _max_level(config, assignment)
        if alert.escalation_level >= max_level:
            await self._persist(alert.id, next_escalation_at=None)
            logger.info(
                "escalation_resume_at_max_level",
                extra={"extra": {"alert_id": alert.id, "level": alert.escalation_level}},
            )
            return None
        context = EscalationContext(
            alert=alert,
            severity_config=config,
            team_assignment=assignment,
            max_level=max_level,
            current_level=alert.escalation_level,
            is_business_hours=state.is_business_hours,
            is_weekend=state.is_weekend,
            next_escalation_at=now,
        )
        self.registry.contexts[alert.id] = context
        self.registry.arm(alert.id, self.scheduler.schedule(alert.id, 0, self._on_level_timer))
        self._totals["resumed"] += 1
        metrics.record_escalation(alert.severity.value, "resumed")
        logger.info(
            "escalation_resumed",
            extra={"extra": {"alert_id": alert.id, "level": alert.escalation_level, "max_level": max_level}},
        )
        self._publish_active()
        return context

    async def _defer(
        self,
        alert: Alert,
        config: SeverityConfig,
        assignment: TeamAssignment | None,
        now: datetime,
    ) -> None:
        start = next_business_hours_start(
            assignment.business_hours if assignment else None,
            now,
            allow_weekends=config.weekend_escalation,
        )
        if start is None:
            logger.warning("escalation_deferral_unscheduled", extra={"extra": {"alert_id": alert.id}})
            return
        self.registry.deferred[alert.id] = alert
        await self._persist(alert.id, next_escalation_at=start)
        delay = (start - now).total_seconds()
        self.registry.arm(alert.id, self.scheduler.schedule(alert.id, delay, self._on_deferred_timer))
        self._totals["deferred"] += 1
        metrics.record_escalation(alert.severity.value, "deferred")
        logger.info(
            "escalation_deferred",
            extra={"extra": {"alert_id": alert.id, "next_escalation_at": start.isoformat()}},
        )

    async def _on_deferred_timer(self, handle: TimerHandle) -> None:
        alert_id = handle.key
        async with self.registry.lock.hold(alert_id):
            if not self.registry.is_current(alert_id, handle):
                return
            self.registry.timers.pop(alert_id, None)
            snapshot = self.registry.deferred.pop(alert_id, None)
            alert = await self._fetch_alert(alert_id, fallback=snapshot)
            if alert is None or alert.is_terminal:
                await self._persist(alert_id, next_escalation_at=None)
                logger.info("escalation_deferral_dropped", extra={"extra": {"alert_id": alert_id}})
                return
            if alert.escalation_level > 0:
                await self._resume(alert)
            else:
                await self._create(alert)

    # Levels

    async def _immediate(self, context: EscalationContext) -> None:
        alert = context.alert
        contacts = immediate_contacts(context.team_assignment, alert.severity)
        if not contacts:
            logger.info("immediate_escalation_skipped", extra={"extra": {"alert_id": alert.id}})
            return
        channels, batch = await self._deliver_level(alert, contacts, IMMEDIATE_CHANNEL_TYPES)
        context.escalation_history.append(
            EscalationHistoryEntry(
                level=0,
                triggered_at=self.clock(),
                contacts=tuple(contacts),
                channel_ids=tuple(channel.id for channel in channels),
                success=batch.any_success,
                reason=IMMEDIATE_ESCALATION,
            )
        )
        logger.info(
            "immediate_escalation_completed",
            extra={
                "extra": {
                    "alert_id": alert.id,
                    "successful": batch.successful,
                    "total_channels": batch.total_channels,
                }
            },
        )

    async def _on_level_timer(self, handle: TimerHandle) -> None:
        alert_id = handle.key
        async with self.registry.lock.hold(alert_id):
            context = self.registry.contexts.get(alert_id)
            if context is None or context.cancelled or not self.registry.is_current(alert_id, handle):
                logger.info("escalation_timer_stale", extra={"extra": {"alert_id": alert_id}})
                return
            self.registry.timers.pop(alert_id, None)
            await self._execute(context)
        self._publish_active()

    async def execute_escalation(self, alert_id: str) -> EscalationContext | None:
        """Run the next level for a tracked alert now, replacing its pending timer."""
        async with self.registry.lock.hold(alert_id):
            context = self.registry.contexts.get(alert_id)
            if context is None or context.cancelled:
                return None
            self.registry.disarm(alert_id)
            await self._execute(context)
        self._publish_active()
        return self.registry.contexts.get(alert_id)

    async def _execute(self, context: EscalationContext) -> None:
        alert_id = context.alert_id
        alert = await self._fetch_alert(alert_id, fallback=context.alert)
        if alert is None or alert.is_terminal:
            await self._terminate(context, "resolved")
            return
        context.alert = alert
        if context.at_max_level:
            await self._terminate(context, "max_level_reached")
            return

        now = self.clock()
        config = context.severity_config
        hours = context.team_assignment.business_hours if context.team_assignment else None
        state = evaluate_business_hours(hours, now)
        context.is_business_hours, context.is_weekend = state.is_business_hours, state.is_weekend
        if not should_escalate(config, state.is_business_hours, state.is_weekend):
            await self._hold_until_business_hours(context, now)
            return

        context.current_level += 1
        level = context.current_level
        contacts = contacts_for_level(context.team_assignment, level, context.max_level)
        if not contacts and context.team_assignment is not None:
            contacts = list(context.team_assignment.primary_contacts or context.team_assignment.escalation_contacts)
        channel_types = channel_types_for_level(context.team_assignment, alert.severity, level)
        if not channel_types:
            channel_types = default_channel_types(alert.severity, level)
        channels, batch = await self._deliver_level(alert, contacts, channel_types)
        entry = EscalationHistoryEntry(
            level=level,
            triggered_at=now,
            contacts=tuple(contacts),
            channel_ids=tuple(channel.id for channel in channels),
            success=batch.any_success,
            reason=None if channels else NO_CHANNELS,
        )
        context.escalation_history.append(entry)
        self._totals["levels_executed"] += 1
        metrics.record_escalation(alert.severity.value, "delivered" if entry.success else "failed")
        logger.info(
            "escalation_level_executed",
            extra={
                "extra": {
                    "alert_id": alert_id,
                    "level": level,
                    "successful": batch.successful,
                    "total_channels": batch.total_channels,
                }
            },
        )
        await self._persist(alert_id, escalation_level=level, last_escalated_at=now)
        await self._record_history(
            alert_id,
            {
                "level": level,
                "severity": alert.severity.value,
                "contacts": list(contacts),
                "channels": [channel.name or channel.id for channel in channels],
                "success": entry.success,
                "successful_deliveries": batch.successful,
                "total_channels": batch.total_channels,
                "business_hours": state.is_business_hours,
                "weekend": state.is_weekend,
                "reason": entry.reason,
            },
        )
        if context.cancelled:
            return
        await self._schedule_next(context)

    async def _hold_until_business_hours(self, context: EscalationContext, now: datetime) -> None:
        hours = context.team_assignment.business_hours if context.team_assignment else None
        start = next_business_hours_start(hours, now, allow_weekends=context.severity_config.weekend_escalation)
        if start is None:
            logger.warning("escalation_deferral_unscheduled", extra={"extra": {"alert_id": context.alert_id}})
            await self._terminate(context, "no_business_hours")
            return
        context.next_escalation_at = start
        await self._persist(context.alert_id, next_escalation_at=start)
        delay = (start - now).total_seconds()
        self.registry.arm(context.alert_id, self.scheduler.schedule(context.alert_id, delay, self._on_level_timer))
        logger.info(
            "escalation_held_for_business_hours",
            extra={"extra": {"alert_id": context.alert_id, "next_escalation_at": start.isoformat()}},
        )

    async def _schedule_next(self, context: EscalationContext) -> None:
        if context.at_max_level:
            await self._terminate(context, "max_level_reached")
            return
        now = self.clock()
        hours = context.team_assignment.business_hours if context.team_assignment else None
        state = evaluate_business_hours(hours, now)
        context.is_business_hours, context.is_weekend = state.is_business_hours, state.is_weekend
        delay_minutes = self.next_delay_minutes(context)
        next_at = now + timedelta(minutes=delay_minutes)
        context.next_escalation_at = next_at
        await self._persist(context.alert_id, escalation_level=context.current_level, next_escalation_at=next_at)
        self.registry.arm(
            context.alert_id,
            self.scheduler.schedule(context.alert_id, delay_minutes * 60, self._on_level_timer),
        )
        logger.info(
            "escalation_scheduled",
            extra={
                "extra": {
                    "alert_id": context.alert_id,
                    "level": context.current_level + 1,
                    "delay_minutes": delay_minutes,
                }
            },
        )

    def next_delay_minutes(self, context: EscalationContext) -> int:
        config = context.severity_config
        delay = config.default_escalation_delay
        if context.team_assignment is not None:
            step = context.team_assignment.step_for_level(context.current_level + 1)
            if step is not None:
                delay = step.delay_minutes
        if not context.is_business_hours and not config.allowed_business_hours_only:
            delay = min(delay, self.off_hours_max_delay_minutes)
        return delay

    async def _terminate(self, context: EscalationContext, reason: str) -> None:
        alert_id = context.alert_id
        self.registry.forget(alert_id)
        context.next_escalation_at = None
        await self._persist(alert_id, next_escalation_at=None)
        self._totals[reason] += 1
        metrics.record_escalation(context.alert.severity.value, reason)
        logger.info(
            "escalation_terminated",
            extra={"extra": {"alert_id": alert_id, "reason": reason, "level": context.current_level}},
        )

    async def _deliver_level(
        self,
        alert: Alert,
        contacts: list[str],
        channel_types: Iterable[ChannelType],
    ) -> tuple[list[NotificationChannel], DeliveryBatch]:
        channel_types = tuple(channel_types)
        try:
            channels = await self.channels.list_enabled(severity=alert.severity, channel_types=channel_types)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "escalation_channel_lookup_failed",
                extra={"extra": {"alert_id": alert.id, "reason": type(exc).__name__}},
            )
            return [], DeliveryBatch(alert_id=alert.id)
        if not channels:
            logger.warning(
                "escalation_no_channels",
                extra={"extra": {"alert_id": alert.id, "channel_types": [t.value for t in channel_types]}},
            )
            return [], DeliveryBatch(alert_id=alert.id)
        batch = await self.delivery.deliver_all(alert, channels, user_ids=contacts or None)
        return channels, batch

    # Store helpers

    async def _fetch_alert(self, alert_id: str, *, fallback: Alert | None) -> Alert | None:
        try:
            return await self.alerts.get_alert(alert_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "escalation_alert_fetch_failed",
                extra={"extra": {"alert_id": alert_id, "reason": type(exc).__name__}},
            )
            return fallback

    async def _persist(self, alert_id: str, **values: Any) -> None:
        try:
            await self.alerts.update_escalation(alert_id, **values)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "escalation_persist_failed",
                extra={"extra": {"alert_id": alert_id, "fields": sorted(values), "reason": type(exc).__name__}},
            )

    async def _record_history(self, alert_id: str, details: dict[str, Any]) -> None:
        try:
            await self.alerts.add_history(alert_id, "escalated", details)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "escalation_history_write_failed",
                extra={"extra": {"alert_id": alert_id, "reason": type(exc).__name__}},
            )

    def _publish_active(self) -> None:
        metrics.set_active_escalations(len(self.registry.contexts))


def _max_level(config: SeverityConfig, assignment: TeamAssignment | None) -> int:
    if assignment is not None and assignment.escalation_chain:
        return len(assignment.escalation_chain)
    return config.max_escalation_level
