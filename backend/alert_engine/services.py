from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alert_engine.domain.alerts.schemas import utcnow
from alert_engine.domain.alerts.store import SqlAlertStore
from alert_engine.domain.channels.rate_limit import ChannelRateLimiter
from alert_engine.domain.channels.records import SqlDeliveryRecordStore, SqlInAppNotificationStore
from alert_engine.domain.channels.registry import SqlChannelRegistry
from alert_engine.domain.channels.senders import DeliveryAdapters, build_senders
from alert_engine.domain.channels.service import DeliveryEngine
from alert_engine.domain.escalation.scheduler import Scheduler
from alert_engine.domain.escalation.service import EscalationManager
from alert_engine.domain.orchestrator.service import AlertNotificationOrchestrator
from alert_engine.domain.severity.policy import SeverityPolicyTable
from alert_engine.domain.teams.assignments import TeamAssignmentResolver
from alert_engine.domain.teams.directory import SqlTeamDirectory
from alert_engine.domain.teams.schemas import BusinessHours, TimeWindow
from alert_engine.infra.communication import resolve_communication_adapter
from alert_engine.infra.db import get_session_factory
from alert_engine.infra.email import resolve_email_adapter
from alert_engine.infra.metrics import Metrics, configure_metrics
from alert_engine.infra.push import resolve_push_adapter


@dataclass
class EngineServices:
    """Typed container for runtime services stored on `app.state.services`."""

    alerts: SqlAlertStore
    channels: SqlChannelRegistry
    records: SqlDeliveryRecordStore
    teams: SqlTeamDirectory
    policy: SeverityPolicyTable
    resolver: TeamAssignmentResolver
    delivery: DeliveryEngine
    escalations: EscalationManager
    orchestrator: AlertNotificationOrchestrator
    metrics: Metrics


def default_business_hours(app_settings) -> BusinessHours:
    return BusinessHours(
        timezone=app_settings.default_team_timezone,
        weekdays=TimeWindow(app_settings.default_business_start, app_settings.default_business_end),
    )


def build_engine_services(
    app_settings,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    adapters: DeliveryAdapters | None = None,
    http_transport: httpx.AsyncBaseTransport | None = None,
    scheduler: Scheduler | None = None,
    clock: Callable[[], datetime] = utcnow,
    metrics: Metrics | None = None,
) -> EngineServices:
    metrics_client = metrics or configure_metrics(app_settings.metrics_enabled)
    factory = session_factory or get_session_factory()
    alerts = SqlAlertStore(factory)
    channels = SqlChannelRegistry(factory)
    records = SqlDeliveryRecordStore(factory)
    teams = SqlTeamDirectory(factory)
    policy = SeverityPolicyTable()
    resolver = TeamAssignmentResolver(
        teams,
        policy,
        default_business_hours=default_business_hours(app_settings),
        cache_ttl_seconds=app_settings.team_assignment_cache_ttl_seconds,
    )
    if adapters is None:
        adapters = DeliveryAdapters(
            email_adapter=resolve_email_adapter(app_settings),
            sms_adapter=resolve_communication_adapter(app_settings),
            push_adapter=resolve_push_adapter(app_settings),
            in_app_store=SqlInAppNotificationStore(factory),
            http_transport=http_transport,
            webhook_timeout_seconds=app_settings.webhook_timeout_seconds,
            webhook_user_agent=app_settings.webhook_user_agent,
            slack_footer=app_settings.slack_footer,
        )
    delivery = DeliveryEngine(
        registry=channels,
        records=records,
        senders=build_senders(adapters),
        alerts=alerts,
        team_directory=teams,
        rate_limiter=ChannelRateLimiter(records),
        max_attempts=app_settings.delivery_max_attempts,
        public_base_url=app_settings.public_base_url,
        clock=clock,
    )
    escalations = EscalationManager(
        alerts=alerts,
        channels=channels,
        delivery=delivery,
        policy=policy,
        resolver=resolver,
        scheduler=scheduler,
        off_hours_max_delay_minutes=app_settings.escalation_off_hours_max_delay_minutes,
        clock=clock,
    )
    orchestrator = AlertNotificationOrchestrator(
        alerts=alerts,
        delivery=delivery,
        escalations=escalations,
        recovery_interval_seconds=app_settings.escalation_recovery_interval_seconds,
        clock=clock,
    )
    return EngineServices(
        alerts=alerts,
        channels=channels,
        records=records,
        teams=teams,
        policy=policy,
        resolver=resolver,
        delivery=delivery,
        escalations=escalations,
        orchestrator=orchestrator,
        metrics=metrics_client,
    )


def resolve_services(container_like: Any) -> EngineServices | None:
    if isinstance(container_like, EngineServices):
        return container_like
    if container_like is None:
        return None
    state = getattr(container_like, "state", container_like)
    return getattr(state, "services", None)
