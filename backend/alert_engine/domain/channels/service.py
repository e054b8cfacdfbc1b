from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Iterable, Mapping

from alert_engine.domain.alerts.schemas import Alert, utcnow
from alert_engine.domain.alerts.store import AlertStore
from alert_engine.domain.channels import templates
from alert_engine.domain.channels.rate_limit import ChannelRateLimiter
from alert_engine.domain.channels.records import DeliveryRecordStore
from alert_engine.domain.channels.registry import ChannelRegistry
from alert_engine.domain.channels.schemas import (
    ChannelConfig,
    ChannelType,
    DeliveryBatch,
    DeliveryResult,
    DeliveryStatus,
    EmailChannelConfig,
    NotificationChannel,
    SmsChannelConfig,
    parse_channel_configuration,
)
from alert_engine.domain.channels.senders import SendRequest, Sender
from alert_engine.domain.errors import (
    AlertNotFoundError,
    ChannelDeliveryError,
    ConfigurationError,
    EngineError,
    NotificationNotFoundError,
    RetryLimitExceededError,
)
from alert_engine.domain.teams.directory import TeamDirectory
from alert_engine.infra.metrics import metrics
from alert_engine.shared.locks import KeyedLock

logger = logging.getLogger(__name__)

MEMBER_CHANNEL_TYPES = frozenset({ChannelType.PUSH, ChannelType.IN_APP})


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class DeliveryEngine:
    """Delivers one alert to notification channels and keeps the delivery audit trail.

    A failure on one channel is captured in its ``DeliveryResult`` and never raised;
    only lookups that happen before fan-out (listing channels) propagate errors.
    """

    def __init__(
        self,
        *,
        registry: ChannelRegistry,
        records: DeliveryRecordStore,
        senders: Mapping[ChannelType, Sender],
        alerts: AlertStore | None = None,
        team_directory: TeamDirectory | None = None,
        rate_limiter: ChannelRateLimiter | None = None,
        max_attempts: int = 3,
        public_base_url: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.registry = registry
        self.records = records
        self.senders = dict(senders)
        self.alerts = alerts
        self.team_directory = team_directory
        self.rate_limiter = rate_limiter or ChannelRateLimiter(records)
        self.max_attempts = max_attempts
        self.public_base_url = public_base_url
        self.clock = clock
        self._channel_locks = KeyedLock()

    async def deliver_alert(self, alert: Alert) -> DeliveryBatch:
        channels = await self.registry.list_enabled(severity=alert.severity)
        return await self.deliver_all(alert, channels)

    async def deliver_all(
        self,
        alert: Alert,
        channels: Iterable[NotificationChannel],
        *,
        user_ids: list[str] | None = None,
    ) -> DeliveryBatch:
        started = time.perf_counter()
        channels = list(channels)
        outcomes = await asyncio.gather(
            *(self.deliver(alert, channel, user_ids=user_ids) for channel in channels),
            return_exceptions=True,
        )
        results: list[DeliveryResult] = []
        for channel, outcome in zip(channels, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "delivery_unexpected_error",
                    exc_info=outcome,
                    extra={"extra": {"alert_id": alert.id, "channel_id": channel.id}},
                )
                outcome = DeliveryResult(
                    success=False,
                    channel_id=channel.id,
                    channel_type=channel.channel_type,
                    error=f"{type(outcome).__name__}: {outcome}",
                )
            results.append(outcome)
        return DeliveryBatch(alert_id=alert.id, results=results, total_time_ms=_elapsed_ms(started))

    async def deliver(
        self,
        alert: Alert,
        channel: NotificationChannel,
        *,
        user_ids: list[str] | None = None,
    ) -> DeliveryResult:
        if not channel.enabled:
            return self._failure(channel, "Channel is disabled")

        try:
            config = parse_channel_configuration(channel)
            recipients = await self._resolve_recipients(alert, channel, config, user_ids)
        except ConfigurationError as exc:
            logger.warning(
                "channel_configuration_invalid",
                extra={"extra": {"channel_id": channel.id, "reason": exc.detail, "errors": exc.errors}},
            )
            return self._failure(channel, exc.detail)

        subject = templates.format_subject(alert)
        message = templates.format_body(alert)

        now = self.clock()
        async with self._channel_locks.hold(channel.id):
            decision = await self.rate_limiter.check(channel, now)
            if not decision.allowed:
                metrics.record_rate_limited(channel.channel_type.value)
                logger.info(
                    "delivery_rate_limited",
                    extra={"extra": {"alert_id": alert.id, "channel_id": channel.id, "reason": decision.reason}},
                )
                return self._failure(channel, decision.reason or "Rate limit exceeded")
            try:
                delivery_id = await self.records.create(
                    alert_id=alert.id,
                    channel_id=channel.id,
                    channel_type=channel.channel_type,
                    subject=subject,
                    message=message,
                    recipients=recipients,
                    max_attempts=self.max_attempts,
                    created_at=now,
                )
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "delivery_record_create_failed",
                    extra={"extra": {"alert_id": alert.id, "channel_id": channel.id, "reason": type(exc).__name__}},
                )
                return self._failure(channel, f"Unable to record delivery: {type(exc).__name__}")

        request = SendRequest(
            alert=alert,
            channel=channel,
            config=config,
            delivery_id=delivery_id,
            subject=subject,
            message=message,
            recipients=recipients,
            now=now,
            link=templates.alert_link(alert, self.public_base_url),
        )
        return await self._send(request)

    async def retry_failed_notification(self, delivery_id: str) -> DeliveryResult:
        record = await self.records.get(delivery_id)
        if record is None:
            raise NotificationNotFoundError(f"Notification {delivery_id} not found")
        if record.status != DeliveryStatus.FAILED:
            raise EngineError(
                f"Notification {delivery_id} is {record.status.value}; only failed notifications can be retried",
                title="Notification Not Retryable",
                status_code=409,
            )
        if record.attempt_number >= record.max_attempts:
            raise RetryLimitExceededError(
                f"Notification {delivery_id} reached {record.attempt_number}/{record.max_attempts} attempts"
            )
        if self.alerts is None:
            raise ConfigurationError("Alert store is not configured for retries")
        alert = await self.alerts.get_alert(record.alert_id)
        if alert is None:
            raise AlertNotFoundError(f"Alert {record.alert_id} not found")
        channel = await self.registry.get_channel(record.channel_id)
        if channel is None:
            raise NotificationNotFoundError(f"Channel {record.channel_id} for notification {delivery_id} not found")
        if not channel.enabled:
            return self._failure(channel, "Channel is disabled", delivery_id=delivery_id)
        config = parse_channel_configuration(channel)

        now = self.clock()
        attempt = record.attempt_number + 1
        await self.records.mark_retrying(delivery_id, attempt_number=attempt, at=now)
        logger.info(
            "delivery_retry_started",
            extra={"extra": {"delivery_id": delivery_id, "channel_id": channel.id, "attempt": attempt}},
        )
        request = SendRequest(
            alert=alert,
            channel=channel,
            config=config,
            delivery_id=delivery_id,
            subject=record.subject or templates.format_subject(alert),
            message=record.message or templates.format_body(alert),
            recipients=record.recipients,
            now=now,
            link=templates.alert_link(alert, self.public_base_url),
        )
        return await self._send(request)

    async def channel_statistics(self, channel_id: str, hours: int = 24) -> dict:
        if hours <= 0:
            raise ConfigurationError("Statistics window must be positive")
        since = self.clock() - timedelta(hours=hours)
        stats = await self.records.statistics(channel_id, since)
        stats["window_hours"] = hours
        return stats

    async def _send(self, request: SendRequest) -> DeliveryResult:
        channel = request.channel
        sender = self.senders.get(channel.channel_type)
        started = time.perf_counter()
        external_id = None
        error = None
        if sender is None:
            error = f"No sender registered for {channel.channel_type.value}"
        else:
            try:
                outcome = await sender.send(request)
                external_id = outcome.external_message_id
            except (ChannelDeliveryError, ConfigurationError) as exc:
                error = exc.detail
            except Exception as exc:  # noqa: BLE001
                error = f"{type(exc).__name__}: {exc}"
        elapsed_ms = _elapsed_ms(started)
        success = error is None
        try:
            await self.records.mark_result(
                request.delivery_id,
                success=success,
                at=self.clock(),
                external_message_id=external_id,
                error=error,
                delivery_time_ms=elapsed_ms,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "delivery_record_update_failed",
                extra={"extra": {"delivery_id": request.delivery_id, "reason": type(exc).__name__}},
            )
        metrics.record_delivery(channel.channel_type.value, "sent" if success else "failed", elapsed_ms / 1000)
        log_extra = {
            "alert_id": request.alert.id,
            "channel_id": channel.id,
            "channel_type": channel.channel_type.value,
            "delivery_id": request.delivery_id,
            "delivery_time_ms": elapsed_ms,
        }
        if success:
            logger.info("delivery_sent", extra={"extra": log_extra})
        else:
            logger.warning("delivery_failed", extra={"extra": {**log_extra, "error": error}})
        return DeliveryResult(
            success=success,
            channel_id=channel.id,
            channel_type=channel.channel_type,
            delivery_id=request.delivery_id,
            external_message_id=external_id,
            error=error,
            delivery_time_ms=elapsed_ms,
        )

    async def _resolve_recipients(
        self,
        alert: Alert,
        channel: NotificationChannel,
        config: ChannelConfig,
        user_ids: list[str] | None,
    ) -> list[str]:
        if isinstance(config, EmailChannelConfig):
            return list(config.recipients)
        if isinstance(config, SmsChannelConfig):
            return list(config.phone_numbers)
        if channel.channel_type not in MEMBER_CHANNEL_TYPES:
            return []
        if user_ids:
            return list(dict.fromkeys(user_ids))
        configured = getattr(config, "user_ids", None)
        if configured:
            return list(configured)
        team_id = alert.team_id or channel.team_id
        if not team_id or self.team_directory is None:
            return []
        try:
            members = await self.team_directory.list_members(team_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "team_members_lookup_failed",
                extra={"extra": {"team_id": team_id, "reason": type(exc).__name__}},
            )
            return []
        return [member.user_id for member in members]

    @staticmethod
    def _failure(
        channel: NotificationChannel, error: str, *, delivery_id: str | None = None
    ) -> DeliveryResult:
        return DeliveryResult(
            success=False,
            channel_id=channel.id,
            channel_type=channel.channel_type,
            delivery_id=delivery_id,
            error=error,
        )
