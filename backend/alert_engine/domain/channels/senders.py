from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Protocol

import httpx

from alert_engine.domain.alerts.schemas import Alert, AlertSeverity
from alert_engine.domain.channels import templates
from alert_engine.domain.channels.records import InAppNotificationStore
from alert_engine.domain.channels.schemas import (
    ChannelConfig,
    ChannelType,
    EmailChannelConfig,
    InAppChannelConfig,
    NotificationChannel,
    PushChannelConfig,
    SlackChannelConfig,
    SmsChannelConfig,
    WebhookAuth,
    WebhookChannelConfig,
)
from alert_engine.domain.errors import ChannelDeliveryError, ConfigurationError
from alert_engine.infra.communication import NoopCommunicationAdapter, TwilioCommunicationAdapter
from alert_engine.infra.email import EmailAdapter, NoopEmailAdapter
from alert_engine.infra.push import GatewayPushAdapter, NoopPushAdapter

logger = logging.getLogger(__name__)

IN_APP_TYPES = {
    AlertSeverity.CRITICAL: "system_alert_critical",
    AlertSeverity.HIGH: "system_alert_high",
    AlertSeverity.MEDIUM: "system_alert_medium",
}
IN_APP_PRIORITIES = {
    AlertSeverity.CRITICAL: "high",
    AlertSeverity.HIGH: "high",
    AlertSeverity.MEDIUM: "medium",
}


@dataclass
class SendRequest:
    alert: Alert
    channel: NotificationChannel
    config: ChannelConfig
    delivery_id: str
    subject: str
    message: str
    recipients: list[str]
    now: datetime
    link: str | None = None


@dataclass(frozen=True)
class SendOutcome:
    external_message_id: str | None = None
    attempted: int = 1
    failed: int = 0


class Sender(Protocol):
    channel_type: ClassVar[ChannelType]

    async def send(self, request: SendRequest) -> SendOutcome:
        ...


@dataclass
class DeliveryAdapters:
    email_adapter: EmailAdapter | NoopEmailAdapter | Any = None
    sms_adapter: TwilioCommunicationAdapter | NoopCommunicationAdapter | Any = None
    push_adapter: GatewayPushAdapter | NoopPushAdapter | Any = None
    in_app_store: InAppNotificationStore | None = None
    http_transport: httpx.AsyncBaseTransport | None = None
    webhook_timeout_seconds: float = 30.0
    webhook_user_agent: str = "AlertEngine-Webhook/1.0"
    slack_footer: str = "Alert Engine"
    extra_senders: dict[ChannelType, Sender] = field(default_factory=dict)


async def _gather_isolated(calls: list[Any]) -> list[Any]:
    return await asyncio.gather(*calls, return_exceptions=True)


class EmailSender:
    channel_type = ChannelType.EMAIL

    def __init__(self, adapter: EmailAdapter | NoopEmailAdapter | Any) -> None:
        self._adapter = adapter

    async def send(self, request: SendRequest) -> SendOutcome:
        config: EmailChannelConfig = request.config
        alert = request.alert
        subject = (
            templates.render_template(config.subject_template, alert) if config.subject_template else request.subject
        )
        if config.body_template:
            html_body = templates.render_template(config.body_template, alert)
        else:
            html_body = templates.format_email_html(alert, request.message, generated_at=request.now, link=request.link)
        headers = {"X-Alert-Id": alert.id, "X-Alert-Severity": alert.severity.value}
        if config.template_name:
            headers["X-Template-Name"] = config.template_name
        outcomes = await _gather_isolated(
            [
                self._adapter.send_email(recipient, subject, request.message, html_body=html_body, headers=headers)
                for recipient in config.recipients
            ]
        )
        failures = [outcome for outcome in outcomes if outcome is not True]
        for recipient, outcome in zip(config.recipients, outcomes):
            if outcome is not True:
                logger.warning(
                    "email_recipient_failed",
                    extra={"extra": {"recipient": recipient, "reason": _reason(outcome)}},
                )
        if failures:
            raise ChannelDeliveryError(
                f"Email delivery failed for {len(failures)} of {len(config.recipients)} recipients"
            )
        return SendOutcome(attempted=len(config.recipients))


class SmsSender:
    channel_type = ChannelType.SMS

    def __init__(self, adapter: TwilioCommunicationAdapter | NoopCommunicationAdapter | Any) -> None:
        self._adapter = adapter

    async def send(self, request: SendRequest) -> SendOutcome:
        config: SmsChannelConfig = request.config
        if config.provider != "twilio":
            raise ConfigurationError(f"Unsupported SMS provider {config.provider!r}")
        body = templates.format_sms(request.alert, config.message_template)
        outcomes = await _gather_isolated(
            [self._adapter.send_sms(to_number=number, body=body) for number in config.phone_numbers]
        )
        errors = []
        message_ids = []
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                errors.append(type(outcome).__name__)
            elif outcome.status != "sent":
                errors.append(outcome.error_code or "sms_failed")
            elif outcome.provider_msg_id:
                message_ids.append(outcome.provider_msg_id)
        if errors:
            raise ChannelDeliveryError(
                f"SMS delivery failed for {len(errors)} of {len(config.phone_numbers)} numbers: {', '.join(sorted(set(errors)))}"
            )
        return SendOutcome(
            external_message_id=",".join(message_ids) or None,
            attempted=len(config.phone_numbers),
        )


class PushSender:
    channel_type = ChannelType.PUSH

    def __init__(self, adapter: GatewayPushAdapter | NoopPushAdapter | Any) -> None:
        self._adapter = adapter

    async def send(self, request: SendRequest) -> SendOutcome:
        config: PushChannelConfig = request.config
        alert = request.alert
        if not request.recipients:
            raise ChannelDeliveryError("No push recipients resolved")
        critical = alert.severity == AlertSeverity.CRITICAL
        payload = {
            "title": templates.render_template(config.title_template, alert) if config.title_template else request.subject,
            "body": templates.render_template(config.body_template, alert) if config.body_template else alert.description or alert.title,
            "data": {"alert_id": alert.id, "severity": alert.severity.value, "url": request.link},
            "require_interaction": critical,
            "ignore_quiet_hours": critical,
        }
        outcomes = await _gather_isolated(
            [self._adapter.send_push(user_id=user_id, payload=payload) for user_id in request.recipients]
        )
        failed = 0
        for user_id, outcome in zip(request.recipients, outcomes):
            if isinstance(outcome, BaseException) or outcome.status != "sent":
                failed += 1
                logger.warning(
                    "push_recipient_failed",
                    extra={"extra": {"user_id": user_id, "reason": _reason(outcome)}},
                )
        return SendOutcome(attempted=len(request.recipients), failed=failed)


class InAppSender:
    channel_type = ChannelType.IN_APP

    def __init__(self, store: InAppNotificationStore | None) -> None:
        self._store = store

    async def send(self, request: SendRequest) -> SendOutcome:
        if self._store is None:
            raise ConfigurationError("In-app notification store is not configured")
        if not request.recipients:
            raise ChannelDeliveryError("No in-app recipients resolved")
        alert = request.alert
        outcomes = await _gather_isolated(
            [
                self._store.create(
                    recipient_id=user_id,
                    alert_id=alert.id,
                    team_id=alert.team_id,
                    type=IN_APP_TYPES.get(alert.severity, "system_alert_medium"),
                    priority=IN_APP_PRIORITIES.get(alert.severity, "low"),
                    title=request.subject,
                    body=alert.description or request.message,
                    action_href=request.link or f"/alerts/{alert.id}",
                    details={
                        "alert_id": alert.id,
                        "severity": alert.severity.value,
                        "channel_id": request.channel.id,
                        "delivery_id": request.delivery_id,
                    },
                )
                for user_id in request.recipients
            ]
        )
        failed = 0
        for user_id, outcome in zip(request.recipients, outcomes):
            if isinstance(outcome, BaseException):
                failed += 1
                logger.warning(
                    "in_app_recipient_failed",
                    extra={"extra": {"user_id": user_id, "reason": _reason(outcome)}},
                )
        return SendOutcome(attempted=len(request.recipients), failed=failed)


class _HttpSender:
    def __init__(
        self,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._transport = transport
        self._timeout_seconds = timeout_seconds

    async def _request(
        self, method: str, url: str, *, json: Any, headers: dict[str, str], label: str
    ) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport) as client:
                response = await client.request(method, url, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            raise ChannelDeliveryError(f"{label} timed out after {self._timeout_seconds:g}s") from exc
        except httpx.HTTPError as exc:
            raise ChannelDeliveryError(f"{label} request failed: {type(exc).__name__}") from exc
        if not 200 <= response.status_code < 300:
            raise ChannelDeliveryError(f"{label} returned {response.status_code}: {response.reason_phrase}")
        return response


class WebhookSender(_HttpSender):
    channel_type = ChannelType.WEBHOOK

    def __init__(
        self,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_seconds: float = 30.0,
        user_agent: str = "AlertEngine-Webhook/1.0",
    ) -> None:
        super().__init__(transport=transport, timeout_seconds=timeout_seconds)
        self._user_agent = user_agent

    async def send(self, request: SendRequest) -> SendOutcome:
        config: WebhookChannelConfig = request.config
        if config.payload_template:
            payload = templates.render_json_template(config.payload_template, request.alert)
        else:
            payload = templates.webhook_payload(
                request.alert,
                delivery_id=request.delivery_id,
                channel_id=request.channel.id,
                channel_name=request.channel.name,
                sent_at=request.now,
            )
        headers = {"Content-Type": "application/json", "User-Agent": self._user_agent, **config.headers}
        if config.auth is not None:
            headers.update(webhook_auth_headers(config.auth))
        response = await self._request(config.method, config.url, json=payload, headers=headers, label="Webhook")
        return SendOutcome(external_message_id=response.headers.get("x-message-id"))


class SlackSender(_HttpSender):
    channel_type = ChannelType.SLACK

    def __init__(
        self,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_seconds: float = 30.0,
        footer: str = "Alert Engine",
    ) -> None:
        super().__init__(transport=transport, timeout_seconds=timeout_seconds)
        self._footer = footer

    async def send(self, request: SendRequest) -> SendOutcome:
        config: SlackChannelConfig = request.config
        text = templates.render_template(config.message_template, request.alert) if config.message_template else None
        payload = templates.slack_payload(
            request.alert,
            footer=self._footer,
            text=text,
            channel=config.channel,
            username=config.username,
            icon_emoji=config.icon_emoji,
        )
        await self._request(
            "POST", config.webhook_url, json=payload, headers={"Content-Type": "application/json"}, label="Slack webhook"
        )
        return SendOutcome()


def webhook_auth_headers(auth: WebhookAuth) -> dict[str, str]:
    if auth.type == "bearer":
        if not auth.token:
            raise ConfigurationError("Bearer webhook auth requires a token")
        return {"Authorization": f"Bearer {auth.token}"}
    if auth.type == "basic":
        if auth.username is None or auth.password is None:
            raise ConfigurationError("Basic webhook auth requires username and password")
        credentials = base64.b64encode(f"{auth.username}:{auth.password}".encode()).decode()
        return {"Authorization": f"Basic {credentials}"}
    if not auth.api_key:
        raise ConfigurationError("API key webhook auth requires api_key")
    return {auth.header_name: auth.api_key}


def build_senders(adapters: DeliveryAdapters) -> dict[ChannelType, Sender]:
    senders: dict[ChannelType, Sender] = {
        ChannelType.EMAIL: EmailSender(adapters.email_adapter),
        ChannelType.SMS: SmsSender(adapters.sms_adapter),
        ChannelType.PUSH: PushSender(adapters.push_adapter),
        ChannelType.IN_APP: InAppSender(adapters.in_app_store),
        ChannelType.WEBHOOK: WebhookSender(
            transport=adapters.http_transport,
            timeout_seconds=adapters.webhook_timeout_seconds,
            user_agent=adapters.webhook_user_agent,
        ),
        ChannelType.SLACK: SlackSender(
            transport=adapters.http_transport,
            timeout_seconds=adapters.webhook_timeout_seconds,
            footer=adapters.slack_footer,
        ),
    }
    senders.update(adapters.extra_senders)
    return senders


def _reason(outcome: Any) -> str:
    if isinstance(outcome, BaseException):
        return type(outcome).__name__
    if outcome is False:
        return "not_sent"
    return getattr(outcome, "error_code", None) or "failed"
