import base64
import json

import anyio
import httpx
import pytest
from sqlalchemy import select

from alert_engine.domain.alerts.schemas import AlertSeverity
from alert_engine.domain.channels.db_models import InAppNotification
from alert_engine.domain.channels.records import SqlInAppNotificationStore
from alert_engine.domain.channels.schemas import ChannelType, parse_channel_configuration
from alert_engine.domain.channels.senders import (
    DeliveryAdapters,
    EmailSender,
    InAppSender,
    PushSender,
    SendRequest,
    SlackSender,
    SmsSender,
    WebhookSender,
    build_senders,
)
from alert_engine.domain.errors import ChannelDeliveryError, ConfigurationError
from alert_engine.infra.communication import CommunicationResult
from tests.conftest import WEDNESDAY_10AM, make_alert, make_channel


def _request(channel, *, alert=None, recipients=None, link=None) -> SendRequest:
    alert = alert or make_alert()
    return SendRequest(
        alert=alert,
        channel=channel,
        config=parse_channel_configuration(channel),
        delivery_id="delivery-1",
        subject="\U0001f6a8 Disk usage high",
        message="Alert: Disk usage high",
        recipients=recipients or [],
        now=WEDNESDAY_10AM,
        link=link,
    )


class FakeEmailAdapter:
    def __init__(self, failing=()) -> None:
        self.failing = set(failing)
        self.sent = []

    async def send_email(self, recipient, subject, body, *, html_body=None, headers=None):
        self.sent.append({"recipient": recipient, "subject": subject, "html_body": html_body, "headers": headers})
        return recipient not in self.failing


class FakeSmsAdapter:
    def __init__(self, status="sent") -> None:
        self.status = status
        self.sent = []

    async def send_sms(self, *, to_number, body):
        self.sent.append((to_number, body))
        if self.status != "sent":
            return CommunicationResult(status="failed", error_code="sms_rejected")
        return CommunicationResult(status="sent", provider_msg_id=f"SM{len(self.sent)}")


class FakePushAdapter:
    def __init__(self, failing=()) -> None:
        self.failing = set(failing)
        self.payloads = []

    async def send_push(self, *, user_id, payload):
        self.payloads.append((user_id, payload))
        if user_id in self.failing:
            return CommunicationResult(status="failed", error_code="push_status_410")
        return CommunicationResult(status="sent")


def test_webhook_sender_posts_payload_with_auth():
    async def _run():
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["request"] = request
            return httpx.Response(200, headers={"X-Message-Id": "msg-42"})

        channel = make_channel(
            ChannelType.WEBHOOK,
            configuration={
                "url": "https://hooks.example.com/alerts",
                "headers": {"X-Env": "prod"},
                "auth": {"type": "bearer", "token": "secret-token"},
            },
        )
        sender = WebhookSender(transport=httpx.MockTransport(handler), user_agent="Engine/2.0")

        outcome = await sender.send(_request(channel))

        request = captured["request"]
        body = json.loads(request.content)
        assert outcome.external_message_id == "msg-42"
        assert request.method == "POST"
        assert request.headers["Authorization"] == "Bearer secret-token"
        assert request.headers["User-Agent"] == "Engine/2.0"
        assert request.headers["X-Env"] == "prod"
        assert body["alert"]["id"] == "alert-1"
        assert body["notification"]["id"] == "delivery-1"

    anyio.run(_run)


def test_webhook_sender_renders_payload_template_and_basic_auth():
    async def _run():
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["request"] = request
            return httpx.Response(204)

        channel = make_channel(
            ChannelType.WEBHOOK,
            configuration={
                "url": "https://hooks.example.com/alerts",
                "method": "PUT",
                "authentication": {"type": "basic", "username": "ops", "password": "pw"},
                "payload_template": {"text": "{{alert.title}} is {{alert.severity}}"},
            },
        )
        sender = WebhookSender(transport=httpx.MockTransport(handler))

        outcome = await sender.send(_request(channel))

        request = captured["request"]
        assert outcome.external_message_id is None
        assert request.method == "PUT"
        assert json.loads(request.content) == {"text": "Disk usage high is critical"}
        assert request.headers["Authorization"] == "Basic " + base64.b64encode(b"ops:pw").decode()

    anyio.run(_run)


def test_webhook_sender_api_key_header():
    async def _run():
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["request"] = request
            return httpx.Response(200)

        channel = make_channel(
            ChannelType.WEBHOOK,
            configuration={
                "url": "https://hooks.example.com/alerts",
                "auth": {"type": "api_key", "api_key_value": "k-1", "api_key_header": "X-Token"},
            },
        )

        await WebhookSender(transport=httpx.MockTransport(handler)).send(_request(channel))

        assert captured["request"].headers["X-Token"] == "k-1"

    anyio.run(_run)


def test_webhook_sender_errors_become_delivery_errors():
    async def _run():
        channel = make_channel(ChannelType.WEBHOOK)
        failing = WebhookSender(transport=httpx.MockTransport(lambda request: httpx.Response(500)))

        def timeout(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        slow = WebhookSender(transport=httpx.MockTransport(timeout), timeout_seconds=5)

        with pytest.raises(ChannelDeliveryError) as server_error:
            await failing.send(_request(channel))
        with pytest.raises(ChannelDeliveryError) as timeout_error:
            await slow.send(_request(channel))

        assert server_error.value.detail == "Webhook returned 500: Internal Server Error"
        assert timeout_error.value.detail == "Webhook timed out after 5s"

    anyio.run(_run)


def test_webhook_auth_requires_credentials():
    async def _run():
        channel = make_channel(
            ChannelType.WEBHOOK,
            configuration={"url": "https://hooks.example.com/alerts", "auth": {"type": "bearer"}},
        )
        sender = WebhookSender(transport=httpx.MockTransport(lambda request: httpx.Response(200)))

        with pytest.raises(ConfigurationError):
            await sender.send(_request(channel))

    anyio.run(_run)


def test_slack_sender_posts_attachment():
    async def _run():
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["request"] = request
            return httpx.Response(200, text="ok")

        channel = make_channel(
            ChannelType.SLACK,
            configuration={
                "webhook_url": "https://slack.example.com/hook",
                "channel": "#oncall",
                "message_template": "{{alert.title}} needs attention",
            },
        )
        sender = SlackSender(transport=httpx.MockTransport(handler), footer="Ops Engine")

        await sender.send(_request(channel))

        body = json.loads(captured["request"].content)
        assert str(captured["request"].url) == "https://slack.example.com/hook"
        assert body["text"] == "Disk usage high needs attention"
        assert body["channel"] == "#oncall"
        assert body["attachments"][0]["color"] == "danger"
        assert body["attachments"][0]["footer"] == "Ops Engine"

    anyio.run(_run)


def test_email_sender_is_all_or_nothing():
    async def _run():
        channel = make_channel(
            ChannelType.EMAIL,
            configuration={"recipients": ["a@example.com", "b@example.com"], "template_name": "oncall"},
        )
        adapter = FakeEmailAdapter()

        outcome = await EmailSender(adapter).send(_request(channel, link="https://alerts.example.com/alerts/alert-1"))

        assert outcome.attempted == 2
        first = adapter.sent[0]
        assert first["headers"] == {
            "X-Alert-Id": "alert-1",
            "X-Alert-Severity": "critical",
            "X-Template-Name": "oncall",
        }
        assert "https://alerts.example.com/alerts/alert-1" in first["html_body"]

        with pytest.raises(ChannelDeliveryError) as excinfo:
            await EmailSender(FakeEmailAdapter(failing={"b@example.com"})).send(_request(channel))
        assert excinfo.value.detail == "Email delivery failed for 1 of 2 recipients"

    anyio.run(_run)


def test_email_sender_custom_templates():
    async def _run():
        channel = make_channel(
            ChannelType.EMAIL,
            configuration={
                "recipients": ["a@example.com"],
                "subject_template": "[{{alert.severity}}] {{alert.title}}",
                "body_template": "<p>{{alert.description}}</p>",
            },
        )
        adapter = FakeEmailAdapter()

        await EmailSender(adapter).send(_request(channel))

        assert adapter.sent[0]["subject"] == "[critical] Disk usage high"
        assert adapter.sent[0]["html_body"] == "<p>Disk usage above threshold on db-1</p>"

    anyio.run(_run)


def test_sms_sender_truncates_and_collects_message_ids():
    async def _run():
        channel = make_channel(ChannelType.SMS, configuration={"phone_numbers": ["+15550001111", "+15550002222"]})
        adapter = FakeSmsAdapter()

        outcome = await SmsSender(adapter).send(_request(channel, alert=make_alert(description="x" * 400)))

        assert outcome.external_message_id == "SM1,SM2"
        assert all(len(body) == 160 and body.endswith("...") for _, body in adapter.sent)

        with pytest.raises(ChannelDeliveryError) as excinfo:
            await SmsSender(FakeSmsAdapter(status="failed")).send(_request(channel))
        assert "sms_rejected" in excinfo.value.detail

    anyio.run(_run)


def test_sms_sender_rejects_unknown_provider():
    async def _run():
        channel = make_channel(ChannelType.SMS, configuration={"phone_numbers": ["+15550001111"], "provider": "pigeon"})

        with pytest.raises(ConfigurationError):
            await SmsSender(FakeSmsAdapter()).send(_request(channel))

    anyio.run(_run)


def test_push_sender_partial_and_total_failure():
    async def _run():
        channel = make_channel(ChannelType.PUSH)
        adapter = FakePushAdapter(failing={"u2"})

        outcome = await PushSender(adapter).send(
            _request(channel, recipients=["u1", "u2"], link="https://alerts.example.com/alerts/alert-1")
        )

        assert outcome.attempted == 2
        assert outcome.failed == 1
        user_id, payload = adapter.payloads[0]
        assert payload["require_interaction"] is True
        assert payload["ignore_quiet_hours"] is True
        assert payload["data"] == {
            "alert_id": "alert-1",
            "severity": "critical",
            "url": "https://alerts.example.com/alerts/alert-1",
        }

        all_failed = await PushSender(FakePushAdapter(failing={"u1", "u2"})).send(
            _request(channel, recipients=["u1", "u2"])
        )
        assert all_failed.attempted == 2
        assert all_failed.failed == 2

        with pytest.raises(ChannelDeliveryError):
            await PushSender(adapter).send(_request(channel, recipients=[]))

    anyio.run(_run)


def test_in_app_sender_writes_notifications(async_session_maker):
    async def _run():
        channel = make_channel(ChannelType.IN_APP)
        store = SqlInAppNotificationStore(async_session_maker)
        alert = make_alert(severity=AlertSeverity.HIGH, team_id="team-1")

        outcome = await InAppSender(store).send(_request(channel, alert=alert, recipients=["u1", "u2"]))

        assert outcome.attempted == 2
        async with async_session_maker() as session:
            rows = (await session.scalars(select(InAppNotification).order_by(InAppNotification.recipient_id))).all()
        assert [row.recipient_id for row in rows] == ["u1", "u2"]
        assert rows[0].type == "system_alert_high"
        assert rows[0].priority == "high"
        assert rows[0].action_href == "/alerts/alert-1"
        assert rows[0].details["delivery_id"] == "delivery-1"

        with pytest.raises(ConfigurationError):
            await InAppSender(None).send(_request(channel, recipients=["u1"]))

    anyio.run(_run)


def test_build_senders_covers_every_channel_type():
    senders = build_senders(DeliveryAdapters())

    assert set(senders) == set(ChannelType)
    assert all(sender.channel_type == channel_type for channel_type, sender in senders.items())


class FailingInAppStore:
    def __init__(self) -> None:
        self.calls = 0

    async def create(self, **kwargs):
        self.calls += 1
        raise RuntimeError("store unavailable")


def test_in_app_sender_reports_failed_recipients_without_failing_channel():
    async def _run():
        channel = make_channel(ChannelType.IN_APP)
        store = FailingInAppStore()

        outcome = await InAppSender(store).send(_request(channel, recipients=["u1", "u2"]))

        assert store.calls == 2
        assert outcome.attempted == 2
        assert outcome.failed == 2

        with pytest.raises(ChannelDeliveryError):
            await InAppSender(store).send(_request(channel, recipients=[]))

    anyio.run(_run)
