from __future__ import annotations

import html
import json
import re
from datetime import datetime
from typing import Any

from alert_engine.domain.alerts.schemas import Alert, AlertSeverity

SMS_MAX_LENGTH = 160
SMS_ELLIPSIS = "..."

SEVERITY_EMOJI = {
    AlertSeverity.CRITICAL: "\U0001f6a8",
    AlertSeverity.HIGH: "⚠️",
    AlertSeverity.MEDIUM: "⚡",
    AlertSeverity.LOW: "ℹ️",
    AlertSeverity.INFO: "\U0001f4e2",
}
DEFAULT_EMOJI = "\U0001f514"

SEVERITY_COLORS = {
    AlertSeverity.CRITICAL: "#dc2626",
    AlertSeverity.HIGH: "#ea580c",
    AlertSeverity.MEDIUM: "#d97706",
    AlertSeverity.LOW: "#2563eb",
    AlertSeverity.INFO: "#059669",
}
SLACK_COLORS = {
    AlertSeverity.CRITICAL: "danger",
    AlertSeverity.HIGH: "warning",
    AlertSeverity.MEDIUM: "#d97706",
    AlertSeverity.LOW: "good",
    AlertSeverity.INFO: "#2563eb",
}
DEFAULT_COLOR = "#6b7280"

PLACEHOLDER_RE = re.compile(r"\{\{\s*alert\.([a-z_]+)\s*\}\}")
PLACEHOLDER_FIELDS = frozenset(
    {
        "id",
        "title",
        "description",
        "severity",
        "status",
        "metric_name",
        "metric_value",
        "threshold_value",
        "threshold_operator",
        "created_at",
        "team_id",
    }
)


def _display(value: Any) -> str:
    if value is None:
        return ""
    if hasattr(value, "value"):
        return str(value.value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def render_template(template: str, alert: Alert) -> str:
    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in PLACEHOLDER_FIELDS:
            return match.group(0)
        return _display(getattr(alert, name))

    return PLACEHOLDER_RE.sub(_replace, template)


def render_json_template(template: Any, alert: Alert) -> Any:
    if isinstance(template, str):
        return render_template(template, alert)
    if isinstance(template, list):
        return [render_json_template(item, alert) for item in template]
    if isinstance(template, dict):
        return {key: render_json_template(value, alert) for key, value in template.items()}
    return template


def severity_emoji(severity: AlertSeverity) -> str:
    return SEVERITY_EMOJI.get(severity, DEFAULT_EMOJI)


def _threshold(alert: Alert) -> str:
    return " ".join(part for part in (alert.threshold_operator, _display(alert.threshold_value)) if part)


def format_timestamp(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S %Z").strip()


def format_subject(alert: Alert) -> str:
    return f"{severity_emoji(alert.severity)} {alert.title}"


def format_metric(alert: Alert) -> str | None:
    if not alert.metric_name or alert.metric_value is None:
        return None
    line = f"Metric: {alert.metric_name} = {_display(alert.metric_value)}"
    if alert.threshold_value is not None:
        line += f" (threshold: {_threshold(alert)})"
    return line


def format_body(alert: Alert) -> str:
    lines = [
        f"Alert: {alert.title}",
        f"Severity: {alert.severity.value.upper()}",
        f"Time: {format_timestamp(alert.created_at)}",
    ]
    if alert.description:
        lines += ["", f"Description: {alert.description}"]
    metric = format_metric(alert)
    if metric:
        lines += ["", metric]
    if alert.context:
        lines += ["", "Context:", json.dumps(alert.context, indent=2, sort_keys=True, default=str)]
    return "\n".join(lines)


def alert_link(alert: Alert, base_url: str | None) -> str | None:
    if not base_url:
        return None
    return f"{base_url.rstrip('/')}/alerts/{alert.id}"


def format_email_html(alert: Alert, body: str, *, generated_at: datetime, link: str | None = None) -> str:
    color = SEVERITY_COLORS.get(alert.severity, DEFAULT_COLOR)
    link_html = (
        f'<p><a href="{html.escape(link, quote=True)}" style="color: {color};">View alert</a></p>' if link else ""
    )
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f'<div style="background-color: {color}; color: white; padding: 20px; text-align: center;">'
        f'<h1 style="margin: 0; font-size: 24px;">{severity_emoji(alert.severity)} Alert Notification</h1>'
        "</div>"
        '<div style="padding: 20px; background-color: #f9f9f9;">'
        f'<h2 style="color: #333; margin-top: 0;">{html.escape(alert.title)}</h2>'
        '<div style="background-color: white; padding: 15px; border-radius: 5px; margin: 15px 0;">'
        f'<pre style="white-space: pre-wrap; font-family: Arial, sans-serif; margin: 0;">{html.escape(body)}</pre>'
        "</div>"
        f"{link_html}"
        '<div style="margin-top: 20px; padding-top: 20px; border-top: 1px solid #ddd; font-size: 12px; color: #666;">'
        f"<p>Alert ID: {html.escape(alert.id)}</p>"
        f"<p>Generated at: {format_timestamp(generated_at)}</p>"
        "</div>"
        "</div>"
        "</div>"
    )


def truncate_sms(text: str, limit: int = SMS_MAX_LENGTH) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - len(SMS_ELLIPSIS)] + SMS_ELLIPSIS


def format_sms(alert: Alert, template: str | None = None) -> str:
    if template:
        text = render_template(template, alert)
    else:
        text = "\n".join(
            [format_subject(alert), alert.description or "", f"Time: {format_timestamp(alert.created_at)}"]
        )
    return truncate_sms(text)


def slack_payload(
    alert: Alert,
    *,
    footer: str,
    text: str | None = None,
    channel: str | None = None,
    username: str | None = None,
    icon_emoji: str | None = None,
) -> dict[str, Any]:
    fields = [
        {"title": "Severity", "value": alert.severity.value.upper(), "short": True},
        {"title": "Time", "value": format_timestamp(alert.created_at), "short": True},
    ]
    if alert.metric_name and alert.metric_value is not None:
        fields.append({"title": "Metric", "value": f"{alert.metric_name}: {_display(alert.metric_value)}", "short": True})
    if alert.threshold_value is not None:
        fields.append({"title": "Threshold", "value": _threshold(alert), "short": True})
    payload: dict[str, Any] = {
        "text": text or format_subject(alert),
        "attachments": [
            {
                "color": SLACK_COLORS.get(alert.severity, DEFAULT_COLOR),
                "title": alert.title,
                "text": alert.description or "",
                "fields": fields,
                "footer": footer,
                "ts": int(alert.created_at.timestamp()),
            }
        ],
        "username": username or "Alert Engine",
        "icon_emoji": icon_emoji or ":warning:",
    }
    if channel:
        payload["channel"] = channel
    return payload


def webhook_payload(alert: Alert, *, delivery_id: str, channel_id: str, channel_name: str, sent_at: datetime) -> dict[str, Any]:
    return {
        "alert": {
            "id": alert.id,
            "title": alert.title,
            "description": alert.description,
            "severity": alert.severity.value,
            "status": alert.status.value,
            "metric_name": alert.metric_name,
            "metric_value": alert.metric_value,
            "threshold_value": alert.threshold_value,
            "threshold_operator": alert.threshold_operator,
            "created_at": alert.created_at.isoformat(),
            "team_id": alert.team_id,
            "context": alert.context,
        },
        "notification": {
            "id": delivery_id,
            "channel_id": channel_id,
            "channel_name": channel_name,
            "timestamp": sent_at.isoformat(),
        },
    }
