import logging
import random
import smtplib
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any

import anyio
import httpx

from alert_engine.infra.metrics import metrics
from alert_engine.settings import settings
from alert_engine.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError

logger = logging.getLogger(__name__)

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


class NoopEmailAdapter:
    async def send_email(
        self,
        recipient: str,
        subject: str,
        body: str,
        *,
        html_body: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> bool:  # noqa: D401
        logger.info("email_send_skipped", extra={"extra": {"recipient": recipient, "mode": "noop"}})
        metrics.record_email_adapter("skipped")
        return False


class EmailAdapter:
    def __init__(self, http_client: httpx.AsyncClient | None = None) -> None:
        self.http_client = http_client
        self._breaker = CircuitBreaker(
            name="email",
            failure_threshold=settings.email_circuit_failure_threshold,
            recovery_time=settings.email_circuit_recovery_seconds,
        )

    async def send_email(
        self,
        recipient: str,
        subject: str,
        body: str,
        *,
        html_body: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> bool:
        if settings.email_mode == "off" or not recipient:
            metrics.record_email_adapter("skipped")
            return False
        try:
            await self._breaker.call(
                self._send_email,
                to_email=recipient,
                subject=subject,
                body=body,
                html_body=html_body,
                headers=headers,
            )
        except CircuitBreakerOpenError:
            logger.warning("email_circuit_open", extra={"extra": {"recipient": recipient}})
            metrics.record_email_adapter("circuit_open")
            return False
        except Exception:
            metrics.record_email_adapter("error")
            raise
        metrics.record_email_adapter("sent")
        return True

    async def _send_email(
        self,
        to_email: str,
        subject: str,
        body: str,
        html_body: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        if settings.email_mode == "sendgrid":
            await self._send_via_sendgrid(to_email, subject, body, html_body=html_body, headers=headers)
            return
        if settings.email_mode == "smtp":
            await self._send_via_smtp(to_email, subject, body, html_body=html_body, headers=headers)
            return
        raise RuntimeError("unsupported_email_mode")

    async def _send_via_sendgrid(
        self,
        to_email: str,
        subject: str,
        body: str,
        *,
        html_body: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        api_key = settings.sendgrid_api_key
        if not api_key or not settings.email_from:
            raise RuntimeError("sendgrid_not_configured")
        content = [{"type": "text/plain", "value": body}]
        if html_body:
            content.append({"type": "text/html", "value": html_body})
        payload: dict[str, Any] = {
            "personalizations": [{"to": [{"email": to_email}]}],
            "from": {"email": settings.email_from},
            "subject": subject,
            "content": content,
        }
        if settings.email_from_name:
            payload["from"]["name"] = settings.email_from_name
        if headers:
            payload["headers"] = headers
        client = self.http_client or httpx.AsyncClient()
        close_client = self.http_client is None
        try:
            response = await _post_with_retry(client, headers={"Authorization": f"Bearer {api_key}"}, json=payload)
        finally:
            if close_client:
                await client.aclose()
        if response.status_code >= 400:
            raise RuntimeError(f"sendgrid_status_{response.status_code}")

    async def _send_via_smtp(
        self,
        to_email: str,
        subject: str,
        body: str,
        *,
        html_body: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        host = settings.smtp_host
        port = settings.smtp_port or 587
        from_email = settings.email_from
        if not host or not from_email:
            raise RuntimeError("smtp_not_configured")

        message = EmailMessage()
        message["From"] = formataddr((settings.email_from_name, from_email)) if settings.email_from_name else from_email
        message["To"] = to_email
        message["Subject"] = subject
        for header_name, header_value in (headers or {}).items():
            message[header_name] = header_value
        message.set_content(body)
        if html_body:
            message.add_alternative(html_body, subtype="html")

        def _send_blocking() -> None:
            smtp_cls = smtplib.SMTP if settings.smtp_use_tls else smtplib.SMTP_SSL
            with smtp_cls(host, port, timeout=settings.smtp_timeout_seconds) as smtp:
                if settings.smtp_use_tls:
                    smtp.starttls()
                if settings.smtp_username and settings.smtp_password:
                    smtp.login(settings.smtp_username, settings.smtp_password)
                smtp.send_message(message)

        await anyio.to_thread.run_sync(_send_blocking)


def resolve_email_adapter(app_settings) -> EmailAdapter | NoopEmailAdapter:
    if app_settings.email_mode == "off" or getattr(app_settings, "testing", False):
        return NoopEmailAdapter()
    return EmailAdapter()


async def _post_with_retry(
    client: httpx.AsyncClient,
    *,
    headers: dict[str, str],
    json: dict[str, Any],
) -> httpx.Response:
    max_attempts = max(1, settings.email_http_max_attempts)
    for attempt in range(1, max_attempts + 1):
        delay = min(
            settings.email_http_backoff_seconds * (2 ** (attempt - 1)),
            settings.email_http_backoff_max_seconds,
        )
        try:
            response = await client.post(SENDGRID_URL, headers=headers, json=json, timeout=settings.email_timeout_seconds)
        except (httpx.TimeoutException, httpx.ConnectError):
            if attempt >= max_attempts:
                raise
            await anyio.sleep(delay + delay * random.uniform(0.0, 0.3))
            continue
        # Retry on 429 or 5xx
        if (response.status_code == 429 or response.status_code >= 500) and attempt < max_attempts:
            await anyio.sleep(delay + delay * random.uniform(0.0, 0.3))
            continue
        return response
    raise RuntimeError("sendgrid_retry_exhausted")
