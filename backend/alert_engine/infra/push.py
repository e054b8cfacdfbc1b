from __future__ import annotations

import logging
from typing import Any

import httpx

from alert_engine.infra.communication import CommunicationResult
from alert_engine.settings import settings

logger = logging.getLogger(__name__)


class NoopPushAdapter:
    async def send_push(self, *, user_id: str, payload: dict[str, Any]) -> CommunicationResult:  # noqa: D401
        del payload
        logger.info("push_send_skipped", extra={"extra": {"mode": "noop", "user_id": user_id}})
        return CommunicationResult(status="failed", error_code="push_disabled")


class GatewayPushAdapter:
    """Posts push payloads to an HTTP push gateway that fans out to devices."""

    def __init__(self, http_client: httpx.AsyncClient | None = None) -> None:
        self.http_client = http_client

    async def send_push(self, *, user_id: str, payload: dict[str, Any]) -> CommunicationResult:
        if settings.push_mode != "gateway" or not settings.push_gateway_url:
            logger.info("push_send_skipped", extra={"extra": {"mode": settings.push_mode}})
            return CommunicationResult(status="failed", error_code="push_disabled")
        headers = {}
        if settings.push_gateway_token:
            headers["Authorization"] = f"Bearer {settings.push_gateway_token}"
        client = self.http_client or httpx.AsyncClient()
        close_client = self.http_client is None
        try:
            response = await client.post(
                settings.push_gateway_url,
                json={"user_id": user_id, **payload},
                headers=headers,
                timeout=settings.push_timeout_seconds,
            )
        except httpx.HTTPError as exc:
            logger.warning("push_request_failed", extra={"extra": {"reason": type(exc).__name__}})
            return CommunicationResult(status="failed", error_code="push_request_failed")
        finally:
            if close_client:
                await client.aclose()

        if response.status_code >= 400:
            logger.warning("push_request_error", extra={"extra": {"status_code": response.status_code}})
            return CommunicationResult(status="failed", error_code=f"push_status_{response.status_code}")
        message_id = None
        try:
            body = response.json()
            if isinstance(body, dict):
                message_id = body.get("id") or body.get("message_id")
        except ValueError:
            logger.debug("push_response_not_json")
        return CommunicationResult(status="sent", provider_msg_id=message_id)


def resolve_push_adapter(app_settings) -> GatewayPushAdapter | NoopPushAdapter:
    if app_settings.push_mode != "gateway" or getattr(app_settings, "testing", False):
        return NoopPushAdapter()
    return GatewayPushAdapter()
