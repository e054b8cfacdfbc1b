import dataclasses
from typing import Any

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, ConfigDict

from alert_engine.dependencies import get_services
from alert_engine.domain.alerts.schemas import Alert, AlertSeverity, AlertStatusUpdate
from alert_engine.domain.errors import AlertNotFoundError
from alert_engine.domain.severity.policy import SeverityConfig
from alert_engine.services import EngineServices

router = APIRouter(prefix="/v1")


class SeverityConfigPatch(BaseModel):
    priority: int | None = None
    default_escalation_delay: int | None = None
    max_escalation_level: int | None = None
    auto_acknowledge_timeout: int | None = None
    auto_resolve_timeout: int | None = None
    requires_immediate_attention: bool | None = None
    allowed_business_hours_only: bool | None = None
    weekend_escalation: bool | None = None
    model_config = ConfigDict(extra="forbid")


async def _load_alert(services: EngineServices, alert_id: str) -> Alert:
    alert = await services.alerts.get_alert(alert_id)
    if alert is None:
        raise AlertNotFoundError(f"Alert {alert_id} not found")
    return alert


@router.post("/alerts/{alert_id}/process", status_code=status.HTTP_202_ACCEPTED)
async def process_alert(alert_id: str, services: EngineServices = Depends(get_services)) -> dict[str, Any]:
    alert = await _load_alert(services, alert_id)
    batch = await services.orchestrator.process_alert(alert)
    context = services.orchestrator.get_escalation_status(alert_id)
    return {
        "alert_id": alert_id,
        "processed": batch is not None,
        "delivery": batch.summary() if batch is not None else None,
        "escalation": context.to_dict() if context else None,
    }


@router.post("/alerts/{alert_id}/deliver")
async def deliver_alert(alert_id: str, services: EngineServices = Depends(get_services)) -> dict[str, Any]:
    alert = await _load_alert(services, alert_id)
    batch = await services.orchestrator.deliver_alert(alert)
    return {"alert_id": alert_id, **batch.summary()}


@router.get("/alerts/{alert_id}/escalation")
async def get_escalation(alert_id: str, services: EngineServices = Depends(get_services)) -> dict[str, Any]:
    context = services.orchestrator.get_escalation_status(alert_id)
    return {"alert_id": alert_id, "active": context is not None, "escalation": context.to_dict() if context else None}


@router.delete("/alerts/{alert_id}/escalation", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_escalation(alert_id: str, services: EngineServices = Depends(get_services)) -> Response:
    await services.orchestrator.cancel_escalation(alert_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/alerts/{alert_id}/status")
async def update_alert_status(
    alert_id: str,
    payload: AlertStatusUpdate,
    services: EngineServices = Depends(get_services),
) -> dict[str, Any]:
    alert = await services.orchestrator.update_alert_status(alert_id, payload.status)
    return {
        "alert_id": alert.id,
        "status": alert.status.value,
        "escalation_active": services.orchestrator.get_escalation_status(alert_id) is not None,
    }


@router.post("/notifications/{delivery_id}/retry")
async def retry_notification(delivery_id: str, services: EngineServices = Depends(get_services)) -> dict[str, Any]:
    result = await services.orchestrator.retry_failed_notification(delivery_id)
    return result.to_dict()


@router.get("/channels/{channel_id}/stats")
async def channel_stats(
    channel_id: str,
    hours: int = Query(24, ge=1, le=24 * 30),
    services: EngineServices = Depends(get_services),
) -> dict[str, Any]:
    return await services.delivery.channel_statistics(channel_id, hours=hours)


@router.get("/escalations")
async def list_escalations(services: EngineServices = Depends(get_services)) -> dict[str, Any]:
    active = services.escalations.get_active_escalations()
    return {
        "statistics": services.escalations.get_statistics(),
        "escalations": [context.to_dict() for context in active.values()],
    }


@router.get("/orchestrator/status")
async def orchestrator_status(services: EngineServices = Depends(get_services)) -> dict[str, Any]:
    return services.orchestrator.get_status()


def _severity_payload(config: SeverityConfig) -> dict[str, Any]:
    return {**dataclasses.asdict(config), "severity": config.severity.value}


@router.get("/severity")
async def list_severity_configs(services: EngineServices = Depends(get_services)) -> list[dict[str, Any]]:
    return [_severity_payload(config) for config in services.policy.all()]


@router.patch("/severity/{severity}")
async def patch_severity_config(
    severity: AlertSeverity,
    payload: SeverityConfigPatch,
    services: EngineServices = Depends(get_services),
) -> dict[str, Any]:
    config = services.orchestrator.update_severity_config(severity, **payload.model_dump(exclude_unset=True))
    return _severity_payload(config)
