from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable

from alert_engine.domain.alerts.schemas import Alert, AlertSeverity, AlertStatus, utcnow
from alert_engine.domain.alerts.store import AlertStore
from alert_engine.domain.channels.schemas import DeliveryBatch, DeliveryResult
from alert_engine.domain.channels.service import DeliveryEngine
from alert_engine.domain.errors import AlertNotFoundError
from alert_engine.domain.escalation.context import EscalationContext
from alert_engine.domain.escalation.service import EscalationManager
from alert_engine.domain.severity.policy import SeverityConfig
from alert_engine.infra.logging import clear_log_context, update_log_context
from alert_engine.infra.metrics import metrics
from alert_engine.shared.locks import KeyedLock

logger = logging.getLogger(__name__)


class AlertNotificationOrchestrator:
    """Public surface of the engine.

    `process_alert` is the only place that swallows a whole alert's failure:
    everything below it either returns a result carrying the error or raises to
    its caller. A failed baseline pass is logged and escalation still starts.
    """

    def __init__(
        self,
        *,
        alerts: AlertStore,
        delivery: DeliveryEngine,
        escalations: EscalationManager,
        recovery_interval_seconds: float = 60.0,
        recovery_batch_size: int = 500,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.alerts = alerts
        self.delivery = delivery
        self.escalations = escalations
        self.recovery_interval_seconds = recovery_interval_seconds
        self.recovery_batch_size = recovery_batch_size
        self.clock = clock
        self._locks = KeyedLock()
        self._recovery_task: asyncio.Task | None = None
        self._last_recovery_at: datetime | None = None
        self._last_recovery_resumed = 0

    @property
    def running(self) -> bool:
        return self._recovery_task is not None and not self._recovery_task.done()

    async def process_alert(self, alert: Alert) -> DeliveryBatch | None:
        update_log_context(alert_id=alert.id)
        try:
            async with self._locks.hold(alert.id):
                if self.escalations.is_tracked(alert.id):
                    logger.info("alert_already_processing", extra={"extra": {"alert_id": alert.id}})
                    return None
                batch = await self._deliver_baseline(alert)
                await self.escalations.process_alert_escalation(alert)
                await self._record_batch(alert, batch)
                logger.info(
                    "alert_processed",
                    extra={
                        "extra": {
                            "alert_id": alert.id,
                            "severity": alert.severity.value,
                            "successful": batch.successful,
                            "total_channels": batch.total_channels,
                        }
                    },
                )
                return batch
        except Exception:  # noqa: BLE001
            logger.exception("alert_processing_failed", extra={"extra": {"alert_id": alert.id}})
            return None
        finally:
            clear_log_context()

    async def process_alert_by_id(self, alert_id: str) -> DeliveryBatch | None:
        alert = await self.alerts.get_alert(alert_id)
        if alert is None:
            raise AlertNotFoundError(f"Alert {alert_id} not found")
        return await self.process_alert(alert)

    async def deliver_alert(self, alert: Alert) -> DeliveryBatch:
        return await self.delivery.deliver_alert(alert)

    async def cancel_escalation(self, alert_id: str) -> bool:
        return await self.escalations.cancel_escalation(alert_id)

    def get_escalation_status(self, alert_id: str) -> EscalationContext | None:
        return self.escalations.get_escalation_status(alert_id)

    async def retry_failed_notification(self, delivery_id: str) -> DeliveryResult:
        return await self.delivery.retry_failed_notification(delivery_id)

    async def update_alert_status(self, alert_id: str, status: AlertStatus, *, actor: str = "alert_engine") -> Alert:
        alert = await self.alerts.set_status(alert_id, status)
        if alert is None:
            raise AlertNotFoundError(f"Alert {alert_id} not found")
        if alert.is_terminal:
            await self.escalations.cancel_escalation(alert_id)
        try:
            await self.alerts.add_history(alert_id, "status_changed", {"status": status.value}, actor=actor)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "alert_history_write_failed",
                extra={"extra": {"alert_id": alert_id, "action": "status_changed", "reason": type(exc).__name__}},
            )
        logger.info("alert_status_updated", extra={"extra": {"alert_id": alert_id, "status": status.value}})
        return alert

    def update_severity_config(self, severity: AlertSeverity | str, **changes: Any) -> SeverityConfig:
        return self.escalations.policy.update(severity, **changes)

    def invalidate_team(self, team_id: str | None = None) -> None:
        self.escalations.resolver.invalidate(team_id)

    # Lifecycle

    async def start(self) -> None:
        if self.running:
            return
        try:
            await self.run_recovery_scan()
        except Exception:  # noqa: BLE001
            logger.exception("recovery_scan_failed")
        self._recovery_task = asyncio.get_running_loop().create_task(
            self._recovery_loop(), name="alert-engine-recovery"
        )
        logger.info(
            "orchestrator_started",
            extra={"extra": {"recovery_interval_seconds": self.recovery_interval_seconds}},
        )

    async def stop(self) -> None:
        task, self._recovery_task = self._recovery_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self.escalations.shutdown()
        logger.info("orchestrator_stopped")

    async def run_recovery_scan(self, *, execute_due: bool = False) -> int:
        now = self.clock()
        try:
            due = await self.alerts.list_due_escalations(now, limit=self.recovery_batch_size)
        except Exception:
            metrics.record_recovery_scan("error")
            raise
        resumed = 0
        for alert in due:
            if self.escalations.is_tracked(alert.id):
                continue
            try:
                context = await self.escalations.resume_escalation(alert)
                if context is not None and execute_due:
                    await self.escalations.execute_escalation(alert.id)
            except Exception:  # noqa: BLE001
                logger.exception("escalation_resume_failed", extra={"extra": {"alert_id": alert.id}})
                continue
            if context is not None:
                resumed += 1
        self._last_recovery_at = now
        self._last_recovery_resumed = resumed
        metrics.record_recovery_scan("ok")
        logger.info("recovery_scan_completed", extra={"extra": {"due": len(due), "resumed": resumed}})
        return resumed

    async def _recovery_loop(self) -> None:
        while True:
            await asyncio.sleep(self.recovery_interval_seconds)
            try:
                await self.run_recovery_scan()
            except Exception:  # noqa: BLE001
                logger.exception("recovery_scan_failed")

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "recovery_interval_seconds": self.recovery_interval_seconds,
            "last_recovery_scan_at": self._last_recovery_at.isoformat() if self._last_recovery_at else None,
            "last_recovery_resumed": self._last_recovery_resumed,
            "escalations": self.escalations.get_statistics(),
            "cached_teams": self.escalations.resolver.cached_team_ids(),
        }

    async def _deliver_baseline(self, alert: Alert) -> DeliveryBatch:
        try:
            return await self.delivery.deliver_alert(alert)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "baseline_delivery_failed",
                extra={"extra": {"alert_id": alert.id, "reason": type(exc).__name__}},
            )
            return DeliveryBatch(alert_id=alert.id)

    async def _record_batch(self, alert: Alert, batch: DeliveryBatch) -> None:
        try:
            await self.alerts.add_history(alert.id, "notifications_sent", batch.summary())
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "alert_history_write_failed",
                extra={"extra": {"alert_id": alert.id, "action": "notifications_sent", "reason": type(exc).__name__}},
            )
