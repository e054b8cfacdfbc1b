from __future__ import annotations

from alert_engine.domain.alerts.schemas import Alert
from alert_engine.domain.escalation.context import EscalationContext
from alert_engine.domain.escalation.scheduler import TimerHandle
from alert_engine.shared.locks import KeyedLock


class EscalationRegistry:
    """Process-wide escalation state.

    Every mutation for an alert happens while holding `lock.hold(alert_id)`.
    A tracked alert has an armed context, a deferred business-hours re-entry, or both.
    """

    def __init__(self) -> None:
        self.contexts: dict[str, EscalationContext] = {}
        self.timers: dict[str, TimerHandle] = {}
        self.deferred: dict[str, Alert] = {}
        self.lock = KeyedLock()

    def is_tracked(self, alert_id: str) -> bool:
        return alert_id in self.contexts or alert_id in self.timers or alert_id in self.deferred

    def is_current(self, alert_id: str, handle: TimerHandle) -> bool:
        return self.timers.get(alert_id) is handle

    def arm(self, alert_id: str, handle: TimerHandle) -> None:
        previous = self.timers.get(alert_id)
        if previous is not None and previous is not handle:
            previous.cancel()
        self.timers[alert_id] = handle

    def disarm(self, alert_id: str) -> TimerHandle | None:
        handle = self.timers.pop(alert_id, None)
        if handle is not None:
            handle.cancel()
        return handle

    def forget(self, alert_id: str) -> bool:
        handle = self.disarm(alert_id)
        context = self.contexts.pop(alert_id, None)
        alert = self.deferred.pop(alert_id, None)
        return handle is not None or context is not None or alert is not None

    def clear(self) -> None:
        for handle in self.timers.values():
            handle.cancel()
        self.timers.clear()
        self.contexts.clear()
        self.deferred.clear()
