from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from alert_engine.domain.alerts.schemas import Alert
from alert_engine.domain.severity.policy import SeverityConfig
from alert_engine.domain.teams.schemas import TeamAssignment

IMMEDIATE_ESCALATION = "immediate_escalation"
NO_CHANNELS = "no_channels"


@dataclass(frozen=True)
class EscalationHistoryEntry:
    level: int
    triggered_at: datetime
    contacts: tuple[str, ...]
    channel_ids: tuple[str, ...]
    success: bool
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "triggered_at": self.triggered_at.isoformat(),
            "contacts": list(self.contacts),
            "channel_ids": list(self.channel_ids),
            "success": self.success,
            "reason": self.reason,
        }


@dataclass
class EscalationContext:
    """In-memory state of one alert's escalation; owned by the escalation registry."""

    alert: Alert
    severity_config: SeverityConfig
    team_assignment: TeamAssignment | None
    max_level: int
    current_level: int = 0
    is_business_hours: bool = True
    is_weekend: bool = False
    next_escalation_at: datetime | None = None
    escalation_history: list[EscalationHistoryEntry] = field(default_factory=list)
    cancelled: bool = False

    @property
    def alert_id(self) -> str:
        return self.alert.id

    @property
    def at_max_level(self) -> bool:
        return self.current_level >= self.max_level

    def to_dict(self) -> dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "severity": self.alert.severity.value,
            "team_id": self.team_assignment.team_id if self.team_assignment else None,
            "current_level": self.current_level,
            "max_level": self.max_level,
            "is_business_hours": self.is_business_hours,
            "is_weekend": self.is_weekend,
            "next_escalation_at": self.next_escalation_at.isoformat() if self.next_escalation_at else None,
            "escalation_history": [entry.to_dict() for entry in self.escalation_history],
        }
