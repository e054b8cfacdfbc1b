from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AlertSeverity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    SUPPRESSED = "suppressed"


TERMINAL_STATUSES = frozenset({AlertStatus.RESOLVED, AlertStatus.SUPPRESSED})
ESCALATABLE_STATUSES = frozenset({AlertStatus.ACTIVE, AlertStatus.ACKNOWLEDGED})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Alert(BaseModel):
    id: str
    severity: AlertSeverity
    status: AlertStatus = AlertStatus.ACTIVE
    team_id: str | None = None
    title: str
    description: str = ""
    metric_name: str | None = None
    metric_value: float | None = None
    threshold_value: float | None = None
    threshold_operator: str | None = None
    escalation_level: int = 0
    next_escalation_at: datetime | None = None
    last_escalated_at: datetime | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    model_config = ConfigDict(from_attributes=True)

    @field_validator("next_escalation_at", "last_escalated_at", "created_at")
    @classmethod
    def normalize_timestamps(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)

    @field_validator("context", mode="before")
    @classmethod
    def default_context(cls, value: Any) -> Any:
        return value or {}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class AlertStatusUpdate(BaseModel):
    status: AlertStatus
