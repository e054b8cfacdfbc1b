from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import AliasChoices, BaseModel, Field

from alert_engine.domain.channels.schemas import ChannelType

PRIMARY_ROLES = frozenset({"owner", "admin"})


@dataclass(frozen=True)
class TimeWindow:
    start: str | None = None
    end: str | None = None


@dataclass(frozen=True)
class BusinessHours:
    timezone: str = "UTC"
    weekdays: TimeWindow = field(default_factory=lambda: TimeWindow("09:00", "17:00"))
    weekends_enabled: bool = False
    weekends: TimeWindow = field(default_factory=TimeWindow)


@dataclass(frozen=True)
class TeamMember:
    user_id: str
    role: str
    email: str | None = None
    phone: str | None = None
    full_name: str | None = None

    @property
    def is_primary(self) -> bool:
        return self.role in PRIMARY_ROLES


@dataclass(frozen=True)
class EscalationStep:
    level: int
    contacts: tuple[str, ...] = ()
    delay_minutes: int = 0
    channel_types: tuple[ChannelType, ...] = ()


@dataclass(frozen=True)
class TeamAssignment:
    team_id: str
    team_name: str | None
    primary_contacts: tuple[str, ...]
    escalation_contacts: tuple[str, ...]
    business_hours: BusinessHours
    escalation_chain: tuple[EscalationStep, ...] = ()
    members: tuple[TeamMember, ...] = ()

    def step_for_level(self, level: int) -> EscalationStep | None:
        for step in self.escalation_chain:
            if step.level == level:
                return step
        return None

    def member(self, user_id: str) -> TeamMember | None:
        for member in self.members:
            if member.user_id == user_id:
                return member
        return None


@dataclass(frozen=True)
class TeamSnapshot:
    """Team-level data cached by the resolver; chains are derived per severity from it."""

    team_id: str
    team_name: str | None
    members: tuple[TeamMember, ...]
    business_hours: BusinessHours
    escalation_chain: tuple[EscalationStep, ...] = ()
    primary_contacts: tuple[str, ...] = ()
    escalation_contacts: tuple[str, ...] = ()


class TimeWindowConfig(BaseModel):
    start: str | None = None
    end: str | None = None


class WeekendConfig(TimeWindowConfig):
    enabled: bool = False


class BusinessHoursConfig(BaseModel):
    timezone: str = "UTC"
    weekdays: TimeWindowConfig = Field(default_factory=lambda: TimeWindowConfig(start="09:00", end="17:00"))
    weekends: WeekendConfig = Field(default_factory=WeekendConfig)

    def to_business_hours(self) -> BusinessHours:
        return BusinessHours(
            timezone=self.timezone,
            weekdays=TimeWindow(self.weekdays.start, self.weekdays.end),
            weekends_enabled=self.weekends.enabled,
            weekends=TimeWindow(self.weekends.start, self.weekends.end),
        )


class EscalationStepConfig(BaseModel):
    level: int = Field(ge=1)
    contacts: list[str] = Field(default_factory=list)
    delay_minutes: int = Field(0, ge=0, validation_alias=AliasChoices("delay_minutes", "delayMinutes"))
    channel_types: list[ChannelType] = Field(
        default_factory=list, validation_alias=AliasChoices("channel_types", "channels")
    )

    def to_step(self) -> EscalationStep:
        return EscalationStep(
            level=self.level,
            contacts=tuple(self.contacts),
            delay_minutes=self.delay_minutes,
            channel_types=tuple(self.channel_types),
        )


class TeamEscalationOverride(BaseModel):
    business_hours: BusinessHoursConfig | None = None
    escalation_chain: list[EscalationStepConfig] = Field(default_factory=list)
    primary_contacts: list[str] = Field(default_factory=list)
    escalation_contacts: list[str] = Field(default_factory=list)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "TeamEscalationOverride":
        return cls.model_validate({key: value for key, value in row.items() if value is not None})
