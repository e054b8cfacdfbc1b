from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from alert_engine.domain.alerts.schemas import AlertSeverity
from alert_engine.domain.errors import ConfigurationError


class ChannelType(str, Enum):
    EMAIL = "email"
    PUSH = "push"
    WEBHOOK = "webhook"
    SLACK = "slack"
    SMS = "sms"
    IN_APP = "in_app"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    RETRYING = "retrying"


class NotificationChannel(BaseModel):
    id: str
    name: str = ""
    channel_type: ChannelType
    enabled: bool = True
    configuration: dict[str, Any] = Field(default_factory=dict)
    max_notifications_per_hour: int | None = None
    max_notifications_per_day: int | None = None
    severity_filter: list[AlertSeverity] = Field(default_factory=list)
    team_id: str | None = None
    model_config = ConfigDict(from_attributes=True)

    @field_validator("configuration", mode="before")
    @classmethod
    def default_configuration(cls, value: Any) -> Any:
        return value or {}

    @field_validator("severity_filter", mode="before")
    @classmethod
    def default_severity_filter(cls, value: Any) -> Any:
        return value or []

    def accepts(self, severity: AlertSeverity) -> bool:
        return not self.severity_filter or severity in self.severity_filter


class EmailChannelConfig(BaseModel):
    recipients: list[str] = Field(min_length=1)
    subject_template: str | None = None
    body_template: str | None = None
    template_name: str | None = None


class WebhookAuth(BaseModel):
    type: Literal["bearer", "basic", "api_key"]
    token: str | None = None
    username: str | None = None
    password: str | None = None
    api_key: str | None = Field(None, validation_alias=AliasChoices("api_key", "api_key_value"))
    header_name: str = Field("X-API-Key", validation_alias=AliasChoices("header_name", "api_key_header"))


class WebhookChannelConfig(BaseModel):
    url: str
    method: Literal["POST", "PUT"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    auth: WebhookAuth | None = Field(None, validation_alias=AliasChoices("auth", "authentication"))
    payload_template: dict[str, Any] | None = None


class SlackChannelConfig(BaseModel):
    webhook_url: str
    channel: str | None = None
    username: str | None = None
    icon_emoji: str | None = None
    message_template: str | None = None


class SmsChannelConfig(BaseModel):
    phone_numbers: list[str] = Field(min_length=1)
    provider: str = "twilio"
    message_template: str | None = None


class PushChannelConfig(BaseModel):
    user_ids: list[str] = Field(default_factory=list)
    title_template: str | None = None
    body_template: str | None = None


class InAppChannelConfig(BaseModel):
    user_ids: list[str] = Field(default_factory=list)


ChannelConfig = Union[
    EmailChannelConfig,
    WebhookChannelConfig,
    SlackChannelConfig,
    SmsChannelConfig,
    PushChannelConfig,
    InAppChannelConfig,
]

CHANNEL_CONFIG_MODELS: dict[ChannelType, type[BaseModel]] = {
    ChannelType.EMAIL: EmailChannelConfig,
    ChannelType.WEBHOOK: WebhookChannelConfig,
    ChannelType.SLACK: SlackChannelConfig,
    ChannelType.SMS: SmsChannelConfig,
    ChannelType.PUSH: PushChannelConfig,
    ChannelType.IN_APP: InAppChannelConfig,
}


def parse_channel_configuration(channel: NotificationChannel) -> ChannelConfig:
    model = CHANNEL_CONFIG_MODELS[channel.channel_type]
    try:
        return model.model_validate(channel.configuration)
    except ValidationError as exc:
        fields = sorted({".".join(str(part) for part in error["loc"]) for error in exc.errors()})
        raise ConfigurationError(
            f"Invalid {channel.channel_type.value} configuration for channel {channel.id}",
            errors=[{"field": name} for name in fields],
        ) from exc


@dataclass
class DeliveryResult:
    success: bool
    channel_id: str
    channel_type: ChannelType
    delivery_id: str | None = None
    external_message_id: str | None = None
    error: str | None = None
    delivery_time_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "channel_id": self.channel_id,
            "channel_type": self.channel_type.value,
            "delivery_id": self.delivery_id,
            "external_message_id": self.external_message_id,
            "error": self.error,
            "delivery_time_ms": self.delivery_time_ms,
        }


@dataclass
class DeliveryBatch:
    alert_id: str
    results: list[DeliveryResult] = field(default_factory=list)
    total_time_ms: int = 0

    @property
    def total_channels(self) -> int:
        return len(self.results)

    @property
    def successful(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failed(self) -> int:
        return self.total_channels - self.successful

    @property
    def any_success(self) -> bool:
        return self.successful > 0

    def summary(self) -> dict[str, Any]:
        return {
            "total_channels": self.total_channels,
            "successful": self.successful,
            "failed": self.failed,
            "delivery_time_ms": self.total_time_ms,
            "results": [result.to_dict() for result in self.results],
        }
