from dataclasses import dataclass
from typing import List


@dataclass
class EngineError(Exception):
    detail: str
    title: str = "Alert Engine Error"
    type: str = "https://example.com/problems/engine-error"
    status_code: int = 400
    errors: List[dict] | None = None

    def __str__(self) -> str:
        return self.detail


@dataclass
class ConfigurationError(EngineError):
    title: str = "Configuration Error"
    type: str = "https://example.com/problems/configuration-error"
    status_code: int = 422


@dataclass
class ChannelDeliveryError(EngineError):
    title: str = "Channel Delivery Failed"
    type: str = "https://example.com/problems/delivery-error"
    status_code: int = 502


@dataclass
class AlertNotFoundError(EngineError):
    title: str = "Alert Not Found"
    type: str = "https://example.com/problems/not-found"
    status_code: int = 404


@dataclass
class NotificationNotFoundError(EngineError):
    title: str = "Notification Not Found"
    type: str = "https://example.com/problems/not-found"
    status_code: int = 404


@dataclass
class RetryLimitExceededError(EngineError):
    detail: str = "Maximum retry attempts exceeded"
    title: str = "Retry Limit Exceeded"
    type: str = "https://example.com/problems/retry-limit"
    status_code: int = 409
