from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass
from typing import Any, Mapping

from alert_engine.domain.alerts.schemas import AlertSeverity
from alert_engine.domain.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SeverityConfig:
    severity: AlertSeverity
    priority: int
    default_escalation_delay: int
    max_escalation_level: int
    auto_acknowledge_timeout: int | None = None
    auto_resolve_timeout: int | None = None
    requires_immediate_attention: bool = False
    allowed_business_hours_only: bool = False
    weekend_escalation: bool = True

    def __post_init__(self) -> None:
        if self.max_escalation_level < 1:
            raise ConfigurationError(f"max_escalation_level must be positive for {self.severity.value}")
        if self.default_escalation_delay < 0:
            raise ConfigurationError(f"default_escalation_delay must not be negative for {self.severity.value}")


DEFAULT_SEVERITY_CONFIGS: tuple[SeverityConfig, ...] = (
    SeverityConfig(
        severity=AlertSeverity.CRITICAL,
        priority=1,
        default_escalation_delay=5,
        max_escalation_level=5,
        auto_acknowledge_timeout=30,
        requires_immediate_attention=True,
        allowed_business_hours_only=False,
        weekend_escalation=True,
    ),
    SeverityConfig(
        severity=AlertSeverity.HIGH,
        priority=2,
        default_escalation_delay=15,
        max_escalation_level=4,
        auto_acknowledge_timeout=60,
        requires_immediate_attention=True,
        allowed_business_hours_only=False,
        weekend_escalation=True,
    ),
    SeverityConfig(
        severity=AlertSeverity.MEDIUM,
        priority=3,
        default_escalation_delay=30,
        max_escalation_level=3,
        auto_acknowledge_timeout=120,
        auto_resolve_timeout=480,
        allowed_business_hours_only=True,
        weekend_escalation=False,
    ),
    SeverityConfig(
        severity=AlertSeverity.LOW,
        priority=4,
        default_escalation_delay=60,
        max_escalation_level=2,
        auto_acknowledge_timeout=240,
        auto_resolve_timeout=1440,
        allowed_business_hours_only=True,
        weekend_escalation=False,
    ),
    SeverityConfig(
        severity=AlertSeverity.INFO,
        priority=5,
        default_escalation_delay=120,
        max_escalation_level=1,
        auto_resolve_timeout=2880,
        allowed_business_hours_only=True,
        weekend_escalation=False,
    ),
)

_PATCHABLE_FIELDS = frozenset(field.name for field in dataclasses.fields(SeverityConfig)) - {"severity"}
# None clears these; for every other field None means "leave unchanged".
_CLEARABLE_FIELDS = frozenset({"auto_acknowledge_timeout", "auto_resolve_timeout"})


class SeverityPolicyTable:
    def __init__(self, configs: tuple[SeverityConfig, ...] = DEFAULT_SEVERITY_CONFIGS) -> None:
        self._configs: Mapping[AlertSeverity, SeverityConfig] = {config.severity: config for config in configs}
        self._lock = threading.Lock()

    def get(self, severity: AlertSeverity | str) -> SeverityConfig:
        try:
            key = AlertSeverity(severity)
            return self._configs[key]
        except (ValueError, KeyError) as exc:
            raise ConfigurationError(f"No severity configuration for {severity!r}") from exc

    def all(self) -> list[SeverityConfig]:
        return sorted(self._configs.values(), key=lambda config: config.priority)

    def update(self, severity: AlertSeverity | str, **changes: Any) -> SeverityConfig:
        unknown = set(changes) - _PATCHABLE_FIELDS
        if unknown:
            raise ConfigurationError(f"Unknown severity config fields: {', '.join(sorted(unknown))}")
        with self._lock:
            current = self.get(severity)
            provided = {
                key: value for key, value in changes.items() if value is not None or key in _CLEARABLE_FIELDS
            }
            updated = dataclasses.replace(current, **provided)
            # Swap the whole mapping so readers never see a partially applied patch.
            self._configs = {**self._configs, updated.severity: updated}
        logger.info(
            "severity_config_updated",
            extra={"extra": {"severity": updated.severity.value, "fields": sorted(provided)}},
        )
        return updated
