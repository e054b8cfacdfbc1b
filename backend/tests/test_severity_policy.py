import pytest

from alert_engine.domain.alerts.schemas import AlertSeverity
from alert_engine.domain.errors import ConfigurationError
from alert_engine.domain.severity.policy import SeverityPolicyTable


def test_default_severity_table():
    policy = SeverityPolicyTable()

    critical = policy.get(AlertSeverity.CRITICAL)
    assert critical.default_escalation_delay == 5
    assert critical.max_escalation_level == 5
    assert critical.requires_immediate_attention is True
    assert critical.weekend_escalation is True

    medium = policy.get("medium")
    assert medium.allowed_business_hours_only is True
    assert medium.weekend_escalation is False

    assert [config.severity for config in policy.all()] == [
        AlertSeverity.CRITICAL,
        AlertSeverity.HIGH,
        AlertSeverity.MEDIUM,
        AlertSeverity.LOW,
        AlertSeverity.INFO,
    ]


def test_update_replaces_only_provided_fields():
    policy = SeverityPolicyTable()

    updated = policy.update("high", default_escalation_delay=10, max_escalation_level=None)

    assert updated.default_escalation_delay == 10
    assert updated.max_escalation_level == 4
    assert policy.get(AlertSeverity.HIGH) is updated
    assert policy.get(AlertSeverity.CRITICAL).default_escalation_delay == 5


def test_update_rejects_unknown_fields_and_invalid_values():
    policy = SeverityPolicyTable()

    with pytest.raises(ConfigurationError):
        policy.update("low", escalation_color="red")
    with pytest.raises(ConfigurationError):
        policy.update("low", max_escalation_level=0)

    assert policy.get("low").max_escalation_level == 2


def test_unknown_severity_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        SeverityPolicyTable().get("urgent")


def test_update_can_clear_auto_timeouts():
    policy = SeverityPolicyTable()

    updated = policy.update("medium", auto_acknowledge_timeout=None, auto_resolve_timeout=None)

    assert updated.auto_acknowledge_timeout is None
    assert updated.auto_resolve_timeout is None
    assert updated.default_escalation_delay == 30
    assert policy.get("low").auto_resolve_timeout == 1440
