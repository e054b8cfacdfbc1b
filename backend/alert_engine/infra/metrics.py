import logging

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


class Metrics:
    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        if not enabled:
            self.deliveries = None
            self.delivery_latency = None
            self.rate_limited = None
            self.escalations = None
            self.active_escalations = None
            self.recovery_scans = None
            self.email_adapter_outcomes = None
            self.circuit_state = None
            return

        self.deliveries = Counter(
            "alert_deliveries_total",
            "Channel delivery attempts by channel type and status.",
            ["channel_type", "status"],
            registry=self.registry,
        )
        self.delivery_latency = Histogram(
            "alert_delivery_latency_seconds",
            "Per-channel delivery latency in seconds.",
            ["channel_type"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
            registry=self.registry,
        )
        self.rate_limited = Counter(
            "alert_rate_limited_total",
            "Deliveries skipped because a channel hit its rate limit.",
            ["channel_type"],
            registry=self.registry,
        )
        self.escalations = Counter(
            "alert_escalations_total",
            "Escalation steps by severity and outcome.",
            ["severity", "outcome"],
            registry=self.registry,
        )
        self.active_escalations = Gauge(
            "alert_active_escalations",
            "Escalation contexts currently tracked in memory.",
            registry=self.registry,
        )
        self.recovery_scans = Counter(
            "alert_recovery_scan_total",
            "Recovery scans of overdue escalations by status.",
            ["status"],
            registry=self.registry,
        )
        self.email_adapter_outcomes = Counter(
            "email_adapter_outcomes_total",
            "Email adapter send outcomes.",
            ["status"],
            registry=self.registry,
        )
        self.circuit_state = Gauge(
            "circuit_breaker_state",
            "Circuit breaker state (0=closed, 1=open, 2=half_open).",
            ["circuit"],
            registry=self.registry,
        )

    def record_delivery(self, channel_type: str, status: str, duration_seconds: float | None = None) -> None:
        if not self.enabled or self.deliveries is None:
            return
        self.deliveries.labels(channel_type=channel_type, status=status).inc()
        if duration_seconds is not None and self.delivery_latency is not None:
            self.delivery_latency.labels(channel_type=channel_type).observe(max(duration_seconds, 0.0))

    def record_rate_limited(self, channel_type: str) -> None:
        if not self.enabled or self.rate_limited is None:
            return
        self.rate_limited.labels(channel_type=channel_type).inc()

    def record_escalation(self, severity: str, outcome: str) -> None:
        if not self.enabled or self.escalations is None:
            return
        self.escalations.labels(severity=severity, outcome=outcome).inc()

    def set_active_escalations(self, count: int) -> None:
        if not self.enabled or self.active_escalations is None:
            return
        self.active_escalations.set(count)

    def record_recovery_scan(self, status: str) -> None:
        if not self.enabled or self.recovery_scans is None:
            return
        self.recovery_scans.labels(status=status).inc()

    def record_email_adapter(self, status: str) -> None:
        if not self.enabled or self.email_adapter_outcomes is None:
            return
        self.email_adapter_outcomes.labels(status=status).inc()

    def record_circuit_state(self, circuit: str, state: str) -> None:
        if not self.enabled or self.circuit_state is None:
            return
        mapping = {"closed": 0, "open": 1, "half_open": 2}
        self.circuit_state.labels(circuit=circuit).set(mapping.get(state, 0))

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", "text/plain; version=0.0.4"
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", "text/plain; version=0.0.4"


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    metrics._configure(enabled)
    return metrics
