"""Prometheus metrics for webhook delivery."""

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

# Dedicated registry so repeated app construction never double-registers
delivery_registry = CollectorRegistry()

notifications_total = Counter(
    "modelhook_notifications_total",
    "Domain changes received for fan-out",
    ["target_class", "event"],
    registry=delivery_registry,
)

notifications_suppressed_total = Counter(
    "modelhook_notifications_suppressed_total",
    "Domain changes not fanned out",
    ["reason"],
    registry=delivery_registry,
)

deliveries_total = Counter(
    "modelhook_deliveries_total",
    "Webhook delivery attempts by outcome",
    ["outcome"],
    registry=delivery_registry,
)

delivery_duration_seconds = Histogram(
    "modelhook_delivery_duration_seconds",
    "Time spent on a single webhook POST",
    registry=delivery_registry,
)

deliveries_in_flight = Gauge(
    "modelhook_deliveries_in_flight",
    "Webhook deliveries currently running",
    registry=delivery_registry,
)


class MetricsCollector:
    """Collector for delivery metrics."""

    def record_notification(self, target_class: str, event: str) -> None:
        notifications_total.labels(target_class=target_class, event=event).inc()

    def record_suppressed(self, reason: str) -> None:
        notifications_suppressed_total.labels(reason=reason).inc()

    def record_delivery(self, outcome: str, duration: float) -> None:
        deliveries_total.labels(outcome=outcome).inc()
        delivery_duration_seconds.observe(duration)

    def delivery_started(self) -> None:
        deliveries_in_flight.inc()

    def delivery_finished(self) -> None:
        deliveries_in_flight.dec()

    def get_metrics_text(self) -> str:
        """Get metrics in Prometheus text format."""
        return generate_latest(delivery_registry).decode("utf-8")


metrics = MetricsCollector()
