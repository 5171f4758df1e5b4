import pytest

from ticketflow.metrics import DEFAULT_METRIC_DEFINITIONS, MetricsRegistry, PrometheusExporter, register_default_metrics


def test_registry_returns_same_metric_instance():
    registry = MetricsRegistry()
    counter = registry.counter("ticket_conflicts_total")
    counter.inc()
    assert registry.counter("ticket_conflicts_total") is counter
    assert counter.value() == 1

    with pytest.raises(TypeError):
        registry.distribution("ticket_conflicts_total")


def test_labels_are_required_when_declared():
    registry = MetricsRegistry()
    counter = registry.counter("ticket_operations_total", label_names=("operation",))
    with pytest.raises(ValueError):
        counter.inc()
    with pytest.raises(ValueError):
        counter.inc(-1, labels={"operation": "close"})


def test_prometheus_payload():
    registry = register_default_metrics(MetricsRegistry())
    registry.counter("ticket_operations_total").inc(labels={"operation": "close"})
    with registry.time_distribution("sla_compliance_duration_seconds"):
        pass

    payload = PrometheusExporter(registry).build_payload()

    assert "# TYPE ticket_operations_total counter" in payload
    assert 'ticket_operations_total{operation="close"} 1.0' in payload
    assert "sla_compliance_duration_seconds_count 1.0" in payload


def test_reset_keeps_registrations():
    registry = register_default_metrics(MetricsRegistry())
    registry.counter("ticket_conflicts_total").inc(3)
    registry.reset()
    assert registry.counter("ticket_conflicts_total").value() == 0
    assert len(registry.metrics()) == len(DEFAULT_METRIC_DEFINITIONS)
