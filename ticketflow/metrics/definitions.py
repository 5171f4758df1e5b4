"""Metrics every Ticketflow process exposes."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class MetricDefinition:
    name: str
    metric_type: str
    description: str
    label_names: Tuple[str, ...] = ()


DEFAULT_METRIC_DEFINITIONS: Tuple[MetricDefinition, ...] = (
    MetricDefinition(
        name="ticket_operations_total",
        metric_type="counter",
        description="Ticket engine operations that completed successfully.",
        label_names=("operation",),
    ),
    MetricDefinition(
        name="ticket_operation_failures_total",
        metric_type="counter",
        description="Ticket engine operations rejected with a domain error.",
        label_names=("operation", "reason"),
    ),
    MetricDefinition(
        name="ticket_conflicts_total",
        metric_type="counter",
        description="Mutations rejected because the ticket version moved.",
    ),
    MetricDefinition(
        name="ticket_notification_failures_total",
        metric_type="counter",
        description="Notifications the notifier failed to deliver.",
    ),
    MetricDefinition(
        name="sla_compliance_duration_seconds",
        metric_type="distribution",
        description="Time spent computing SLA compliance reports.",
    ),
)
