"""Render the registry in the Prometheus text exposition format."""
from __future__ import annotations

import logging

from .base import CounterMetric
from .registry import MetricsRegistry

logger = logging.getLogger(__name__)


def _format_labels(names: tuple[str, ...], values: tuple[str, ...]) -> str:
    if not values:
        return ""
    pairs = ",".join(f'{name}="{value}"' for name, value in zip(names, values))
    return "{" + pairs + "}"


class PrometheusExporter:
    """Serialise counters as ``counter`` and distributions as ``summary`` families."""

    content_type = "text/plain; version=0.0.4; charset=utf-8"

    def __init__(self, registry: MetricsRegistry) -> None:
        self.registry = registry

    def build_payload(self) -> str:
        lines: list[str] = []
        for metric in sorted(self.registry.metrics(), key=lambda item: item.name):
            is_counter = isinstance(metric, CounterMetric)
            lines.append(f"# HELP {metric.name} {metric.description}")
            lines.append(f"# TYPE {metric.name} {'counter' if is_counter else 'summary'}")
            for labels, values in sorted(metric.snapshot().items()):
                label_text = _format_labels(metric.label_names, labels)
                if is_counter:
                    lines.append(f"{metric.name}{label_text} {values['value']}")
                else:
                    lines.append(f"{metric.name}_count{label_text} {values['count']}")
                    lines.append(f"{metric.name}_sum{label_text} {values['sum']}")
        payload = "\n".join(lines) + "\n"
        logger.debug("Rendered %d metric lines", len(lines))
        return payload
