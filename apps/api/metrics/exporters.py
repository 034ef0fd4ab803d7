"""Render registry contents in the Prometheus text exposition format."""
from __future__ import annotations

import logging

from .base import CounterMetric
from .registry import MetricsRegistry

logger = logging.getLogger(__name__)

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


def _label_text(label_names: tuple[str, ...], values: tuple[str, ...]) -> str:
    if not values:
        return ""
    pairs = [f'{name}="{value}"' for name, value in zip(label_names, values)]
    return "{" + ",".join(pairs) + "}"


def render_prometheus(registry: MetricsRegistry) -> str:
    lines: list[str] = []
    for metric in registry.metrics():
        metric_type = "counter" if isinstance(metric, CounterMetric) else "summary"
        lines.append(f"# HELP {metric.name} {metric.description}")
        lines.append(f"# TYPE {metric.name} {metric_type}")
        for labels, values in metric.snapshot().items():
            label_text = _label_text(metric.label_names, labels)
            if "value" in values:
                lines.append(f"{metric.name}{label_text} {values['value']}")
            else:
                lines.append(f"{metric.name}_count{label_text} {values['count']}")
                lines.append(f"{metric.name}_sum{label_text} {values['sum']}")
    payload = "\n".join(lines) + "\n"
    logger.debug("Rendered %d metric families", len(registry.metrics()))
    return payload
