"""Metric definitions used across the application."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class MetricDefinition:
    """Describe a metric that should exist in the registry."""

    name: str
    metric_type: str
    description: str
    label_names: Tuple[str, ...] = ()


DEFAULT_METRIC_DEFINITIONS: Tuple[MetricDefinition, ...] = (
    MetricDefinition(
        name="helpdesk_tickets_created_total",
        metric_type="counter",
        description="Tickets submitted through the portal.",
    ),
    MetricDefinition(
        name="helpdesk_messages_total",
        metric_type="counter",
        description="Messages appended to tickets, split by public reply or internal note.",
        label_names=("kind",),
    ),
    MetricDefinition(
        name="helpdesk_ticket_number_collisions_total",
        metric_type="counter",
        description="Generated ticket numbers rejected because they already existed.",
    ),
    MetricDefinition(
        name="helpdesk_sink_failures_total",
        metric_type="counter",
        description="New-ticket summaries that could not be logged to the sheet.",
    ),
    MetricDefinition(
        name="helpdesk_export_duration_seconds",
        metric_type="distribution",
        description="Time spent rendering ticket CSV exports.",
    ),
)
