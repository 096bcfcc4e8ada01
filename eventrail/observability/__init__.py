"""Tracing and metrics hooks consumed by the event bus."""

from eventrail.observability.metrics import InMemoryMetrics, MetricsSink, NoopMetrics
from eventrail.observability.tracing import NoopTracer, OpenTelemetryTracer, Span, Tracer

__all__ = [
    "InMemoryMetrics",
    "MetricsSink",
    "NoopMetrics",
    "NoopTracer",
    "OpenTelemetryTracer",
    "Span",
    "Tracer",
]
