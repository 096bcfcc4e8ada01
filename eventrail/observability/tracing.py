"""Tracing hook for the event bus.

Spans are passed explicitly: callers hand the parent span to nested calls instead of
relying on an ambient context. NoopTracer is the default; OpenTelemetryTracer adapts
an opentelemetry-api tracer.
"""

from typing import Any, Mapping, Protocol

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

AttributeValue = str | bool | int | float


class Span(Protocol):
    def set_attribute(self, key: str, value: AttributeValue) -> None: ...

    def record_exception(self, exc: BaseException) -> None: ...

    def set_status(self, ok: bool, description: str | None = None) -> None: ...

    def end(self) -> None: ...


class Tracer(Protocol):
    def start_span(
        self,
        name: str,
        attributes: Mapping[str, Any] | None = None,
        parent: Span | None = None,
    ) -> Span: ...


class NoopSpan:
    def set_attribute(self, key: str, value: AttributeValue) -> None:
        pass

    def record_exception(self, exc: BaseException) -> None:
        pass

    def set_status(self, ok: bool, description: str | None = None) -> None:
        pass

    def end(self) -> None:
        pass


class NoopTracer:
    """Default tracer: records nothing."""

    def start_span(
        self,
        name: str,
        attributes: Mapping[str, Any] | None = None,
        parent: Span | None = None,
    ) -> Span:
        return NoopSpan()


def _clean_attributes(attributes: Mapping[str, Any] | None) -> dict[str, AttributeValue]:
    """OpenTelemetry rejects None and non-primitive attribute values."""
    cleaned: dict[str, AttributeValue] = {}
    for key, value in (attributes or {}).items():
        if value is None:
            continue
        cleaned[key] = value if isinstance(value, (str, bool, int, float)) else str(value)
    return cleaned


class OpenTelemetrySpan:
    def __init__(self, span: trace.Span) -> None:
        self.otel_span = span

    def set_attribute(self, key: str, value: AttributeValue) -> None:
        self.otel_span.set_attribute(key, value)

    def record_exception(self, exc: BaseException) -> None:
        self.otel_span.record_exception(exc)

    def set_status(self, ok: bool, description: str | None = None) -> None:
        if ok:
            self.otel_span.set_status(Status(StatusCode.OK))
        else:
            self.otel_span.set_status(Status(StatusCode.ERROR, description))

    def end(self) -> None:
        self.otel_span.end()


class OpenTelemetryTracer:
    """Adapts an opentelemetry-api tracer. Parent linkage uses an explicit context object."""

    def __init__(self, name: str = "event-bus", tracer: trace.Tracer | None = None) -> None:
        self._tracer = tracer or trace.get_tracer(name)

    def start_span(
        self,
        name: str,
        attributes: Mapping[str, Any] | None = None,
        parent: Span | None = None,
    ) -> Span:
        context = None
        if isinstance(parent, OpenTelemetrySpan):
            context = trace.set_span_in_context(parent.otel_span)
        span = self._tracer.start_span(
            name, context=context, attributes=_clean_attributes(attributes)
        )
        return OpenTelemetrySpan(span)
