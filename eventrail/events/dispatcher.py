"""Dispatcher: run every handler registered for an event's type, concurrently and isolated."""

import asyncio
import copy
import logging
import time
from dataclasses import dataclass, field, replace

from eventrail.events.models import Event
from eventrail.events.registry import EventHandler, HandlerRegistry
from eventrail.observability.metrics import (
    EVENTS_DISPATCHED,
    EVENTS_HANDLER_FAILED,
    HANDLER_DURATION,
    MetricsSink,
    NoopMetrics,
)
from eventrail.observability.tracing import NoopTracer, Span, Tracer

logger = logging.getLogger(__name__)


def _handler_name(handler: EventHandler) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)


@dataclass(frozen=True)
class HandlerOutcome:
    index: int
    handler: str
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class DispatchResult:
    event_id: str
    event_type: str
    outcomes: tuple[HandlerOutcome, ...] = field(default_factory=tuple)

    @property
    def failures(self) -> list[HandlerOutcome]:
        return [o for o in self.outcomes if not o.ok]


class Dispatcher:
    """Looks up handlers by type and joins on all of them. Imposes no timeouts."""

    def __init__(
        self,
        registry: HandlerRegistry,
        tracer: Tracer | None = None,
        metrics: MetricsSink | None = None,
    ) -> None:
        self._registry = registry
        self._tracer = tracer or NoopTracer()
        self._metrics = metrics or NoopMetrics()
        self._in_flight: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def process_event(self, event: Event, parent: Span | None = None) -> DispatchResult:
        """Invoke all handlers for event.type. Handler failures are logged, never raised."""
        handlers = self._registry.snapshot(event.type)
        if not handlers:
            logger.debug("No handlers for event type %s", event.type)
            return DispatchResult(event.id, event.type)

        tasks: list[asyncio.Task[None]] = []
        for handler in handlers:
            # Each handler gets its own payload copy; siblings never see each other's edits.
            own = replace(event, data=copy.deepcopy(event.data))
            tasks.append(asyncio.create_task(self._execute_handler(handler, own, parent)))
        self._in_flight.update(tasks)
        try:
            results = await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            self._in_flight.difference_update(tasks)

        outcomes: list[HandlerOutcome] = []
        for index, (handler, result) in enumerate(zip(handlers, results)):
            error = result if isinstance(result, BaseException) else None
            outcomes.append(HandlerOutcome(index, _handler_name(handler), error))
            if error is not None:
                self._metrics.increment(EVENTS_HANDLER_FAILED, {"event_type": event.type})
                logger.error(
                    "Event handler failed for event %s/%s (handler %d: %s): %s",
                    event.type,
                    event.id,
                    index,
                    _handler_name(handler),
                    error,
                    exc_info=error,
                    extra={
                        "event_id": event.id,
                        "event_type": event.type,
                        "handler_index": index,
                    },
                )
        self._metrics.increment(EVENTS_DISPATCHED, {"event_type": event.type})
        return DispatchResult(event.id, event.type, tuple(outcomes))

    async def _execute_handler(
        self, handler: EventHandler, event: Event, parent: Span | None
    ) -> None:
        span = self._tracer.start_span(
            "event.handler.execute",
            {"event.id": event.id, "event.type": event.type, "handler": _handler_name(handler)},
            parent=parent,
        )
        started = time.perf_counter()
        try:
            await handler(event)
            span.set_status(True)
        except Exception as e:
            span.record_exception(e)
            span.set_status(False, str(e))
            raise
        finally:
            self._metrics.observe(
                HANDLER_DURATION, time.perf_counter() - started, {"event_type": event.type}
            )
            span.end()

    async def wait_idle(self) -> None:
        """Wait for handler invocations already running to finish."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)
