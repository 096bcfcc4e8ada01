"""Replay: re-drive stored events through local handlers. Never re-sends on a transport."""

import logging
from dataclasses import dataclass
from datetime import datetime

from eventrail.events.dispatcher import Dispatcher
from eventrail.events.store import EventQuery, EventStore
from eventrail.observability.tracing import NoopTracer, Tracer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReplaySummary:
    replayed: int
    handler_failures: int


class ReplayEngine:
    def __init__(
        self,
        store: EventStore,
        dispatcher: Dispatcher,
        tracer: Tracer | None = None,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._tracer = tracer or NoopTracer()

    async def replay(
        self,
        event_type: str | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> ReplaySummary:
        """Dispatch matching events one at a time, in timestamp order."""
        events = await self._store.query(EventQuery(event_type, start_time, end_time))
        logger.info(
            "Replaying %d events (type=%s, start=%s, end=%s)",
            len(events),
            event_type,
            start_time,
            end_time,
        )
        span = self._tracer.start_span(
            "event.replay",
            {"event.type": event_type, "replay.count": len(events)},
        )
        failures = 0
        try:
            for event in events:
                result = await self._dispatcher.process_event(event, parent=span)
                failures += len(result.failures)
            span.set_status(True)
        except Exception as e:
            span.record_exception(e)
            span.set_status(False, str(e))
            raise
        finally:
            span.end()
        return ReplaySummary(replayed=len(events), handler_failures=failures)
