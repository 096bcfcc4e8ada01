"""Event bus: validate -> store -> send to Kafka and Redis Streams; consume both into the dispatcher.

No module-level instance: construct an EventBus with its collaborators and drive its
lifecycle with start()/stop().
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Mapping

from eventrail.events.dead_letter import DeadLetterForwarder
from eventrail.events.dispatcher import DispatchResult, Dispatcher
from eventrail.events.envelope import build_envelope, decode_event, encode_event
from eventrail.events.errors import (
    BusAlreadyRunningError,
    EnvelopeDecodeError,
    EventDeliveryError,
    EventPersistenceError,
)
from eventrail.events.models import BusState, Event, PartialEvent
from eventrail.events.registry import EventHandler, HandlerRegistry
from eventrail.events.replay import ReplayEngine, ReplaySummary
from eventrail.events.schemas import SchemaRegistry
from eventrail.events.store import EventStore
from eventrail.observability.metrics import (
    EVENTS_PUBLISHED,
    EVENTS_PUBLISH_FAILED,
    MetricsSink,
    NoopMetrics,
)
from eventrail.observability.tracing import NoopTracer, Span, Tracer
from eventrail.transports.contract import (
    LogConsumer,
    LogPublisher,
    LogRecord,
    StreamMessage,
    StreamTransport,
)

logger = logging.getLogger(__name__)

KAFKA = "kafka"
REDIS = "redis"


class EventBus:
    """Dual-transport event bus with a durable store, isolated handlers and replay."""

    def __init__(
        self,
        store: EventStore,
        log_publisher: LogPublisher,
        log_consumer: LogConsumer,
        stream: StreamTransport,
        *,
        channel: str = "domain-events",
        stream_key: str = "domain:events",
        dlq_suffix: str = "-dlq",
        schemas: SchemaRegistry | None = None,
        tracer: Tracer | None = None,
        metrics: MetricsSink | None = None,
        default_source: str | None = None,
    ) -> None:
        self._store = store
        self._log_publisher = log_publisher
        self._log_consumer = log_consumer
        self._stream = stream
        self._channel = channel
        self._stream_key = stream_key
        self._schemas = schemas or SchemaRegistry()
        self._tracer = tracer or NoopTracer()
        self._metrics = metrics or NoopMetrics()
        self._default_source = default_source
        self._registry = HandlerRegistry()
        self._dispatcher = Dispatcher(self._registry, self._tracer, self._metrics)
        self._dead_letter = DeadLetterForwarder(
            log_publisher, channel, suffix=dlq_suffix, metrics=self._metrics
        )
        self._replay = ReplayEngine(store, self._dispatcher, self._tracer)
        self._state = BusState.STOPPED
        self._consume_tasks: list[asyncio.Task[None]] = []
        self._processing = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def state(self) -> BusState:
        return self._state

    @property
    def schemas(self) -> SchemaRegistry:
        return self._schemas

    @property
    def dead_letter(self) -> DeadLetterForwarder:
        return self._dead_letter

    # --- lifecycle ---

    async def start(self) -> None:
        """Start the Kafka and Redis consumption loops as asyncio Tasks."""
        if self._state is not BusState.STOPPED:
            raise BusAlreadyRunningError(f"Event bus is already {self._state.value}")
        self._state = BusState.STARTING
        try:
            await self._log_publisher.start()
        except Exception:
            self._state = BusState.STOPPED
            raise
        self._consume_tasks = [
            asyncio.create_task(
                self._log_consumer.consume([self._channel], self._handle_log_record),
                name="eventrail-kafka-consumer",
            ),
            asyncio.create_task(
                self._stream.consume(self._stream_key, self._handle_stream_batch),
                name="eventrail-redis-consumer",
            ),
        ]
        for task in self._consume_tasks:
            task.add_done_callback(self._on_consumer_exit)
        self._state = BusState.RUNNING
        logger.info(
            "Event bus started (channel=%s, stream=%s)", self._channel, self._stream_key
        )

    async def stop(self) -> None:
        """Stop intake on both transports; let handlers already running finish."""
        if self._state in (BusState.STOPPED, BusState.STOPPING):
            return
        self._state = BusState.STOPPING
        for name, transport in ((KAFKA, self._log_consumer), (REDIS, self._stream)):
            try:
                await transport.stop()
            except Exception as e:
                logger.warning("Failed to stop %s consumer: %s", name, e)
        await self._idle.wait()
        for task in self._consume_tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._consume_tasks, return_exceptions=True)
        self._consume_tasks = []
        try:
            await self._log_publisher.stop()
        except Exception as e:
            logger.warning("Failed to stop Kafka producer: %s", e)
        self._state = BusState.STOPPED
        logger.info("Event bus stopped")

    def _on_consumer_exit(self, task: asyncio.Task[None]) -> None:
        if task.cancelled() or self._state is not BusState.RUNNING:
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Consumption loop %s exited: %s", task.get_name(), exc, exc_info=exc)
        else:
            logger.warning("Consumption loop %s exited while bus is running", task.get_name())

    # --- publish path ---

    async def publish(self, partial: PartialEvent | Mapping[str, Any]) -> str:
        """Validate, store, then send to both transports. Returns the event id.

        Raises EnvelopeValidationError, EventPersistenceError or EventDeliveryError.
        A retried publish of the same id is safe: the store ignores the duplicate, the
        originally stored envelope is what gets sent, and transports that already
        accepted the event are skipped.
        """
        span = self._tracer.start_span("event.publish")
        try:
            event = build_envelope(partial, self._schemas, default_source=self._default_source)
            span.set_attribute("event.id", event.id)
            span.set_attribute("event.type", event.type)
            span.set_attribute("event.source", event.source)

            try:
                if not await self._store.store(event):
                    # Already stored: resend the stored envelope, never the rebuilt one.
                    stored = await self._store.get(event.id)
                    if stored is not None:
                        logger.info(
                            "Event %s already stored, resending stored envelope", event.id
                        )
                        event = stored
            except Exception as e:
                raise EventPersistenceError(event.id, e) from e

            await self._send(event)

            logger.info(
                "Event published: %s (type=%s, source=%s)", event.id, event.type, event.source
            )
            self._metrics.increment(EVENTS_PUBLISHED, {"event_type": event.type})
            span.set_status(True)
            return event.id
        except Exception as e:
            self._metrics.increment(EVENTS_PUBLISH_FAILED, {"error": type(e).__name__})
            span.record_exception(e)
            span.set_status(False, str(e))
            raise
        finally:
            span.end()

    async def _send(self, event: Event) -> None:
        try:
            delivered = await self._store.delivered_transports(event.id)
        except Exception as e:
            logger.warning("Could not read delivery state for %s, sending to all: %s", event.id, e)
            delivered = set()

        payload = encode_event(event)
        sends = {}
        if KAFKA not in delivered:
            sends[KAFKA] = self._log_publisher.send(
                self._channel,
                event.type,
                payload,
                {
                    "event-id": event.id,
                    "event-type": event.type,
                    "correlation-id": event.metadata.correlation_id or "",
                },
            )
        if REDIS not in delivered:
            sends[REDIS] = self._stream.add(self._stream_key, event)
        if not sends:
            logger.info("Event %s already delivered to all transports", event.id)
            return

        results = await asyncio.gather(*sends.values(), return_exceptions=True)
        failures: dict[str, BaseException] = {}
        for name, result in zip(sends, results):
            if isinstance(result, BaseException):
                failures[name] = result
                continue
            try:
                await self._store.mark_delivered(event.id, name)
            except Exception as e:
                logger.warning("Could not record %s delivery for %s: %s", name, event.id, e)
        if failures:
            for name, error in failures.items():
                logger.error("Failed to send event %s to %s: %s", event.id, name, error)
            raise EventDeliveryError(event.id, failures)

    # --- handlers ---

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._registry.subscribe(event_type, handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        self._registry.unsubscribe(event_type, handler)

    async def process_event(self, event: Event, parent: Span | None = None) -> DispatchResult:
        return await self._dispatcher.process_event(event, parent=parent)

    async def replay(
        self,
        event_type: str | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> ReplaySummary:
        return await self._replay.replay(event_type, start_time, end_time)

    # --- consumption path ---

    def _enter(self) -> None:
        self._processing += 1
        self._idle.clear()

    def _leave(self) -> None:
        self._processing -= 1
        if self._processing == 0:
            self._idle.set()

    async def _handle_log_record(self, record: LogRecord) -> None:
        """Decode and dispatch one Kafka record. Never raises; failures go to the dead-letter topic."""
        self._enter()
        span = self._tracer.start_span(
            "event.handle.kafka",
            {"kafka.topic": record.topic, "kafka.partition": record.partition},
        )
        try:
            event = decode_event(record.value)
            span.set_attribute("event.id", event.id)
            span.set_attribute("event.type", event.type)
            await self._dispatcher.process_event(event, parent=span)
            span.set_status(True)
        except Exception as e:
            logger.error(
                "Failed to handle Kafka message %s[%d]@%d: %s",
                record.topic,
                record.partition,
                record.offset,
                e,
            )
            span.record_exception(e)
            span.set_status(False, str(e))
            await self._dead_letter.send(record.value, e, transport=KAFKA, channel=record.topic)
        finally:
            span.end()
            self._leave()

    async def _handle_stream_batch(self, batch: list[StreamMessage]) -> None:
        """Decode and dispatch a batch of stream entries one by one. Never raises."""
        self._enter()
        try:
            for message in batch:
                await self._handle_stream_message(message)
        finally:
            self._leave()

    async def _handle_stream_message(self, message: StreamMessage) -> None:
        span = self._tracer.start_span(
            "event.handle.redis", {"redis.stream": self._stream_key, "redis.id": message.id}
        )
        try:
            raw = message.fields.get("eventData")
            if raw is None:
                raise EnvelopeDecodeError(f"stream entry {message.id} has no eventData field")
            event = decode_event(raw)
            span.set_attribute("event.id", event.id)
            span.set_attribute("event.type", event.type)
            await self._dispatcher.process_event(event, parent=span)
            span.set_status(True)
        except Exception as e:
            logger.error("Failed to handle Redis event %s: %s", message.id, e)
            span.record_exception(e)
            span.set_status(False, str(e))
            await self._dead_letter.send(
                dict(message.fields), e, transport=REDIS, channel=self._stream_key
            )
        finally:
            span.end()
