"""Tests for EventBus: publish path, lifecycle, dual-transport consumption, dead letters, replay."""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import BaseModel

from conftest import FakeLogConsumer, FakeLogPublisher, FakeStream, recorder, wait_until
from eventrail.events import (
    BusAlreadyRunningError,
    BusState,
    EnvelopeValidationError,
    Event,
    EventBus,
    EventDeliveryError,
    EventPersistenceError,
    EventQuery,
    EventStore,
)
from eventrail.events.envelope import encode_event
from eventrail.observability.metrics import EVENTS_DEAD_LETTERED, InMemoryMetrics


class LeadCreated(BaseModel):
    leadId: str


class TestEventBusPublish:
    """Publish: validate -> store -> both transports."""

    @pytest.mark.asyncio
    async def test_publish_returns_id_matching_stored_event(
        self, event_bus: EventBus, store: EventStore
    ) -> None:
        event_id = await event_bus.publish(
            {"type": "lead.created", "source": "crm", "data": {"leadId": "L1"}}
        )
        assert isinstance(event_id, str) and event_id

        stored = await store.query(EventQuery(event_type="lead.created"))
        assert [e.id for e in stored] == [event_id]
        assert stored[0].data == {"leadId": "L1"}
        assert stored[0].metadata.version == "1.0"

    @pytest.mark.asyncio
    async def test_publish_sends_same_envelope_to_both_transports(
        self, event_bus: EventBus, log_publisher: FakeLogPublisher, stream: FakeStream
    ) -> None:
        event_id = await event_bus.publish(
            {
                "type": "order.paid",
                "source": "billing",
                "data": {"orderId": "O1"},
                "metadata": {"correlationId": "corr-1"},
            }
        )

        assert len(log_publisher.sent) == 1
        topic, key, value, headers = log_publisher.sent[0]
        assert topic == "domain-events"
        assert key == "order.paid"
        assert headers == {
            "event-id": event_id,
            "event-type": "order.paid",
            "correlation-id": "corr-1",
        }
        assert len(stream.added) == 1
        stream_key, event = stream.added[0]
        assert stream_key == "domain:events"
        assert encode_event(event) == value

    @pytest.mark.asyncio
    async def test_invalid_event_is_not_stored_or_sent(
        self,
        event_bus: EventBus,
        store: EventStore,
        log_publisher: FakeLogPublisher,
        stream: FakeStream,
    ) -> None:
        event_bus.schemas.register("lead.created", LeadCreated)

        with pytest.raises(EnvelopeValidationError) as exc_info:
            await event_bus.publish({"type": "lead.created", "source": "crm", "data": {}})

        assert "data.leadId" in exc_info.value.fields
        assert await store.count() == 0
        assert log_publisher.sent == []
        assert stream.added == []

    @pytest.mark.asyncio
    async def test_store_failure_raises_and_sends_nothing(
        self,
        event_bus: EventBus,
        store: EventStore,
        log_publisher: FakeLogPublisher,
        stream: FakeStream,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        async def broken_store(event: Event) -> bool:
            raise OSError("disk full")

        monkeypatch.setattr(store, "store", broken_store)

        with pytest.raises(EventPersistenceError):
            await event_bus.publish({"type": "a.b", "source": "s", "data": {}})
        assert log_publisher.sent == []
        assert stream.added == []

    @pytest.mark.asyncio
    async def test_transport_failure_raises_but_event_stays_stored(
        self, event_bus: EventBus, store: EventStore, stream: FakeStream
    ) -> None:
        stream.fail_with = ConnectionError("redis down")

        with pytest.raises(EventDeliveryError) as exc_info:
            await event_bus.publish({"id": "evt-1", "type": "a.b", "source": "s", "data": {}})

        assert exc_info.value.event_id == "evt-1"
        assert exc_info.value.failed_transports == ["redis"]
        assert await store.get("evt-1") is not None

    @pytest.mark.asyncio
    async def test_retry_after_partial_failure_only_resends_failed_transport(
        self,
        event_bus: EventBus,
        store: EventStore,
        log_publisher: FakeLogPublisher,
        stream: FakeStream,
    ) -> None:
        partial = {"id": "evt-2", "type": "a.b", "source": "s", "data": {"n": 1}}
        stream.fail_with = ConnectionError("redis down")
        with pytest.raises(EventDeliveryError):
            await event_bus.publish(partial)

        stream.fail_with = None
        assert await event_bus.publish(partial) == "evt-2"

        assert len(log_publisher.sent) == 1
        assert len(stream.added) == 1
        assert await store.count() == 1
        assert await store.delivered_transports("evt-2") == {"kafka", "redis"}

    @pytest.mark.asyncio
    async def test_retry_sends_the_stored_envelope_not_the_new_one(
        self,
        event_bus: EventBus,
        store: EventStore,
        log_publisher: FakeLogPublisher,
        stream: FakeStream,
    ) -> None:
        stream.fail_with = ConnectionError("redis down")
        with pytest.raises(EventDeliveryError):
            await event_bus.publish(
                {"id": "evt-3", "type": "a.b", "source": "s", "data": {"amount": 1}}
            )

        stream.fail_with = None
        await asyncio.sleep(0.01)
        await event_bus.publish(
            {"id": "evt-3", "type": "a.b", "source": "s", "data": {"amount": 999}}
        )

        stored = await store.get("evt-3")
        _, resent = stream.added[0]
        assert resent == stored
        assert resent.data == {"amount": 1}
        assert encode_event(resent) == log_publisher.sent[0][2]

    @pytest.mark.asyncio
    async def test_publish_fills_default_source(
        self, store: EventStore, log_publisher: FakeLogPublisher, stream: FakeStream
    ) -> None:
        bus = EventBus(store, log_publisher, FakeLogConsumer(), stream, default_source="crm")
        event_id = await bus.publish({"type": "lead.created", "data": {}})
        stored = await store.get(event_id)
        assert stored is not None and stored.source == "crm"


class TestEventBusLifecycle:
    """Stopped -> Starting -> Running -> Stopping -> Stopped."""

    @pytest.mark.asyncio
    async def test_start_twice_is_rejected(self, event_bus: EventBus) -> None:
        assert event_bus.state is BusState.STOPPED
        await event_bus.start()
        assert event_bus.state is BusState.RUNNING
        with pytest.raises(BusAlreadyRunningError):
            await event_bus.start()

    @pytest.mark.asyncio
    async def test_start_subscribes_both_consumers(
        self, event_bus: EventBus, log_consumer: FakeLogConsumer, stream: FakeStream
    ) -> None:
        await event_bus.start()
        await wait_until(lambda: log_consumer.running and stream.running)
        assert log_consumer.topics == ["domain-events"]

    @pytest.mark.asyncio
    async def test_stop_halts_consumers_and_can_restart(
        self, event_bus: EventBus, log_consumer: FakeLogConsumer, stream: FakeStream
    ) -> None:
        await event_bus.start()
        await wait_until(lambda: log_consumer.running and stream.running)
        await event_bus.stop()
        assert event_bus.state is BusState.STOPPED
        assert not log_consumer.running and not stream.running

        await event_bus.start()
        assert event_bus.state is BusState.RUNNING

    @pytest.mark.asyncio
    async def test_stop_waits_for_running_handler(
        self, event_bus: EventBus, log_consumer: FakeLogConsumer
    ) -> None:
        started = asyncio.Event()
        finished: list[str] = []

        async def slow_handler(event: Event) -> None:
            started.set()
            await asyncio.sleep(0.2)
            finished.append(event.id)

        event_bus.subscribe("slow.thing", slow_handler)
        await event_bus.start()
        event = await _stored_event(event_bus, "slow.thing")
        log_consumer.feed(encode_event(event))
        await asyncio.wait_for(started.wait(), timeout=1.0)

        await event_bus.stop()
        assert finished == [event.id]


async def _stored_event(bus: EventBus, event_type: str, **data: object) -> Event:
    """Publish through the bus and read the envelope back from the store."""
    event_id = await bus.publish({"type": event_type, "source": "test", "data": dict(data)})
    stored = await bus._store.get(event_id)
    assert stored is not None
    return stored


class TestEventBusConsumption:
    """Both consumption loops feed the dispatcher; bad messages go to the dead-letter topic."""

    @pytest.mark.asyncio
    async def test_kafka_record_is_dispatched(
        self, event_bus: EventBus, log_consumer: FakeLogConsumer
    ) -> None:
        received, handler = recorder()
        event_bus.subscribe("order.paid", handler)
        await event_bus.start()

        event = await _stored_event(event_bus, "order.paid", orderId="O1")
        log_consumer.feed(encode_event(event))
        await wait_until(lambda: len(received) == 1)

        assert received[0].id == event.id
        assert received[0].data == {"orderId": "O1"}

    @pytest.mark.asyncio
    async def test_stream_batch_is_dispatched(
        self, event_bus: EventBus, stream: FakeStream
    ) -> None:
        received, handler = recorder()
        event_bus.subscribe("order.paid", handler)
        await event_bus.start()

        first = await _stored_event(event_bus, "order.paid", n=1)
        second = await _stored_event(event_bus, "order.paid", n=2)
        stream.feed(
            {"eventId": first.id, "eventData": encode_event(first).decode()},
            {"eventId": second.id, "eventData": encode_event(second).decode()},
        )
        await wait_until(lambda: len(received) == 2)
        assert [e.id for e in received] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_truncated_kafka_payload_dead_lettered_and_loop_continues(
        self,
        event_bus: EventBus,
        log_consumer: FakeLogConsumer,
        log_publisher: FakeLogPublisher,
        metrics: InMemoryMetrics,
    ) -> None:
        received, handler = recorder()
        event_bus.subscribe("order.paid", handler)
        await event_bus.start()

        good = await _stored_event(event_bus, "order.paid")
        raw = encode_event(good)
        log_consumer.feed(raw[: len(raw) // 2])
        log_consumer.feed(raw)
        await wait_until(lambda: len(received) == 1)

        dead = log_publisher.sent_to("domain-events-dlq")
        assert len(dead) == 1
        _, key, value, _ = dead[0]
        assert key == "failed-event"
        record = json.loads(value)
        assert record["originalMessage"] == raw[: len(raw) // 2].decode("utf-8", "backslashreplace")
        assert record["transport"] == "kafka"
        assert record["error"]
        assert "timestamp" in record
        assert received[0].id == good.id
        assert metrics.count(EVENTS_DEAD_LETTERED) == 1

    @pytest.mark.asyncio
    async def test_malformed_stream_entry_dead_lettered_and_next_dispatched(
        self,
        event_bus: EventBus,
        stream: FakeStream,
        log_publisher: FakeLogPublisher,
    ) -> None:
        received, handler = recorder()
        event_bus.subscribe("order.paid", handler)
        await event_bus.start()

        good = await _stored_event(event_bus, "order.paid")
        stream.feed({"eventId": "x", "eventData": '{"id": "x", "type": '})
        stream.feed({"eventId": good.id, "eventData": encode_event(good).decode()})
        await wait_until(lambda: len(received) == 1)

        dead = log_publisher.sent_to("domain-events-dlq")
        assert len(dead) == 1
        assert json.loads(dead[0][2])["transport"] == "redis"

    @pytest.mark.asyncio
    async def test_dead_letter_send_failure_is_swallowed(
        self,
        event_bus: EventBus,
        log_consumer: FakeLogConsumer,
        log_publisher: FakeLogPublisher,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        received, handler = recorder()
        event_bus.subscribe("order.paid", handler)
        await event_bus.start()
        good = await _stored_event(event_bus, "order.paid")

        log_publisher.fail_with = ConnectionError("kafka down")
        log_publisher.fail_topics = {"domain-events-dlq"}
        log_consumer.feed(b"\xff\xfe not json")
        log_consumer.feed(encode_event(good))
        await wait_until(lambda: len(received) == 1)

        assert "Failed to send to dead letter queue" in caplog.text
        assert event_bus.state is BusState.RUNNING


class TestEventBusHandlers:
    """Subscribe/unsubscribe and handler isolation through the bus."""

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_block_sibling(
        self, event_bus: EventBus, caplog: pytest.LogCaptureFixture
    ) -> None:
        received, good_handler = recorder()

        async def failing_handler(event: Event) -> None:
            raise RuntimeError("handler failed")

        event_bus.subscribe("fail.topic", failing_handler)
        event_bus.subscribe("fail.topic", good_handler)

        event_id = await event_bus.publish({"type": "fail.topic", "source": "s", "data": {}})
        stored = await event_bus._store.get(event_id)
        result = await event_bus.process_event(stored)

        assert [e.id for e in received] == [event_id]
        assert len(result.failures) == 1
        assert result.failures[0].index == 0
        assert "handler failed" in caplog.text

    @pytest.mark.asyncio
    async def test_unsubscribed_handler_not_invoked(
        self, store: EventStore, stream: FakeStream
    ) -> None:
        consumer = FakeLogConsumer()
        bus = EventBus(store, FakeLogPublisher(loopback=consumer), consumer, stream)
        received, handler = recorder()
        bus.subscribe("lead.created", handler)
        await bus.start()
        try:
            await bus.publish({"type": "lead.created", "source": "crm", "data": {"n": 1}})
            await wait_until(lambda: len(received) == 1)

            bus.unsubscribe("lead.created", handler)
            await bus.publish({"type": "lead.created", "source": "crm", "data": {"n": 2}})
            await asyncio.sleep(0.2)
            assert len(received) == 1
        finally:
            await bus.stop()

    @pytest.mark.asyncio
    async def test_each_published_event_reaches_handler(
        self, store: EventStore, stream: FakeStream
    ) -> None:
        consumer = FakeLogConsumer()
        bus = EventBus(store, FakeLogPublisher(loopback=consumer), consumer, stream)
        received, handler = recorder()
        bus.subscribe("order.paid", handler)
        await bus.start()
        try:
            e1 = await bus.publish({"type": "order.paid", "source": "billing", "data": {"n": 1}})
            e2 = await bus.publish({"type": "order.paid", "source": "billing", "data": {"n": 2}})
            await wait_until(lambda: len(received) == 2)
            assert sorted(e.id for e in received) == sorted([e1, e2])
        finally:
            await bus.stop()


class TestEventBusReplay:
    """Replay re-drives stored events through handlers without touching transports."""

    @pytest.mark.asyncio
    async def test_replay_reinvokes_handlers_with_original_values(
        self, event_bus: EventBus, log_publisher: FakeLogPublisher, stream: FakeStream
    ) -> None:
        event_id = await event_bus.publish(
            {"type": "lead.created", "source": "crm", "data": {"leadId": "L1"}}
        )
        received_a, handler_a = recorder()
        received_b, handler_b = recorder()
        event_bus.subscribe("lead.created", handler_a)
        event_bus.subscribe("lead.created", handler_b)
        sends_before = (len(log_publisher.sent), len(stream.added))

        summary = await event_bus.replay("lead.created")

        assert summary.replayed == 1
        assert summary.handler_failures == 0
        for received in (received_a, received_b):
            assert len(received) == 1
            assert received[0].id == event_id
            assert received[0].type == "lead.created"
            assert received[0].data == {"leadId": "L1"}
        assert (len(log_publisher.sent), len(stream.added)) == sends_before

    @pytest.mark.asyncio
    async def test_replay_respects_time_window_and_order(self, event_bus: EventBus) -> None:
        base = datetime(2025, 1, 1, tzinfo=timezone.utc)
        for i in (3, 1, 2, 7):
            await event_bus.publish(
                {
                    "id": f"e{i}",
                    "type": "tick",
                    "source": "clock",
                    "timestamp": base + timedelta(minutes=i),
                    "data": {"i": i},
                }
            )
        received, handler = recorder()
        event_bus.subscribe("tick", handler)

        summary = await event_bus.replay(
            "tick", start_time=base + timedelta(minutes=1), end_time=base + timedelta(minutes=3)
        )

        assert summary.replayed == 3
        assert [e.id for e in received] == ["e1", "e2", "e3"]

    @pytest.mark.asyncio
    async def test_replay_counts_handler_failures(self, event_bus: EventBus) -> None:
        async def failing_handler(event: Event) -> None:
            raise ValueError("boom")

        await event_bus.publish({"type": "x.y", "source": "s", "data": {}})
        event_bus.subscribe("x.y", failing_handler)

        summary = await event_bus.replay("x.y")
        assert summary.replayed == 1
        assert summary.handler_failures == 1
