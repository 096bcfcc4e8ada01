"""Shared fixtures: SQLite store on tmp_path and in-process fake transports."""

import asyncio
import time
from pathlib import Path
from typing import Awaitable, Callable, Mapping

import pytest

from eventrail.events import EventBus, EventStore
from eventrail.events.envelope import encode_event
from eventrail.events.models import Event
from eventrail.observability.metrics import InMemoryMetrics
from eventrail.transports.contract import (
    LogRecord,
    LogRecordCallback,
    StreamBatchCallback,
    StreamMessage,
)


class FakeLogConsumer:
    """Durable-log consumer fed from an in-memory queue."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue[LogRecord] = asyncio.Queue()
        self.topics: list[str] = []
        self.running = False
        self._offset = 0

    def feed(self, value: bytes, topic: str = "domain-events", key: bytes | None = None) -> None:
        self.queue.put_nowait(
            LogRecord(topic=topic, partition=0, offset=self._offset, key=key, value=value)
        )
        self._offset += 1

    async def consume(self, topics: list[str], callback: LogRecordCallback) -> None:
        self.topics = topics
        self.running = True
        while self.running:
            try:
                record = await asyncio.wait_for(self.queue.get(), timeout=0.05)
            except asyncio.TimeoutError:
                continue
            await callback(record)

    async def stop(self) -> None:
        self.running = False


class FakeLogPublisher:
    """Records sends. Optionally loops sends on the primary topic back into a consumer."""

    def __init__(self, loopback: FakeLogConsumer | None = None) -> None:
        self.sent: list[tuple[str, str | None, bytes, dict]] = []
        self.fail_with: BaseException | None = None
        self.fail_topics: set[str] | None = None
        self.started = False
        self._loopback = loopback

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False

    async def send(
        self,
        topic: str,
        key: str | None,
        value: bytes,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        if self.fail_with is not None and (self.fail_topics is None or topic in self.fail_topics):
            raise self.fail_with
        self.sent.append((topic, key, value, dict(headers or {})))
        if self._loopback is not None and not topic.endswith("-dlq"):
            self._loopback.feed(value, topic=topic)

    def sent_to(self, topic: str) -> list[tuple[str, str | None, bytes, dict]]:
        return [s for s in self.sent if s[0] == topic]


class FakeStream:
    """Stream transport: add() records events; consume() reads batches fed by tests."""

    def __init__(self, loopback: bool = False) -> None:
        self.added: list[tuple[str, Event]] = []
        self.batches: asyncio.Queue[list[StreamMessage]] = asyncio.Queue()
        self.fail_with: BaseException | None = None
        self.running = False
        self._loopback = loopback
        self._seq = 0

    def _next_id(self) -> str:
        self._seq += 1
        return f"{int(time.time() * 1000)}-{self._seq}"

    def feed(self, *entries: Mapping[str, str]) -> None:
        self.batches.put_nowait([StreamMessage(self._next_id(), dict(f)) for f in entries])

    async def add(self, stream_key: str, event: Event) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        self.added.append((stream_key, event))
        if self._loopback:
            self.feed({"eventId": event.id, "eventData": encode_event(event).decode("utf-8")})
        return self._next_id()

    async def consume(self, stream_key: str, callback: StreamBatchCallback) -> None:
        self.running = True
        while self.running:
            try:
                batch = await asyncio.wait_for(self.batches.get(), timeout=0.05)
            except asyncio.TimeoutError:
                continue
            await callback(batch)

    async def stop(self) -> None:
        self.running = False


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll predicate until true; fail the test on timeout."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            pytest.fail("condition not met before timeout")
        await asyncio.sleep(0.01)


def recorder() -> tuple[list[Event], Callable[[Event], Awaitable[None]]]:
    received: list[Event] = []

    async def handler(event: Event) -> None:
        received.append(event)

    return received, handler


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "event_store.db"


@pytest.fixture
async def store(db_path: Path) -> EventStore:
    event_store = EventStore(db_path)
    yield event_store
    await event_store.close()


@pytest.fixture
def log_consumer() -> FakeLogConsumer:
    return FakeLogConsumer()


@pytest.fixture
def log_publisher() -> FakeLogPublisher:
    return FakeLogPublisher()


@pytest.fixture
def stream() -> FakeStream:
    return FakeStream()


@pytest.fixture
def metrics() -> InMemoryMetrics:
    return InMemoryMetrics()


@pytest.fixture
async def event_bus(
    store: EventStore,
    log_publisher: FakeLogPublisher,
    log_consumer: FakeLogConsumer,
    stream: FakeStream,
    metrics: InMemoryMetrics,
) -> EventBus:
    bus = EventBus(
        store,
        log_publisher,
        log_consumer,
        stream,
        channel="domain-events",
        stream_key="domain:events",
        metrics=metrics,
    )
    yield bus
    await bus.stop()
