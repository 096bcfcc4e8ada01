"""Transport protocols: what the event bus needs from a durable log and a stream broker.

The bus depends only on these protocols. Kafka and Redis Streams implementations live
beside this module; tests use in-process fakes.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable, Mapping, Protocol, runtime_checkable

if TYPE_CHECKING:
    from eventrail.events.models import Event


@dataclass(frozen=True)
class LogRecord:
    """One record received from the durable log."""

    topic: str
    partition: int
    offset: int
    key: bytes | None
    value: bytes
    headers: Mapping[str, bytes] = field(default_factory=dict)


@dataclass(frozen=True)
class StreamMessage:
    """One entry read from a stream. `fields` are the raw entry fields, undecoded."""

    id: str
    fields: Mapping[str, str]


LogRecordCallback = Callable[[LogRecord], Awaitable[None]]
StreamBatchCallback = Callable[[list[StreamMessage]], Awaitable[None]]


@runtime_checkable
class LogPublisher(Protocol):
    """Producer side of the durable log. send() raises on failure."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def send(
        self,
        topic: str,
        key: str | None,
        value: bytes,
        headers: Mapping[str, str] | None = None,
    ) -> None: ...


@runtime_checkable
class LogConsumer(Protocol):
    """Consumer side of the durable log. consume() runs until stop() is called."""

    async def consume(self, topics: list[str], callback: LogRecordCallback) -> None: ...

    async def stop(self) -> None: ...


@runtime_checkable
class StreamTransport(Protocol):
    """Low-latency stream broker: add() and a batch consume loop that runs until stop()."""

    async def add(self, stream_key: str, event: "Event") -> str: ...

    async def consume(self, stream_key: str, callback: StreamBatchCallback) -> None: ...

    async def stop(self) -> None: ...
