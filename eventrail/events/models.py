"""Event model for the Event Bus."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

__all__ = [
    "BusState",
    "DeadLetterRecord",
    "DEFAULT_VERSION",
    "Event",
    "EventMetadata",
    "PartialEvent",
]

DEFAULT_VERSION = "1.0"


def _frozen_mapping(value: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(value or {}))


@dataclass(frozen=True)
class EventMetadata:
    """Contract version plus correlation data. `extra` holds free-form fields."""

    version: str = DEFAULT_VERSION
    correlation_id: str | None = None
    causation_id: str | None = None
    user_id: str | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "extra", _frozen_mapping(self.extra))


@dataclass(frozen=True)
class Event:
    """Immutable event passed to handlers, stored and sent on both transports."""

    id: str
    type: str
    source: str
    timestamp: datetime
    data: Any
    metadata: EventMetadata = field(default_factory=EventMetadata)


@dataclass(frozen=True)
class PartialEvent:
    """Caller-supplied event before the envelope is built. id/timestamp/version may be absent."""

    type: str | None = None
    source: str | None = None
    data: Any = None
    id: str | None = None
    timestamp: datetime | None = None
    metadata: Mapping[str, Any] | EventMetadata | None = None


@dataclass(frozen=True)
class DeadLetterRecord:
    """Message that could not be decoded or dispatched, with its error."""

    original_message: str
    error: str
    error_type: str
    timestamp: datetime
    transport: str = ""
    channel: str = ""


class BusState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
