"""Event Bus: validated envelopes, durable store, dual-transport fan-out, isolated handlers, replay."""

from eventrail.events.bus import EventBus
from eventrail.events.errors import (
    BusAlreadyRunningError,
    ConfigurationError,
    EnvelopeDecodeError,
    EnvelopeValidationError,
    EventBusError,
    EventDeliveryError,
    EventPersistenceError,
    FieldError,
)
from eventrail.events.models import BusState, DeadLetterRecord, Event, EventMetadata, PartialEvent
from eventrail.events.replay import ReplaySummary
from eventrail.events.schemas import SchemaRegistry
from eventrail.events.store import EventQuery, EventStore

__all__ = [
    "BusAlreadyRunningError",
    "BusState",
    "ConfigurationError",
    "DeadLetterRecord",
    "EnvelopeDecodeError",
    "EnvelopeValidationError",
    "Event",
    "EventBus",
    "EventBusError",
    "EventDeliveryError",
    "EventMetadata",
    "EventPersistenceError",
    "EventQuery",
    "EventStore",
    "FieldError",
    "PartialEvent",
    "ReplaySummary",
    "SchemaRegistry",
]
