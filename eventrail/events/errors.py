"""Event bus error taxonomy.

Publish-path errors (validation, persistence, delivery) are raised to the caller of
EventBus.publish. Consumption-path errors (decode, handler, dead-letter) never leave
the consumption loop; they end up in logs and dead-letter records.
"""

from dataclasses import dataclass


class EventBusError(Exception):
    """Base class for all event bus errors."""


@dataclass(frozen=True)
class FieldError:
    """One violated field in an envelope or payload."""

    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


class EnvelopeValidationError(EventBusError):
    """Envelope or payload failed schema validation. Nothing was stored or sent."""

    def __init__(self, event_type: str | None, errors: list[FieldError]) -> None:
        self.event_type = event_type
        self.errors = list(errors)
        details = "; ".join(str(e) for e in self.errors) or "unknown error"
        super().__init__(f"Invalid event {event_type!r}: {details}")

    @property
    def fields(self) -> list[str]:
        return [e.field for e in self.errors]


class EnvelopeDecodeError(EventBusError):
    """Inbound transport message could not be decoded into an Event."""


class EventPersistenceError(EventBusError):
    """Event store write failed. The event is considered never published."""

    def __init__(self, event_id: str, cause: BaseException) -> None:
        self.event_id = event_id
        super().__init__(f"Failed to store event {event_id}: {cause}")


class EventDeliveryError(EventBusError):
    """Event is stored but at least one transport send failed. Retrying publish is safe."""

    def __init__(self, event_id: str, failures: dict[str, BaseException]) -> None:
        self.event_id = event_id
        self.failures = dict(failures)
        names = ", ".join(sorted(self.failures))
        super().__init__(f"Event {event_id} stored but not delivered to: {names}")

    @property
    def failed_transports(self) -> list[str]:
        return sorted(self.failures)


class BusAlreadyRunningError(EventBusError):
    """start() called on a bus that is not stopped."""


class ConfigurationError(EventBusError):
    """Invalid settings or unresolvable handler reference."""
