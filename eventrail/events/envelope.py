"""Envelope construction and the JSON wire codec shared by both transports and the store."""

import copy
import json
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Mapping

from eventrail.events.errors import EnvelopeDecodeError, EnvelopeValidationError, FieldError
from eventrail.events.models import DEFAULT_VERSION, Event, EventMetadata, PartialEvent
from eventrail.events.schemas import SchemaRegistry

__all__ = [
    "build_envelope",
    "decode_event",
    "encode_event",
    "event_from_wire",
    "event_to_wire",
]

# wire key -> EventMetadata attribute
_METADATA_KEYS = {
    "version": "version",
    "correlationId": "correlation_id",
    "causationId": "causation_id",
    "userId": "user_id",
}
_METADATA_ATTRS = {v: k for k, v in _METADATA_KEYS.items()}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, str):
        return _as_utc(datetime.fromisoformat(value))
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    raise ValueError(f"unsupported timestamp {value!r}")


def _metadata_from_mapping(raw: Mapping[str, Any] | None) -> EventMetadata:
    """Accept both wire (camelCase) and attribute (snake_case) metadata keys."""
    known: dict[str, Any] = {}
    extra: dict[str, Any] = {}
    for key, value in (raw or {}).items():
        attr = _METADATA_KEYS.get(key) or (key if key in _METADATA_ATTRS else None)
        if attr is not None:
            known[attr] = value
        else:
            extra[key] = value
    if known.get("version") is None:
        known["version"] = DEFAULT_VERSION
    return EventMetadata(extra=extra, **known)


def _coerce_partial(partial: PartialEvent | Mapping[str, Any]) -> PartialEvent:
    if isinstance(partial, PartialEvent):
        return partial
    if isinstance(partial, Mapping):
        return PartialEvent(
            type=partial.get("type"),
            source=partial.get("source"),
            data=partial.get("data"),
            id=partial.get("id"),
            timestamp=partial.get("timestamp"),
            metadata=partial.get("metadata"),
        )
    raise TypeError(f"publish() expects a PartialEvent or mapping, got {type(partial).__name__}")


def build_envelope(
    partial: PartialEvent | Mapping[str, Any],
    registry: SchemaRegistry,
    *,
    default_source: str | None = None,
) -> Event:
    """Fill id, timestamp and metadata.version, then validate against the type's schema.

    Raises EnvelopeValidationError listing every violated field.
    """
    partial = _coerce_partial(partial)
    errors: list[FieldError] = []

    timestamp = _utcnow()
    if partial.timestamp is not None:
        try:
            timestamp = _parse_timestamp(partial.timestamp)
        except (ValueError, TypeError, OverflowError, OSError) as e:
            errors.append(FieldError("timestamp", str(e)))

    if isinstance(partial.metadata, EventMetadata):
        metadata = partial.metadata
    elif partial.metadata is None or isinstance(partial.metadata, Mapping):
        try:
            metadata = _metadata_from_mapping(partial.metadata)
        except TypeError as e:
            errors.append(FieldError("metadata", str(e)))
            metadata = EventMetadata()
    else:
        errors.append(FieldError("metadata", "must be a mapping"))
        metadata = EventMetadata()

    event = Event(
        id=partial.id if partial.id is not None else str(uuid.uuid4()),
        type=partial.type,  # type: ignore[arg-type]
        source=partial.source if partial.source is not None else default_source,  # type: ignore[arg-type]
        timestamp=timestamp,
        data=partial.data,
        metadata=metadata,
    )
    errors.extend(registry.validate(event))
    if not errors:
        try:
            encode_event(event)
        except (TypeError, ValueError) as e:
            errors.append(FieldError("data", f"not JSON serializable: {e}"))
    if errors:
        raise EnvelopeValidationError(
            partial.type if isinstance(partial.type, str) else None, errors
        )
    # Detach from the caller's objects so later edits to the input cannot reach the event.
    return replace(event, data=copy.deepcopy(event.data))


def event_to_wire(event: Event) -> dict[str, Any]:
    """Event -> JSON-compatible dict in the wire shape."""
    metadata: dict[str, Any] = dict(event.metadata.extra)
    for attr, key in _METADATA_ATTRS.items():
        value = getattr(event.metadata, attr)
        if value is not None or attr == "version":
            metadata[key] = value
    return {
        "id": event.id,
        "type": event.type,
        "source": event.source,
        "timestamp": event.timestamp.isoformat(),
        "data": event.data,
        "metadata": metadata,
    }


def event_from_wire(raw: Mapping[str, Any]) -> Event:
    """Wire dict -> Event. Raises EnvelopeDecodeError on missing or malformed fields."""
    if not isinstance(raw, Mapping):
        raise EnvelopeDecodeError(f"envelope must be an object, got {type(raw).__name__}")
    missing = [k for k in ("id", "type", "source", "timestamp") if not raw.get(k)]
    if missing:
        raise EnvelopeDecodeError(f"envelope missing fields: {', '.join(missing)}")
    for key in ("id", "type", "source"):
        if not isinstance(raw[key], str):
            raise EnvelopeDecodeError(f"envelope field {key} must be a string")
    metadata_raw = raw.get("metadata") or {}
    if not isinstance(metadata_raw, Mapping):
        raise EnvelopeDecodeError("envelope metadata must be an object")
    try:
        timestamp = _parse_timestamp(raw["timestamp"])
        metadata = _metadata_from_mapping(metadata_raw)
    except (ValueError, TypeError, OverflowError, OSError) as e:
        raise EnvelopeDecodeError(f"malformed envelope: {e}") from e
    return Event(
        id=raw["id"],
        type=raw["type"],
        source=raw["source"],
        timestamp=timestamp,
        data=raw.get("data"),
        metadata=metadata,
    )


def encode_event(event: Event) -> bytes:
    return json.dumps(event_to_wire(event), ensure_ascii=False).encode("utf-8")


def decode_event(raw: bytes | bytearray | str) -> Event:
    """Serialized envelope -> Event. Raises EnvelopeDecodeError."""
    try:
        text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw
        payload = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError, AttributeError, TypeError) as e:
        raise EnvelopeDecodeError(f"undecodable payload: {e}") from e
    return event_from_wire(payload)
