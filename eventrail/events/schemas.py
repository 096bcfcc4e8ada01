"""Per-type payload schemas and envelope validation.

Envelope shape is fixed. Payload (`data`) shape is looked up by event type; types without
a registered schema accept any JSON-compatible payload.
"""

import logging
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from eventrail.events.errors import FieldError
from eventrail.events.models import Event

logger = logging.getLogger(__name__)


class MetadataSchema(BaseModel):
    """metadata section of the envelope. Unknown keys are allowed (extension fields)."""

    model_config = ConfigDict(extra="allow")

    version: str = Field(min_length=1)
    correlation_id: str | None = None
    causation_id: str | None = None
    user_id: str | None = None


class EnvelopeSchema(BaseModel):
    """Fixed envelope fields every event must carry."""

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    source: str = Field(min_length=1)
    timestamp: datetime
    data: Any = None
    metadata: MetadataSchema


def _loc_to_field(prefix: str, loc: tuple[Any, ...]) -> str:
    parts = [prefix] if prefix else []
    parts.extend(str(p) for p in loc)
    return ".".join(parts) or "<root>"


def field_errors(exc: ValidationError, prefix: str = "") -> list[FieldError]:
    """Flatten a pydantic ValidationError into FieldError items."""
    return [
        FieldError(field=_loc_to_field(prefix, tuple(err.get("loc", ()))), message=err["msg"])
        for err in exc.errors()
    ]


class SchemaRegistry:
    """Maps event type -> pydantic model validating the event's data."""

    def __init__(self) -> None:
        self._schemas: dict[str, type[BaseModel]] = {}

    def register(self, event_type: str, model: type[BaseModel]) -> None:
        if event_type in self._schemas and self._schemas[event_type] is not model:
            logger.warning("Replacing payload schema for event type %s", event_type)
        self._schemas[event_type] = model

    def schema(self, event_type: str):
        """Class decorator form of register()."""

        def decorator(model: type[BaseModel]) -> type[BaseModel]:
            self.register(event_type, model)
            return model

        return decorator

    def get(self, event_type: str) -> type[BaseModel] | None:
        return self._schemas.get(event_type)

    def __contains__(self, event_type: object) -> bool:
        return event_type in self._schemas

    def validate(self, event: Event) -> list[FieldError]:
        """Return every violated field of the envelope and payload. Empty list = valid."""
        errors: list[FieldError] = []
        try:
            EnvelopeSchema.model_validate(
                {
                    "id": event.id,
                    "type": event.type,
                    "source": event.source,
                    "timestamp": event.timestamp,
                    "data": event.data,
                    "metadata": {
                        "version": event.metadata.version,
                        "correlation_id": event.metadata.correlation_id,
                        "causation_id": event.metadata.causation_id,
                        "user_id": event.metadata.user_id,
                    },
                }
            )
        except ValidationError as e:
            errors.extend(field_errors(e))

        model = self._schemas.get(event.type) if isinstance(event.type, str) else None
        if model is not None:
            try:
                model.model_validate(event.data)
            except ValidationError as e:
                errors.extend(field_errors(e, prefix="data"))
        return errors
