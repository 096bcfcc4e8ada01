"""Settings validation and handler wiring for the runner.

Determines whether the merged settings are sufficient to start the bus and resolves
`module:callable` handler references from event_bus.subscriptions.
"""

import importlib
import inspect
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

from eventrail.events.errors import ConfigurationError
from eventrail.events.registry import EventHandler


class SubscriptionConfig(BaseModel):
    """One subscription entry: event type -> handler reference."""

    event_type: str = Field(min_length=1)
    handler: str

    @field_validator("handler")
    @classmethod
    def _check_reference(cls, value: str) -> str:
        module_name, _, attr = value.partition(":")
        if not module_name or not attr:
            raise ValueError("handler must look like 'package.module:callable'")
        return value


class EventBusConfig(BaseModel):
    channel: str = Field(min_length=1)
    stream_key: str = Field(min_length=1)
    dlq_suffix: str = Field(min_length=1)
    default_source: str | None = None
    subscriptions: list[SubscriptionConfig] = Field(default_factory=list)


class KafkaConfig(BaseModel):
    bootstrap_servers: str = Field(min_length=1)
    group_id: str = Field(min_length=1)
    client_id: str = "eventrail"
    auto_offset_reset: Literal["latest", "earliest"] = "latest"
    acks: Literal["all", 0, 1] = "all"
    poll_timeout_ms: int = Field(default=1000, gt=0)
    max_records: int = Field(default=100, gt=0)


class RedisConfig(BaseModel):
    url: str = Field(min_length=1)
    consumer_group: str = Field(min_length=1)
    batch_size: int = Field(default=100, gt=0)
    block_ms: int = Field(default=5000, ge=0)
    claim_idle_ms: int = Field(default=30000, ge=0)
    error_backoff: float = Field(default=1.0, ge=0)
    maxlen: int | None = Field(default=None, gt=0)


class EventStoreConfig(BaseModel):
    db_path: str = Field(min_length=1)
    busy_timeout: int = Field(default=5000, ge=0)


class BusSettings(BaseModel):
    """Sections of settings.yaml the runner depends on."""

    event_bus: EventBusConfig
    kafka: KafkaConfig
    redis: RedisConfig
    event_store: EventStoreConfig


def parse_settings(settings: dict[str, Any]) -> BusSettings:
    """Validate merged settings. Raises ConfigurationError listing every bad field."""
    try:
        return BusSettings.model_validate(settings)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(f"Invalid settings: {details}") from e


def is_configured(settings: dict[str, Any]) -> tuple[bool, str]:
    """Check whether settings are sufficient to start the bus. Returns (ok, reason)."""
    try:
        parse_settings(settings)
    except ConfigurationError as e:
        return False, str(e)
    return True, "ok"


def resolve_handler(reference: str) -> EventHandler:
    """Import `package.module:callable` and check it is an async callable."""
    module_name, _, attr_path = reference.partition(":")
    if not module_name or not attr_path:
        raise ConfigurationError(f"Bad handler reference {reference!r}")
    try:
        target: Any = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Handler module {module_name!r} not importable: {e}") from e
    for part in attr_path.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as e:
            raise ConfigurationError(f"{part!r} not found in {reference!r}") from e
    if not callable(target):
        raise ConfigurationError(f"Handler {reference!r} is not callable")
    if not (inspect.iscoroutinefunction(target) or inspect.iscoroutinefunction(
        getattr(target, "__call__", None)
    )):
        raise ConfigurationError(f"Handler {reference!r} must be an async callable")
    return target


def load_subscriptions(config: EventBusConfig) -> list[tuple[str, EventHandler]]:
    """Resolve every configured subscription. Raises ConfigurationError on the first bad one."""
    return [(sub.event_type, resolve_handler(sub.handler)) for sub in config.subscriptions]
