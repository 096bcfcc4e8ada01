"""Load application settings from config/settings.yaml."""

import os
from pathlib import Path
from typing import Any

import yaml

_DEFAULTS: dict[str, Any] = {
    "event_bus": {
        "channel": "domain-events",
        "stream_key": "domain:events",
        "dlq_suffix": "-dlq",
        "default_source": None,
        # [{event_type: "order.paid", handler: "package.module:callable"}]
        "subscriptions": [],
    },
    "kafka": {
        "bootstrap_servers": "localhost:9092",
        "group_id": "eventrail",
        "client_id": "eventrail",
        "auto_offset_reset": "latest",
        "acks": "all",
        "poll_timeout_ms": 1000,
        "max_records": 100,
    },
    "redis": {
        "url": "redis://localhost:6379/0",
        "consumer_group": "eventrail",
        "batch_size": 100,
        "block_ms": 5000,
        "claim_idle_ms": 30000,
        "error_backoff": 1.0,
        "maxlen": None,
    },
    "event_store": {
        "db_path": "data/event_store.db",
        "busy_timeout": 5000,
    },
    "tracing": {
        "enabled": False,
        "tracer_name": "event-bus",
    },
    "logging": {
        "file": "logs/eventrail.log",
        "level": "INFO",
        "log_to_console": True,
        "max_bytes": 10485760,  # 10 MB
        "backup_count": 3,
    },
}

# env var -> dot path
_ENV_OVERRIDES = {
    "EVENTRAIL_KAFKA_BOOTSTRAP_SERVERS": "kafka.bootstrap_servers",
    "EVENTRAIL_REDIS_URL": "redis.url",
    "EVENTRAIL_STORE_PATH": "event_store.db_path",
    "EVENTRAIL_LOG_LEVEL": "logging.level",
}

_cached: dict[str, Any] | None = None


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge overlay into base recursively. Mutates base."""
    for key, value in overlay.items():
        if value is None:
            continue
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def get_default_settings() -> dict[str, Any]:
    """Return a deep copy of default settings."""
    return _deep_copy_nested(_DEFAULTS)


def get_setting(settings: dict[str, Any], path: str, default: Any = None) -> Any:
    """Get a nested value by dot path (e.g. 'kafka.bootstrap_servers')."""
    current: Any = settings
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def _set_setting(settings: dict[str, Any], path: str, value: Any) -> None:
    *parents, leaf = path.split(".")
    current = settings
    for part in parents:
        current = current.setdefault(part, {})
    current[leaf] = value


def _apply_env_overrides(settings: dict[str, Any]) -> None:
    for env_var, path in _ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value:
            _set_setting(settings, path, value)


def reload_settings() -> None:
    """Clear the settings cache. Call after config files change."""
    global _cached
    _cached = None


def load_settings(config_dir: Path | None = None) -> dict[str, Any]:
    """Load settings from config/settings.yaml. Returns merged defaults + file values + env overrides."""
    global _cached
    if _cached is not None:
        return _cached

    if config_dir is None:
        config_dir = Path(__file__).resolve().parent.parent / "config"
    path = config_dir / "settings.yaml"

    result = get_default_settings()

    if path.exists():
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                _deep_merge(result, data)
        except (yaml.YAMLError, OSError):
            pass

    _apply_env_overrides(result)
    _cached = result
    return result


def _deep_copy_nested(obj: Any) -> Any:
    """Return a deep copy of nested dicts/lists for defaults."""
    if isinstance(obj, dict):
        return {k: _deep_copy_nested(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_deep_copy_nested(x) for x in obj]
    return obj
