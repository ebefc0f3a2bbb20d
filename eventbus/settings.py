"""Load event bus settings from config/settings.yaml, with environment overrides."""

import os
from pathlib import Path
from typing import Any

import yaml

_DEFAULTS: dict[str, Any] = {
    "broker": {
        "url": "amqp://localhost:5672",
        "transport": "amqp",
        "reconnect_delay": 5.0,
        "prefetch_count": 10,
        "heartbeat": 60,
    },
    "dead_letter": {
        "exchange": "dlx",
        "queue": "failed_events",
        "routing_key": "failed",
        "ttl_days": 7,
    },
    "delivery": {
        "timeout": 30.0,
        "max_attempts": 3,
        "backoff_unit": 1.0,
    },
    "history": {
        "capacity": 1000,
    },
    # Extra event types merged over the built-in table: {name: {topic, routing_key, durable}}
    "event_types": {},
    # Created on start: [{event_types, callback_url, service_name, filter_criteria}]
    "subscriptions": [],
    "logging": {
        "file": "logs/event-bus.log",
        "level": "INFO",
        "log_to_console": True,
        "max_bytes": 10485760,  # 10 MB
        "backup_count": 3,
    },
}

# env var -> dot path
_ENV_OVERRIDES = {
    "RABBITMQ_URL": "broker.url",
    "EVENT_BUS_LOG_LEVEL": "logging.level",
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
    return _deep_copy_nested(_DEFAULTS)


def get_setting(settings: dict[str, Any], path: str, default: Any = None) -> Any:
    """Get a nested value by dot path (e.g. 'broker.reconnect_delay')."""
    current: Any = settings
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def _set_path(settings: dict[str, Any], path: str, value: Any) -> None:
    *parents, leaf = path.split(".")
    current = settings
    for part in parents:
        current = current.setdefault(part, {})
    current[leaf] = value


def apply_env_overrides(settings: dict[str, Any]) -> dict[str, Any]:
    """Apply RABBITMQ_URL / EVENT_BUS_LOG_LEVEL when set and non-empty. Mutates settings."""
    for env_name, path in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            _set_path(settings, path, value)
    return settings


def reload_settings() -> None:
    """Clear the settings cache."""
    global _cached
    _cached = None


def load_settings(config_dir: Path | None = None) -> dict[str, Any]:
    """Load settings from config/settings.yaml. Returns defaults + file values + env overrides."""
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

    apply_env_overrides(result)
    _cached = result
    return result


def _deep_copy_nested(obj: Any) -> Any:
    """Return a deep copy of nested dicts/lists for defaults."""
    if isinstance(obj, dict):
        return {k: _deep_copy_nested(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_deep_copy_nested(x) for x in obj]
    return obj
