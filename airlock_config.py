"""Configuration loading for the airlock controller."""

from __future__ import annotations

import json
import os
from typing import Any, Dict, Optional

from airlock_controller import AirlockConfig, ConfigurationError, DoorId


DEFAULT_CONFIG_FILE = os.path.expanduser("~/.airlock/config.json")


def config_from_dict(data: Dict[str, Any]) -> AirlockConfig:
    """Build a validated AirlockConfig; missing keys keep their defaults."""
    defaults = AirlockConfig()
    unknown = set(data) - set(config_to_dict(defaults))
    if unknown:
        raise ConfigurationError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

    primary = data.get("primary", defaults.primary.value)
    try:
        primary_door = DoorId(primary)
    except ValueError:
        raise ConfigurationError(f"primary must be 'inner' or 'outer', got {primary!r}") from None

    flags = {}
    for key in ("split_buttons", "obstruction_sensors", "degraded_mode", "strict_ack"):
        value = data.get(key, getattr(defaults, key))
        if not isinstance(value, bool):
            raise ConfigurationError(f"{key} must be true or false, got {value!r}")
        flags[key] = value

    history_size = data.get("history_size", defaults.history_size)
    if not isinstance(history_size, int) or isinstance(history_size, bool):
        raise ConfigurationError(f"history_size must be an integer, got {history_size!r}")

    config = AirlockConfig(primary=primary_door, history_size=history_size, **flags)
    config.validate()
    return config


def config_to_dict(config: AirlockConfig) -> Dict[str, Any]:
    return {
        "primary": config.primary.value,
        "split_buttons": config.split_buttons,
        "obstruction_sensors": config.obstruction_sensors,
        "degraded_mode": config.degraded_mode,
        "strict_ack": config.strict_ack,
        "history_size": config.history_size,
    }


def load_config(config_file: Optional[str] = None) -> AirlockConfig:
    """Load configuration from a JSON file.

    Falls back to defaults when no file is given and the default file does
    not exist. An explicitly named file must exist.
    """
    path = config_file or DEFAULT_CONFIG_FILE
    if not os.path.exists(path):
        if config_file:
            raise ConfigurationError(f"Configuration file not found: {config_file}")
        return AirlockConfig()
    with open(path) as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration in {path} must be a JSON object")
    return config_from_dict(data)
