from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigurationError

# Number of history entries rendered into a prompt.
HISTORY_WINDOW = 10
# Number of stored messages fetched per send before windowing.
RECENT_MESSAGES_LIMIT = 50

DEFAULT_TITLE = "New Conversation"

ENV_BACKEND_URL = "CHATFORGE_BACKEND_URL"
ENV_DEFAULT_MODEL = "CHATFORGE_DEFAULT_MODEL"


@dataclass
class ChatSettings:
    """Settings shared by the inference client, orchestrator and HTTP server."""

    # Generation backend
    backend_url: str = "http://localhost:11434"
    default_model: str = "llama3.2"
    backend_enabled: bool = True

    # Deadlines (seconds)
    request_timeout: float = 30.0
    stream_timeout: float = 300.0
    title_timeout: float = 10.0
    probe_timeout: float = 5.0

    # Minimum seconds between streamed delta callbacks
    stream_interval: float = 0.016

    # Generation defaults
    default_temperature: float = 0.7
    default_max_tokens: int = 2048

    # Storage
    history_dir: Optional[Path] = None
    log_dir: Optional[Path] = None


# YAML section -> {yaml key: settings field}
_SECTIONS: Dict[str, Dict[str, str]] = {
    "backend": {
        "url": "backend_url",
        "model": "default_model",
        "enabled": "backend_enabled",
        "request_timeout": "request_timeout",
        "stream_timeout": "stream_timeout",
        "title_timeout": "title_timeout",
        "probe_timeout": "probe_timeout",
    },
    "generation": {
        "temperature": "default_temperature",
        "max_tokens": "default_max_tokens",
        "stream_interval": "stream_interval",
    },
    "storage": {
        "history_dir": "history_dir",
        "log_dir": "log_dir",
    },
}


def _coerce(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in ("history_dir", "log_dir"):
        return Path(str(value)).expanduser().resolve()
    if name == "backend_enabled":
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if name == "default_max_tokens":
        return int(value)
    if name in ("backend_url", "default_model"):
        return str(value).strip()
    return float(value)


def load_settings(config_path: Optional[Path] = None) -> ChatSettings:
    """Load settings from a YAML file, then apply environment overrides.

    A missing ``config_path`` (or a path that does not exist) yields defaults.
    """
    data: Dict[str, Any] = {}
    if config_path is not None and Path(config_path).exists():
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load config from {config_path}: {e}") from e
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")
        data = loaded

    values: Dict[str, Any] = {}
    known = {f.name for f in fields(ChatSettings)}
    for section, mapping in _SECTIONS.items():
        section_data = data.get(section) or {}
        if not isinstance(section_data, dict):
            raise ConfigurationError(f"Config section '{section}' must be a mapping")
        for key, field_name in mapping.items():
            if key in section_data and field_name in known:
                try:
                    values[field_name] = _coerce(field_name, section_data[key])
                except (TypeError, ValueError) as e:
                    raise ConfigurationError(f"Invalid value for {section}.{key}: {e}") from e

    env_url = os.environ.get(ENV_BACKEND_URL)
    if env_url:
        values["backend_url"] = env_url.strip()
    env_model = os.environ.get(ENV_DEFAULT_MODEL)
    if env_model:
        values["default_model"] = env_model.strip()

    settings = ChatSettings(**values)
    settings.backend_url = settings.backend_url.rstrip("/")
    return settings
