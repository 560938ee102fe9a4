"""Configuration model and loader for the dev relay.

The configuration file is plain JSON (``deskthing.config.json`` by default).
Keys may be written in camelCase, as in the JavaScript tooling, or in
snake_case. The file is deep-merged over the defaults, so a config only needs
to mention the values it changes::

    {
      "development": {
        "logging": {"level": "debug"},
        "client": {"linkPort": 8081},
        "server": {"mockData": {"settings": {"volume": 30}}}
      }
    }
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import ConfigError


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "deskthing.config.json"

# keys of the upstream config format that have no effect here
IGNORED_KEYS = frozenset({"client_port", "edit_cooldown_ms"})

LOGGING_LEVELS = ("debug", "info", "warn", "error", "silent")


@dataclass
class LoggingConfig:
    level: str = "info"
    prefix: str = "[DeskThing Server]"


@dataclass
class ClientLoggingConfig:
    level: str = "info"
    prefix: str = "[DeskThing Client]"
    enable_remote_logging: bool = True


@dataclass
class ClientConfig:
    link_port: int = 8080
    link_host: str = "localhost"
    vite_location: str = "http://localhost"
    vite_port: int = 5173
    reconnect_delay_ms: int = 5000
    logging: ClientLoggingConfig = field(default_factory=ClientLoggingConfig)

    @property
    def link_url(self) -> str:
        return f"ws://{self.link_host}:{self.link_port}"

    @property
    def ui_origin(self) -> str:
        return f"{self.vite_location}:{self.vite_port}"


@dataclass
class MockData:
    settings: Dict[str, Any] = field(default_factory=dict)
    input: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ServerConfig:
    restart_debounce_ms: int = 750
    initial_scan_grace_ms: int = 1000
    respawn_grace_ms: int = 1000
    terminate_timeout_ms: int = 3000
    max_respawn_attempts: int = 3
    max_respawn_backoff_ms: int = 10000
    stable_after_ms: int = 5000
    settings_delay_ms: int = 500
    refresh_interval: float = 0.0
    time_interval: float = 15.0
    watch_suffixes: List[str] = field(default_factory=lambda: [".py"])
    mock_data: MockData = field(default_factory=MockData)


@dataclass
class DevConfig:
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    client: ClientConfig = field(default_factory=ClientConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(key: str) -> str:
    return _CAMEL_RE.sub("_", key).lower()


def deep_merge(target: Any, source: Any) -> Any:
    """Recursively merge ``source`` over ``target``; non-dicts replace outright."""
    if not isinstance(target, dict) or not isinstance(source, dict):
        return source
    merged = dict(target)
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _normalize(raw: Dict[str, Any], schema: Any) -> Dict[str, Any]:
    """Convert camelCase keys to the dataclass field names of ``schema``.

    Mock-data tables keep their keys as written; they are setting ids.
    """

    known = {f.name: f for f in fields(schema)}
    result: Dict[str, Any] = {}
    for key, value in raw.items():
        name = key if key in known else _snake(key)
        if name in IGNORED_KEYS:
            logger.debug("ignoring config key %r", key)
            continue
        if name not in known:
            raise ConfigError(f"unknown config key {key!r} in {schema.__name__}")
        default = getattr(schema(), name)
        if is_dataclass(default) and not isinstance(default, MockData) and isinstance(value, dict):
            value = _normalize(value, type(default))
        result[name] = value
    return result


def _build(schema: Any, values: Dict[str, Any]) -> Any:
    kwargs: Dict[str, Any] = {}
    for f in fields(schema):
        if f.name not in values:
            continue
        value = values[f.name]
        default = getattr(schema(), f.name)
        if is_dataclass(default):
            if not isinstance(value, dict):
                raise ConfigError(f"config section {f.name!r} must be an object")
            value = _build(type(default), value)
        kwargs[f.name] = value
    try:
        return schema(**kwargs)
    except TypeError as exc:
        raise ConfigError(f"invalid {schema.__name__} section: {exc}") from exc


def config_from_dict(raw: Dict[str, Any]) -> DevConfig:
    """Build a :class:`DevConfig` from a parsed config document."""
    if not isinstance(raw, dict):
        raise ConfigError("config root must be an object")
    section = raw.get("development", raw)
    if not isinstance(section, dict):
        raise ConfigError("'development' must be an object")
    merged = deep_merge(DevConfig().to_dict(), _normalize(section, DevConfig))
    config = _build(DevConfig, merged)
    for level in (config.logging.level, config.client.logging.level):
        if level not in LOGGING_LEVELS:
            raise ConfigError(f"invalid logging level {level!r}")
    return config


def load_config(path: Optional[Path] = None, *, root: Optional[Path] = None) -> DevConfig:
    """Load the config file, falling back to defaults when it does not exist."""
    if path is None:
        path = (root or Path.cwd()) / DEFAULT_CONFIG_NAME
    path = Path(path)
    if not path.exists():
        return DevConfig()
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"failed to read {path}: {exc}") from exc
    return config_from_dict(raw)
