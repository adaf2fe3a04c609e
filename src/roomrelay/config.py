"""Configuration management for roomrelay.

Server settings live in a YAML file at $ROOMRELAY_CONFIG, or
$XDG_CONFIG_HOME/roomrelay/config.yaml (~/.config/roomrelay/config.yaml).
Environment variables override the file:

- ROOMRELAY_DB: SQLite database path (":memory:" for a shared in-memory db)
- ROOMRELAY_HOST / ROOMRELAY_PORT: bind address for `roomrelay serve`
- ROOMRELAY_LOG_LEVEL: logging level name
"""

import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import yaml


def get_config_dir() -> Path:
    """Get the configuration directory path."""
    config_home = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(config_home) / "roomrelay"


def get_config_path() -> Path:
    """Get the server config file path."""
    explicit = os.environ.get("ROOMRELAY_CONFIG")
    if explicit:
        return Path(explicit)
    return get_config_dir() / "config.yaml"


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000

_ENV_OVERRIDES: dict[str, tuple[str, type]] = {
    "ROOMRELAY_DB": ("db_path", str),
    "ROOMRELAY_HOST": ("host", str),
    "ROOMRELAY_PORT": ("port", int),
    "ROOMRELAY_LOG_LEVEL": ("log_level", str),
}


@dataclass
class ServerConfig:
    """Relay server configuration."""

    db_path: str = ":memory:"
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    log_level: str = "INFO"
    room_code_length: int = 6
    room_code_attempts: int = 16
    history_limit: int | None = None  # None sends the full history on join-room

    def __post_init__(self) -> None:
        if self.room_code_length < 4:
            raise ValueError("room_code_length must be at least 4")
        if self.room_code_attempts < 1:
            raise ValueError("room_code_attempts must be at least 1")
        if self.history_limit is not None and self.history_limit < 1:
            raise ValueError("history_limit must be positive or unset")
        self.log_level = self.log_level.upper()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ServerConfig":
        """Create from dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def save(self, path: Path | None = None) -> Path:
        """Save config to file."""
        path = path or get_config_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
        return path

    @classmethod
    def load(cls, path: Path | None = None, apply_env: bool = True) -> "ServerConfig":
        """Load config from file (or defaults), then apply environment overrides."""
        path = path or get_config_path()

        data: dict[str, Any] = {}
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

        if apply_env:
            for env_var, (key, cast) in _ENV_OVERRIDES.items():
                value = os.environ.get(env_var)
                if value:
                    data[key] = cast(value)

        return cls.from_dict(data)

    @classmethod
    def exists(cls, path: Path | None = None) -> bool:
        """Check if a config file exists."""
        return (path or get_config_path()).exists()
