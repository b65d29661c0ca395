"""Configuration loading and validation.

Reads ``rendezvous.toml`` from a config directory, resolves ``${VAR}``
environment references, and returns a validated ``RendezvousConfig``::

    [rendezvous]
    name = "rendezvous"

    [rendezvous.logging]
    level = "INFO"
    format = "json"

    [rendezvous.db]
    name = "rendezvous"

    [sync]
    interval_hours = 6
    window_days = 30
    full_refetch_hours = 6
    users = ["alice", "bob"]

    [providers.google]
    client_id = "${GOOGLE_OAUTH_CLIENT_ID}"
    client_secret = "${GOOGLE_OAUTH_CLIENT_SECRET}"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

CONFIG_FILENAME = "rendezvous.toml"

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_LOG_FORMATS = {"text", "json"}


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [rendezvous.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    """Database configuration from [rendezvous.db] section."""

    name: str = "rendezvous"
    schema: str | None = None


@dataclass
class SyncConfig:
    """Sync scheduling from the [sync] section."""

    interval_hours: float = 6.0
    window_days: int = 30
    full_refetch_hours: float = 6.0
    fetch_timeout_s: float = 30.0
    refresh_threshold_minutes: float = 5.0
    timezone: str = "UTC"
    users: list[str] = field(default_factory=list)


@dataclass
class GoogleProviderConfig:
    client_id: str
    client_secret: str
    calendar_ids: list[str] = field(default_factory=lambda: ["primary"])


@dataclass
class MicrosoftProviderConfig:
    client_id: str
    client_secret: str
    tenant: str = "common"
    calendar_ids: list[str] = field(default_factory=list)


@dataclass
class LocalProviderConfig:
    path: str


@dataclass
class RendezvousConfig:
    name: str = "rendezvous"
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    db: DatabaseConfig = field(default_factory=DatabaseConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    google: GoogleProviderConfig | None = None
    microsoft: MicrosoftProviderConfig | None = None
    local: LocalProviderConfig | None = None


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values are returned
    unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s*, reporting every missing one at once."""
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


def _section(data: dict, key: str, where: str) -> dict:
    value = data.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{where}] must be a table")
    return value


def _positive_number(section: dict, key: str, default: float, where: str) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
        raise ConfigError(f"{where}.{key} must be a positive number, got {value!r}")
    return float(value)


def _string_list(section: dict, key: str, default: list[str], where: str) -> list[str]:
    value = section.get(key, default)
    if not isinstance(value, list) or not all(isinstance(v, str) and v.strip() for v in value):
        raise ConfigError(f"{where}.{key} must be a list of non-empty strings")
    return [v.strip() for v in value]


def _required_string(section: dict, key: str, where: str) -> str:
    value = section.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{where}.{key} is required and must be a non-empty string")
    return value.strip()


def _parse_logging(section: dict) -> LoggingConfig:
    level = str(section.get("level", "INFO")).upper()
    if level not in _VALID_LOG_LEVELS:
        raise ConfigError(f"rendezvous.logging.level must be one of {sorted(_VALID_LOG_LEVELS)}")
    fmt = str(section.get("format", "text")).lower()
    if fmt not in _VALID_LOG_FORMATS:
        raise ConfigError("rendezvous.logging.format must be 'text' or 'json'")
    log_root = section.get("log_root")
    if log_root is not None and not isinstance(log_root, str):
        raise ConfigError("rendezvous.logging.log_root must be a string")
    return LoggingConfig(level=level, format=fmt, log_root=log_root)


def _parse_sync(section: dict) -> SyncConfig:
    window_days = section.get("window_days", 30)
    if isinstance(window_days, bool) or not isinstance(window_days, int) or window_days < 1:
        raise ConfigError(f"sync.window_days must be a positive integer, got {window_days!r}")
    timezone = section.get("timezone", "UTC")
    if not isinstance(timezone, str) or not timezone.strip():
        raise ConfigError("sync.timezone must be a non-empty string")
    return SyncConfig(
        interval_hours=_positive_number(section, "interval_hours", 6.0, "sync"),
        window_days=window_days,
        full_refetch_hours=_positive_number(section, "full_refetch_hours", 6.0, "sync"),
        fetch_timeout_s=_positive_number(section, "fetch_timeout_s", 30.0, "sync"),
        refresh_threshold_minutes=_positive_number(
            section, "refresh_threshold_minutes", 5.0, "sync"
        ),
        timezone=timezone.strip(),
        users=_string_list(section, "users", [], "sync"),
    )


def _parse_providers(providers: dict, config: RendezvousConfig) -> None:
    unknown = sorted(set(providers) - {"google", "microsoft", "local"})
    if unknown:
        raise ConfigError(f"Unknown provider section(s): {', '.join(unknown)}")

    if "google" in providers:
        google = _section(providers, "google", "providers.google")
        config.google = GoogleProviderConfig(
            client_id=_required_string(google, "client_id", "providers.google"),
            client_secret=_required_string(google, "client_secret", "providers.google"),
            calendar_ids=_string_list(google, "calendar_ids", ["primary"], "providers.google"),
        )
    if "microsoft" in providers:
        microsoft = _section(providers, "microsoft", "providers.microsoft")
        config.microsoft = MicrosoftProviderConfig(
            client_id=_required_string(microsoft, "client_id", "providers.microsoft"),
            client_secret=_required_string(microsoft, "client_secret", "providers.microsoft"),
            tenant=str(microsoft.get("tenant", "common")).strip() or "common",
            calendar_ids=_string_list(microsoft, "calendar_ids", [], "providers.microsoft"),
        )
    if "local" in providers:
        local = _section(providers, "local", "providers.local")
        config.local = LocalProviderConfig(
            path=_required_string(local, "path", "providers.local")
        )


def load_config(config_path: Path) -> RendezvousConfig:
    """Load and validate ``rendezvous.toml``.

    Parameters
    ----------
    config_path:
        Directory containing ``rendezvous.toml``, or the file itself.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or has invalid values.
    """
    toml_path = config_path / CONFIG_FILENAME if config_path.is_dir() else config_path

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    data = resolve_env_vars(data)

    root = _section(data, "rendezvous", "rendezvous")
    config = RendezvousConfig(name=str(root.get("name", "rendezvous")))
    config.logging = _parse_logging(_section(root, "logging", "rendezvous.logging"))

    db = _section(root, "db", "rendezvous.db")
    db_name = db.get("name", "rendezvous")
    if not isinstance(db_name, str) or not db_name.strip():
        raise ConfigError("rendezvous.db.name must be a non-empty string")
    schema = db.get("schema")
    if schema is not None and not isinstance(schema, str):
        raise ConfigError("rendezvous.db.schema must be a string")
    config.db = DatabaseConfig(name=db_name.strip(), schema=schema)

    config.sync = _parse_sync(_section(data, "sync", "sync"))
    _parse_providers(_section(data, "providers", "providers"), config)
    return config
