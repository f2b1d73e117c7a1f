"""calsync configuration loading and validation.

Reads ``calsync.toml``, resolves ``${VAR}`` references from the environment,
and returns a validated ``CalsyncConfig`` dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from calsync.errors import ConfigError
from calsync.models import TimeWindow
from calsync.providers import PROVIDER_TYPES

CONFIG_FILENAME = "calsync.toml"

# Pattern matching ${VAR_NAME}: alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_DB_SCHEMA_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_FEED_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.:-]+$")


@dataclass
class DatabaseConfig:
    """[database] section. Connection parameters come from the environment."""

    name: str = "calsync"
    schema: str | None = None
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class LoggingConfig:
    """Logging configuration from [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class SyncWindowConfig:
    """[sync] section."""

    window_days_back: int = 365
    window_days_forward: int = 365
    page_size: int = 200
    max_retries: int = 3

    def window(self, now: datetime) -> TimeWindow:
        return TimeWindow.around(
            now,
            days_back=self.window_days_back,
            days_forward=self.window_days_forward,
        )


@dataclass
class ProviderConfig:
    """[provider] section."""

    type: str = "graph"
    base_url: str = "https://graph.microsoft.com/v1.0"
    access_token: str | None = None
    timeout_seconds: float = 30.0


@dataclass
class FeedConfig:
    """A single mirrored calendar from [[feeds]]."""

    id: str
    calendar_id: str
    name: str = ""
    enabled: bool = True


@dataclass
class CalsyncConfig:
    """Parsed and validated calsync configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    sync: SyncWindowConfig = field(default_factory=SyncWindowConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    feeds: list[FeedConfig] = field(default_factory=list)

    def feed(self, feed_id: str) -> FeedConfig:
        for feed in self.feeds:
            if feed.id == feed_id:
                return feed
        raise ConfigError(f"Unknown feed: {feed_id!r}")


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaves pass through.

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
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {', '.join(missing)}"
        )

    return result


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a TOML table")
    return section


def _positive_int(section: dict[str, Any], path: str, key: str, default: int) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int) or raw <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive integer.")
    return raw


def _non_negative_int(section: dict[str, Any], path: str, key: str, default: int) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < 0:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a non-negative integer.")
    return raw


def _parse_database(data: dict[str, Any]) -> DatabaseConfig:
    section = _section(data, "database")
    name = str(section.get("name", "calsync")).strip()
    if not name:
        raise ConfigError("database.name must be a non-empty string")

    schema: str | None = None
    raw_schema = section.get("schema")
    if raw_schema is not None:
        if not isinstance(raw_schema, str) or not raw_schema.strip():
            raise ConfigError("database.schema must be a non-empty string when set")
        if _DB_SCHEMA_PATTERN.fullmatch(raw_schema.strip()) is None:
            raise ConfigError(
                f"Invalid database.schema: {raw_schema!r}. "
                "Expected a valid SQL identifier-style value."
            )
        schema = raw_schema.strip()

    min_pool = _positive_int(section, "database", "min_pool_size", 2)
    max_pool = _positive_int(section, "database", "max_pool_size", 10)
    if min_pool > max_pool:
        raise ConfigError("database.min_pool_size must not exceed database.max_pool_size")
    return DatabaseConfig(name=name, schema=schema, min_pool_size=min_pool, max_pool_size=max_pool)


def _parse_logging(data: dict[str, Any]) -> LoggingConfig:
    section = _section(data, "logging")
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Expected 'text' or 'json'.")
    return LoggingConfig(
        level=str(section.get("level", "INFO")).upper(),
        format=log_format,
        log_root=section.get("log_root"),
    )


def _parse_sync(data: dict[str, Any]) -> SyncWindowConfig:
    section = _section(data, "sync")
    return SyncWindowConfig(
        window_days_back=_positive_int(section, "sync", "window_days_back", 365),
        window_days_forward=_positive_int(section, "sync", "window_days_forward", 365),
        page_size=_positive_int(section, "sync", "page_size", 200),
        max_retries=_non_negative_int(section, "sync", "max_retries", 3),
    )


def _parse_provider(data: dict[str, Any]) -> ProviderConfig:
    section = _section(data, "provider")
    provider_type = str(section.get("type", "graph")).strip().lower()
    if provider_type not in PROVIDER_TYPES:
        raise ConfigError(
            f"Invalid provider.type: {provider_type!r}. "
            f"Expected one of {', '.join(sorted(PROVIDER_TYPES))}."
        )
    base_url = str(section.get("base_url", ProviderConfig.base_url)).strip()
    if not base_url.startswith(("http://", "https://")):
        raise ConfigError(f"Invalid provider.base_url: {base_url!r}")
    access_token = section.get("access_token")
    if access_token is not None and (not isinstance(access_token, str) or not access_token.strip()):
        raise ConfigError("provider.access_token must be a non-empty string when set")
    raw_timeout = section.get("timeout_seconds", 30.0)
    if (
        isinstance(raw_timeout, bool)
        or not isinstance(raw_timeout, int | float)
        or raw_timeout <= 0
    ):
        raise ConfigError(f"Invalid provider.timeout_seconds: {raw_timeout!r}")
    return ProviderConfig(
        type=provider_type,
        base_url=base_url,
        access_token=access_token.strip() if access_token else None,
        timeout_seconds=float(raw_timeout),
    )


def _parse_feeds(data: dict[str, Any]) -> list[FeedConfig]:
    raw_feeds = data.get("feeds", [])
    if not isinstance(raw_feeds, list):
        raise ConfigError("feeds must be an array of tables ([[feeds]])")

    feeds: list[FeedConfig] = []
    seen: set[str] = set()
    for index, entry in enumerate(raw_feeds):
        path = f"feeds[{index}]"
        if not isinstance(entry, dict):
            raise ConfigError(f"{path} must be a TOML table")
        feed_id = entry.get("id")
        if not isinstance(feed_id, str) or _FEED_ID_PATTERN.fullmatch(feed_id) is None:
            raise ConfigError(f"{path}.id must be a non-empty identifier string")
        if feed_id in seen:
            raise ConfigError(f"Duplicate feed id: {feed_id!r}")
        seen.add(feed_id)
        calendar_id = entry.get("calendar_id")
        if not isinstance(calendar_id, str) or not calendar_id.strip():
            raise ConfigError(f"{path}.calendar_id must be a non-empty string")
        feeds.append(
            FeedConfig(
                id=feed_id,
                calendar_id=calendar_id.strip(),
                name=str(entry.get("name", feed_id)),
                enabled=bool(entry.get("enabled", True)),
            )
        )
    return feeds


def load_config(path: Path) -> CalsyncConfig:
    """Load and validate ``calsync.toml``.

    Parameters
    ----------
    path:
        The TOML file, or a directory containing ``calsync.toml``.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or fails validation.
    """
    toml_path = path / CONFIG_FILENAME if path.is_dir() else path

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    data = resolve_env_vars(data)

    return CalsyncConfig(
        database=_parse_database(data),
        logging=_parse_logging(data),
        sync=_parse_sync(data),
        provider=_parse_provider(data),
        feeds=_parse_feeds(data),
    )
