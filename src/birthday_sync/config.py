"""Service configuration loading and validation.

Reads ``sync.toml``, resolves ``${VAR}`` environment references and returns
a validated :class:`AppConfig`.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path("sync.toml")
CONFIG_PATH_ENV = "BIRTHDAY_SYNC_CONFIG"

# Pattern matching ${VAR_NAME}.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass(frozen=True)
class DatabaseConfig:
    dsn: str
    min_pool_size: int = 1
    max_pool_size: int = 10


@dataclass(frozen=True)
class GoogleConfig:
    client_id: str
    client_secret: str
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class SyncConfig:
    max_retries: int = 4
    base_delay_seconds: float = 1.0
    max_jitter_seconds: float = 0.5
    operation_delay_seconds: float = 0.0
    strict_mode: bool = True
    write_back_attempts: int = 3
    cleanup_delay_seconds: float = 0.15
    sweep_max_retries: int = 3


@dataclass(frozen=True)
class BulkConfig:
    concurrency: int = 5
    chunk_size: int = 5
    chunk_delay_seconds: float = 10.0


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    format: str = "text"
    file: Path | None = None


@dataclass(frozen=True)
class HebcalConfig:
    base_url: str = "https://www.hebcal.com/converter"


@dataclass(frozen=True)
class AppConfig:
    database: DatabaseConfig
    google: GoogleConfig
    sync: SyncConfig = field(default_factory=SyncConfig)
    bulk: BulkConfig = field(default_factory=BulkConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    hebcal: HebcalConfig = field(default_factory=HebcalConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

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


def _section(data: dict[str, Any], name: str, *, required: bool = False) -> dict[str, Any]:
    section = data.get(name)
    if section is None:
        if required:
            raise ConfigError(f"Missing [{name}] section in config")
        return {}
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _require_str(section: dict[str, Any], section_name: str, key: str) -> str:
    value = section.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Missing required field: {section_name}.{key}")
    return value.strip()


def _number(
    section: dict[str, Any],
    section_name: str,
    key: str,
    default: float,
    *,
    minimum: float = 0,
    integer: bool = False,
) -> Any:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int | float):
        raise ConfigError(f"{section_name}.{key} must be a number, got {raw!r}")
    if integer and not isinstance(raw, int):
        raise ConfigError(f"{section_name}.{key} must be an integer, got {raw!r}")
    if raw < minimum:
        raise ConfigError(f"{section_name}.{key} must be >= {minimum}, got {raw!r}")
    return int(raw) if integer else float(raw)


def parse_config(data: dict[str, Any]) -> AppConfig:
    """Validate an already-parsed TOML document."""
    data = resolve_env_vars(data)

    db_section = _section(data, "database", required=True)
    database = DatabaseConfig(
        dsn=_require_str(db_section, "database", "dsn"),
        min_pool_size=_number(db_section, "database", "min_pool_size", 1, minimum=1, integer=True),
        max_pool_size=_number(
            db_section, "database", "max_pool_size", 10, minimum=1, integer=True
        ),
    )
    if database.max_pool_size < database.min_pool_size:
        raise ConfigError("database.max_pool_size must be >= database.min_pool_size")

    google_section = _section(data, "google", required=True)
    google = GoogleConfig(
        client_id=_require_str(google_section, "google", "client_id"),
        client_secret=_require_str(google_section, "google", "client_secret"),
        timeout_seconds=_number(google_section, "google", "timeout_seconds", 30.0, minimum=1),
    )

    sync_section = _section(data, "sync")
    strict_mode = sync_section.get("strict_mode", True)
    if not isinstance(strict_mode, bool):
        raise ConfigError("sync.strict_mode must be a boolean")
    sync = SyncConfig(
        max_retries=_number(sync_section, "sync", "max_retries", 4, integer=True),
        base_delay_seconds=_number(sync_section, "sync", "base_delay_seconds", 1.0),
        max_jitter_seconds=_number(sync_section, "sync", "max_jitter_seconds", 0.5),
        operation_delay_seconds=_number(sync_section, "sync", "operation_delay_seconds", 0.0),
        strict_mode=strict_mode,
        write_back_attempts=_number(
            sync_section, "sync", "write_back_attempts", 3, minimum=1, integer=True
        ),
        cleanup_delay_seconds=_number(sync_section, "sync", "cleanup_delay_seconds", 0.15),
        sweep_max_retries=_number(sync_section, "sync", "sweep_max_retries", 3, integer=True),
    )

    bulk_section = _section(data, "bulk")
    bulk = BulkConfig(
        concurrency=_number(bulk_section, "bulk", "concurrency", 5, minimum=1, integer=True),
        chunk_size=_number(bulk_section, "bulk", "chunk_size", 5, minimum=1, integer=True),
        chunk_delay_seconds=_number(bulk_section, "bulk", "chunk_delay_seconds", 10.0),
    )

    logging_section = _section(data, "logging")
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"logging.format must be 'text' or 'json', got {log_format!r}")
    log_file = logging_section.get("file")
    logging_config = LoggingConfig(
        level=str(logging_section.get("level", "INFO")).upper(),
        format=log_format,
        file=Path(log_file) if log_file else None,
    )

    hebcal_section = _section(data, "hebcal")
    hebcal = HebcalConfig(
        base_url=str(hebcal_section.get("base_url", HebcalConfig.base_url)),
    )

    return AppConfig(
        database=database,
        google=google,
        sync=sync,
        bulk=bulk,
        logging=logging_config,
        hebcal=hebcal,
    )


def load_config(path: Path | None = None) -> AppConfig:
    """Load and validate the TOML config at *path*.

    Falls back to ``$BIRTHDAY_SYNC_CONFIG`` and then ``./sync.toml``.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    if path is None:
        path = Path(os.environ.get(CONFIG_PATH_ENV, DEFAULT_CONFIG_PATH))

    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        data = tomllib.loads(path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    return parse_config(data)
