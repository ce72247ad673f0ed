"""Engine configuration loading and validation.

Reads bookbridge.toml from a config directory, parses all sections, and returns
a validated BookbridgeConfig dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from bookbridge.models import (
    DEFAULT_TIMEZONE,
    CalendarConnection,
    CalendarProviderName,
    OAuthCredentials,
    ensure_valid_timezone,
)

CONFIG_FILENAME = "bookbridge.toml"

# Pattern matching ${VAR_NAME}: alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when engine configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [engine.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class ProviderOAuthConfig:
    """OAuth application settings for one provider from [providers.<name>]."""

    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = ""
    authority: str = "common"

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)


@dataclass
class EngineSettings:
    """Tunables for the orchestrator and provider clients from [engine].

    ``lookahead_days`` and ``max_alternatives`` bound the search for
    alternative slots after a conflict. ``branch_timeout_s`` applies to each
    connection in a fan-out independently; ``request_timeout_s`` applies to
    every individual HTTP call.
    """

    slot_minutes: int = 30
    lookahead_days: int = 7
    max_alternatives: int = 5
    request_timeout_s: float = 10.0
    branch_timeout_s: float = 15.0
    max_concurrency: int = 8
    default_timezone: str = DEFAULT_TIMEZONE


@dataclass
class BookbridgeConfig:
    """Parsed and validated engine configuration."""

    engine: EngineSettings = field(default_factory=EngineSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    providers: dict[CalendarProviderName, ProviderOAuthConfig] = field(default_factory=dict)
    connections: dict[str, list[CalendarConnection]] = field(default_factory=dict)

    def provider_settings(self, provider: CalendarProviderName) -> ProviderOAuthConfig:
        return self.providers.get(provider, ProviderOAuthConfig())


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

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
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
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
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _positive_int(section: dict[str, Any], key: str, default: int, path: str) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive integer.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be a positive integer.")
    return value


def _positive_float(section: dict[str, Any], key: str, default: float, path: str) -> float:
    raw = section.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive number.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be a positive number.")
    return value


def _parse_engine(engine_section: dict[str, Any]) -> EngineSettings:
    timezone = str(engine_section.get("default_timezone", DEFAULT_TIMEZONE))
    try:
        timezone = ensure_valid_timezone(timezone)
    except ValueError as exc:
        raise ConfigError(f"Invalid engine.default_timezone: {exc}") from exc

    return EngineSettings(
        slot_minutes=_positive_int(engine_section, "slot_minutes", 30, "engine"),
        lookahead_days=_positive_int(engine_section, "lookahead_days", 7, "engine"),
        max_alternatives=_positive_int(engine_section, "max_alternatives", 5, "engine"),
        request_timeout_s=_positive_float(engine_section, "request_timeout_s", 10.0, "engine"),
        branch_timeout_s=_positive_float(engine_section, "branch_timeout_s", 15.0, "engine"),
        max_concurrency=_positive_int(engine_section, "max_concurrency", 8, "engine"),
        default_timezone=timezone,
    )


def _parse_logging(engine_section: dict[str, Any]) -> LoggingConfig:
    logging_section = engine_section.get("logging", {})
    log_level = str(logging_section.get("level", "INFO")).upper()
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid engine.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    return LoggingConfig(
        level=log_level,
        format=log_format,
        log_root=logging_section.get("log_root"),
    )


def _parse_provider_name(raw: Any, path: str) -> CalendarProviderName:
    try:
        return CalendarProviderName(str(raw).strip().lower())
    except ValueError as exc:
        known = ", ".join(p.value for p in CalendarProviderName)
        raise ConfigError(f"Unknown provider in {path}: {raw!r}. Expected one of: {known}") from exc


def _parse_providers(raw_providers: Any) -> dict[CalendarProviderName, ProviderOAuthConfig]:
    if not isinstance(raw_providers, dict):
        raise ConfigError("[providers] must be a TOML table")

    providers: dict[CalendarProviderName, ProviderOAuthConfig] = {}
    for raw_name, section in raw_providers.items():
        provider = _parse_provider_name(raw_name, f"providers.{raw_name}")
        if not isinstance(section, dict):
            raise ConfigError(f"providers.{raw_name} must be a TOML table")
        providers[provider] = ProviderOAuthConfig(
            client_id=str(section.get("client_id", "")).strip(),
            client_secret=str(section.get("client_secret", "")).strip(),
            redirect_uri=str(section.get("redirect_uri", "")).strip(),
            authority=str(section.get("authority", "common")).strip() or "common",
        )
    return providers


def _parse_connection_entry(
    entry: Any, index: int, default_timezone: str
) -> tuple[str, CalendarConnection]:
    """Parse and validate one ``[[connections]]`` entry."""
    entry_path = f"connections[{index}]"
    if not isinstance(entry, dict):
        raise ConfigError(f"{entry_path} must be a TOML table")

    tenant_id = entry.get("tenant_id")
    if not isinstance(tenant_id, str) or not tenant_id.strip():
        raise ConfigError(f"{entry_path}.tenant_id must be a non-empty string")

    access_token = entry.get("access_token")
    if not isinstance(access_token, str) or not access_token.strip():
        raise ConfigError(f"{entry_path}.access_token must be a non-empty string")

    provider = _parse_provider_name(entry.get("provider"), f"{entry_path}.provider")
    calendar_id = str(entry.get("calendar_id", "primary"))
    try:
        connection = CalendarConnection(
            id=str(entry.get("id", "")),
            provider=provider,
            calendar_id=calendar_id,
            name=str(entry.get("name", calendar_id)),
            staff_member=entry.get("staff_member"),
            credentials=OAuthCredentials(
                access_token=access_token,
                refresh_token=entry.get("refresh_token"),
            ),
            is_primary=bool(entry.get("is_primary", False)),
            active=bool(entry.get("active", True)),
            timezone=str(entry.get("timezone", default_timezone)),
        )
    except ValidationError as exc:
        raise ConfigError(f"Invalid {entry_path}: {exc}") from exc
    return tenant_id.strip(), connection


def load_config(config_dir: Path) -> BookbridgeConfig:
    """Load and validate a bookbridge.toml from *config_dir*.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or holds invalid values.
    """
    toml_path = config_dir / CONFIG_FILENAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    raw_bytes = toml_path.read_bytes()
    try:
        data = tomllib.loads(raw_bytes.decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    # --- Resolve env var references before any validation ---
    data = resolve_env_vars(data)

    # --- [engine] section (optional, all fields defaulted) ---
    engine_section = data.get("engine", {})
    if not isinstance(engine_section, dict):
        raise ConfigError("[engine] must be a TOML table")
    engine = _parse_engine(engine_section)
    logging_config = _parse_logging(engine_section)

    # --- [providers.*] sections ---
    providers = _parse_providers(data.get("providers", {}))

    # --- [[connections]] array ---
    raw_connections = data.get("connections", [])
    if not isinstance(raw_connections, list):
        raise ConfigError("connections must be an array of tables")
    connections: dict[str, list[CalendarConnection]] = {}
    for i, entry in enumerate(raw_connections):
        tenant_id, connection = _parse_connection_entry(entry, i, engine.default_timezone)
        connections.setdefault(tenant_id, []).append(connection)

    return BookbridgeConfig(
        engine=engine,
        logging=logging_config,
        providers=providers,
        connections=connections,
    )
