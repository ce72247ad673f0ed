"""Tests for engine configuration loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from bookbridge.config import (
    CONFIG_FILENAME,
    BookbridgeConfig,
    ConfigError,
    EngineSettings,
    load_config,
    resolve_env_vars,
)
from bookbridge.models import CalendarProviderName

pytestmark = pytest.mark.unit

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

FULL_TOML = """\
[engine]
slot_minutes = 15
lookahead_days = 14
max_alternatives = 3
request_timeout_s = 5
branch_timeout_s = 8.5
max_concurrency = 4
default_timezone = "America/New_York"

[engine.logging]
level = "debug"
format = "json"
log_root = "/var/log/bookbridge"

[providers.google]
client_id = "google-client"
client_secret = "${GOOGLE_SECRET}"
redirect_uri = "http://localhost:40300/api/oauth/google/callback"

[providers.outlook]
client_id = "outlook-client"
client_secret = "outlook-secret"
redirect_uri = "http://localhost:40300/api/oauth/outlook/callback"
authority = "organizations"

[[connections]]
tenant_id = "salon-1"
provider = "google"
calendar_id = "primary"
name = "Front desk"
access_token = "g-access"
refresh_token = "g-refresh"
is_primary = true

[[connections]]
tenant_id = "salon-1"
id = "anna"
provider = "Outlook"
calendar_id = "AAMk-anna"
staff_member = "Anna"
access_token = "o-access"
"""

MINIMAL_TOML = """\
[engine]
"""


def _write_toml(tmp_path: Path, content: str) -> Path:
    """Write *content* to bookbridge.toml inside *tmp_path* and return the directory."""
    (tmp_path / CONFIG_FILENAME).write_text(content)
    return tmp_path


# ---------------------------------------------------------------------------
# Happy-path tests
# ---------------------------------------------------------------------------


def test_load_full_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("GOOGLE_SECRET", "from-env")
    config = load_config(_write_toml(tmp_path, FULL_TOML))

    assert isinstance(config, BookbridgeConfig)
    assert config.engine == EngineSettings(
        slot_minutes=15,
        lookahead_days=14,
        max_alternatives=3,
        request_timeout_s=5.0,
        branch_timeout_s=8.5,
        max_concurrency=4,
        default_timezone="America/New_York",
    )
    assert config.logging.level == "DEBUG"
    assert config.logging.format == "json"
    assert config.logging.log_root == "/var/log/bookbridge"

    google = config.provider_settings(CalendarProviderName.google)
    assert google.client_secret == "from-env"
    assert google.is_configured
    assert config.provider_settings(CalendarProviderName.outlook).authority == "organizations"


def test_connections_grouped_by_tenant(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("GOOGLE_SECRET", "from-env")
    config = load_config(_write_toml(tmp_path, FULL_TOML))

    connections = config.connections["salon-1"]
    assert [conn.id for conn in connections] == ["google:primary", "anna"]
    front_desk, anna = connections
    assert front_desk.is_primary
    assert front_desk.credentials.refresh_token == "g-refresh"
    assert front_desk.timezone == "America/New_York"
    assert anna.provider is CalendarProviderName.outlook
    assert anna.staff_member == "Anna"
    assert anna.credentials.refresh_token is None


def test_minimal_config_uses_defaults(tmp_path: Path):
    config = load_config(_write_toml(tmp_path, MINIMAL_TOML))
    assert config.engine == EngineSettings()
    assert config.connections == {}
    assert not config.provider_settings(CalendarProviderName.google).is_configured


# ---------------------------------------------------------------------------
# Validation errors
# ---------------------------------------------------------------------------


def test_missing_file(tmp_path: Path):
    with pytest.raises(ConfigError, match="Config file not found"):
        load_config(tmp_path)


def test_invalid_toml(tmp_path: Path):
    with pytest.raises(ConfigError, match="Invalid TOML"):
        load_config(_write_toml(tmp_path, "[engine\n"))


@pytest.mark.parametrize(
    ("snippet", "message"),
    [
        ("[engine]\nslot_minutes = 0\n", "engine.slot_minutes"),
        ("[engine]\nbranch_timeout_s = 'soon'\n", "engine.branch_timeout_s"),
        ("[engine]\ndefault_timezone = 'Nowhere/City'\n", "engine.default_timezone"),
        ("[engine.logging]\nformat = 'xml'\n", "engine.logging.format"),
        ("[providers.caldav]\nclient_id = 'x'\n", "Unknown provider"),
    ],
)
def test_invalid_values(tmp_path: Path, snippet: str, message: str):
    with pytest.raises(ConfigError, match=message):
        load_config(_write_toml(tmp_path, snippet))


def test_connection_requires_tenant(tmp_path: Path):
    toml = '[[connections]]\nprovider = "google"\naccess_token = "a"\n'
    with pytest.raises(ConfigError, match=r"connections\[0\].tenant_id"):
        load_config(_write_toml(tmp_path, toml))


def test_connection_requires_access_token(tmp_path: Path):
    toml = '[[connections]]\ntenant_id = "t"\nprovider = "google"\n'
    with pytest.raises(ConfigError, match=r"connections\[0\].access_token"):
        load_config(_write_toml(tmp_path, toml))


def test_unresolved_env_var(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("GOOGLE_SECRET", raising=False)
    with pytest.raises(ConfigError, match="GOOGLE_SECRET"):
        load_config(_write_toml(tmp_path, FULL_TOML))


# ---------------------------------------------------------------------------
# resolve_env_vars
# ---------------------------------------------------------------------------


def test_resolve_env_vars_walks_nested_values(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("TOKEN", "abc")
    resolved = resolve_env_vars({"a": ["x-${TOKEN}", 3], "b": {"c": "${TOKEN}"}, "d": None})
    assert resolved == {"a": ["x-abc", 3], "b": {"c": "abc"}, "d": None}


def test_resolve_env_vars_reports_all_missing(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("MISSING_A", raising=False)
    monkeypatch.delenv("MISSING_B", raising=False)
    with pytest.raises(ConfigError, match="MISSING_A, MISSING_B"):
        resolve_env_vars("${MISSING_A}/${MISSING_B}")
