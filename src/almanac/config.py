"""Almanac configuration loading and validation.

Reads ``almanac.toml`` from a config directory, parses all sections, and
returns a validated :class:`AlmanacConfig` dataclass.  A missing file yields
defaults so a fresh install works with environment variables alone.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from almanac.models import SelfResponse

CONFIG_FILENAME = "almanac.toml"
CONFIG_DIR_ENV = "ALMANAC_CONFIG_DIR"
DEFAULT_CONFIG_DIR = Path("~/.config/almanac")

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_REDIRECT_URI = "http://127.0.0.1:8765/oauth/callback"
DEFAULT_SCOPES: tuple[str, ...] = (
    "openid",
    "email",
    "https://www.googleapis.com/auth/calendar.readonly",
)

# Pattern matching ${VAR_NAME}: alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_STORAGE_BACKENDS = ("file", "postgres", "memory")


class ConfigError(Exception):
    """Raised when almanac configuration is malformed or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [almanac.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class OAuthSettings:
    """OAuth client registration from [almanac.oauth].

    ``client_id`` is ``None`` when neither the file nor ``GOOGLE_CLIENT_ID``
    provides one; sign-in and refresh then fail with ``ConfigMissingError``.
    """

    client_id: str | None = None
    client_secret: str | None = None
    redirect_uri: str = DEFAULT_REDIRECT_URI
    authorize_url: str = GOOGLE_AUTHORIZE_URL
    token_url: str = GOOGLE_TOKEN_URL
    scopes: tuple[str, ...] = DEFAULT_SCOPES
    expiry_margin_seconds: int = 60


@dataclass
class SyncSettings:
    """Sliding sync window and background poll cadence from [almanac.sync]."""

    past_days: int = 14
    future_days: int = 60
    interval_seconds: float = 300.0
    api_base_url: str = "https://www.googleapis.com/calendar/v3"


@dataclass
class AutoJoinSettings:
    """Meeting auto-join scheduler from [almanac.autojoin]."""

    enabled: bool = True
    poll_interval_seconds: float = 30.0
    window_seconds: float = 120.0
    lookahead_minutes: float = 60.0
    organizer_default: SelfResponse = SelfResponse.accepted


@dataclass
class StorageSettings:
    """Where settings and encrypted credentials live, from [almanac.storage]."""

    backend: str = "file"
    path: str | None = None
    dsn: str | None = None


@dataclass
class AlmanacConfig:
    """Parsed representation of an ``almanac.toml`` file."""

    config_dir: Path
    timezone: str | None = None
    oauth: OAuthSettings = field(default_factory=OAuthSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)
    autojoin: AutoJoinSettings = field(default_factory=AutoJoinSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def data_dir(self) -> Path:
        """Directory for the file storage backend and the vault key file."""
        if self.storage.path:
            return Path(self.storage.path).expanduser()
        return self.config_dir

    @property
    def zone(self) -> ZoneInfo | None:
        return ZoneInfo(self.timezone) if self.timezone else None


def default_config_dir() -> Path:
    """Return ``$ALMANAC_CONFIG_DIR`` if set, else ``~/.config/almanac``."""
    override = os.environ.get(CONFIG_DIR_ENV)
    return Path(override).expanduser() if override else DEFAULT_CONFIG_DIR.expanduser()


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float) are returned unchanged.

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


def _section(parent: dict, name: str) -> dict:
    value = parent.get(name, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[almanac.{name}] must be a table")
    return value


def _positive_number(section: dict, key: str, default: float, *, path: str) -> float:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise ConfigError(f"{path}.{key} must be a number, got {raw!r}")
    if raw <= 0:
        raise ConfigError(f"{path}.{key} must be positive, got {raw!r}")
    return raw


def _non_negative_int(section: dict, key: str, default: int, *, path: str) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ConfigError(f"{path}.{key} must be an integer, got {raw!r}")
    if raw < 0:
        raise ConfigError(f"{path}.{key} must be >= 0, got {raw!r}")
    return raw


def _optional_str(section: dict, key: str, *, path: str) -> str | None:
    raw = section.get(key)
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise ConfigError(f"{path}.{key} must be a string when set")
    stripped = raw.strip()
    return stripped or None


def _parse_oauth(section: dict) -> OAuthSettings:
    """Parse [almanac.oauth], falling back to the ``GOOGLE_*`` environment variables."""
    path = "almanac.oauth"
    client_id = _optional_str(section, "client_id", path=path) or (
        os.environ.get("GOOGLE_CLIENT_ID") or None
    )
    client_secret = _optional_str(section, "client_secret", path=path) or (
        os.environ.get("GOOGLE_CLIENT_SECRET") or None
    )
    redirect_uri = (
        _optional_str(section, "redirect_uri", path=path)
        or os.environ.get("GOOGLE_REDIRECT_URI")
        or DEFAULT_REDIRECT_URI
    )

    scopes_raw = section.get("scopes", list(DEFAULT_SCOPES))
    if not isinstance(scopes_raw, list) or not all(isinstance(s, str) for s in scopes_raw):
        raise ConfigError(f"{path}.scopes must be a list of strings")
    if not scopes_raw:
        raise ConfigError(f"{path}.scopes must not be empty")

    margin = _non_negative_int(section, "expiry_margin_seconds", 60, path=path)

    return OAuthSettings(
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=redirect_uri,
        authorize_url=_optional_str(section, "authorize_url", path=path) or GOOGLE_AUTHORIZE_URL,
        token_url=_optional_str(section, "token_url", path=path) or GOOGLE_TOKEN_URL,
        scopes=tuple(scopes_raw),
        expiry_margin_seconds=margin,
    )


def _parse_sync(section: dict) -> SyncSettings:
    path = "almanac.sync"
    defaults = SyncSettings()
    return SyncSettings(
        past_days=_non_negative_int(section, "past_days", defaults.past_days, path=path),
        future_days=_non_negative_int(section, "future_days", defaults.future_days, path=path),
        interval_seconds=_positive_number(
            section, "interval_seconds", defaults.interval_seconds, path=path
        ),
        api_base_url=(
            _optional_str(section, "api_base_url", path=path) or defaults.api_base_url
        ).rstrip("/"),
    )


def _parse_autojoin(section: dict) -> AutoJoinSettings:
    path = "almanac.autojoin"
    defaults = AutoJoinSettings()

    enabled = section.get("enabled", defaults.enabled)
    if not isinstance(enabled, bool):
        raise ConfigError(f"{path}.enabled must be a boolean")

    organizer_raw = section.get("organizer_default", defaults.organizer_default.value)
    organizer_default = SelfResponse.parse(organizer_raw)
    if organizer_default is SelfResponse.unknown and organizer_raw != SelfResponse.unknown.value:
        raise ConfigError(
            f"{path}.organizer_default must be one of "
            f"{', '.join(member.value for member in SelfResponse)}; got {organizer_raw!r}"
        )

    return AutoJoinSettings(
        enabled=enabled,
        poll_interval_seconds=_positive_number(
            section, "poll_interval_seconds", defaults.poll_interval_seconds, path=path
        ),
        window_seconds=_positive_number(
            section, "window_seconds", defaults.window_seconds, path=path
        ),
        lookahead_minutes=_positive_number(
            section, "lookahead_minutes", defaults.lookahead_minutes, path=path
        ),
        organizer_default=organizer_default,
    )


def _parse_storage(section: dict) -> StorageSettings:
    path = "almanac.storage"
    backend = str(section.get("backend", "file")).strip().lower()
    if backend not in _STORAGE_BACKENDS:
        raise ConfigError(
            f"{path}.backend must be one of {', '.join(_STORAGE_BACKENDS)}; got {backend!r}"
        )
    dsn = _optional_str(section, "dsn", path=path) or os.environ.get("ALMANAC_DATABASE_URL")
    if backend == "postgres" and not dsn:
        raise ConfigError(f"{path}.dsn is required when backend is 'postgres'")
    return StorageSettings(
        backend=backend,
        path=_optional_str(section, "path", path=path),
        dsn=dsn,
    )


def _parse_logging(section: dict) -> LoggingConfig:
    path = "almanac.logging"
    log_level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"{path}.format must be 'text' or 'json', got {log_format!r}")
    return LoggingConfig(
        level=log_level,
        format=log_format,
        log_root=_optional_str(section, "log_root", path=path),
    )


def load_config(config_dir: Path | None = None) -> AlmanacConfig:
    """Load and validate ``almanac.toml`` from *config_dir*.

    Parameters
    ----------
    config_dir:
        Directory containing ``almanac.toml``.  Defaults to
        :func:`default_config_dir`.

    Returns
    -------
    AlmanacConfig
        Fully parsed and validated configuration.  Defaults when the file
        does not exist.

    Raises
    ------
    ConfigError
        If the file contains invalid TOML or invalid values.
    """
    config_dir = Path(config_dir).expanduser() if config_dir else default_config_dir()
    toml_path = config_dir / CONFIG_FILENAME

    data: dict[str, Any] = {}
    if toml_path.exists():
        try:
            data = tomllib.loads(toml_path.read_bytes().decode())
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc
        except UnicodeDecodeError as exc:
            raise ConfigError(f"Config file {toml_path} is not UTF-8") from exc

    data = resolve_env_vars(data)

    almanac_section = data.get("almanac", {})
    if not isinstance(almanac_section, dict):
        raise ConfigError("[almanac] must be a table")

    timezone = _optional_str(almanac_section, "timezone", path="almanac")
    if timezone is not None:
        try:
            ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ConfigError(f"Unknown almanac.timezone: {timezone!r}") from exc

    return AlmanacConfig(
        config_dir=config_dir,
        timezone=timezone,
        oauth=_parse_oauth(_section(almanac_section, "oauth")),
        sync=_parse_sync(_section(almanac_section, "sync")),
        autojoin=_parse_autojoin(_section(almanac_section, "autojoin")),
        storage=_parse_storage(_section(almanac_section, "storage")),
        logging=_parse_logging(_section(almanac_section, "logging")),
    )
