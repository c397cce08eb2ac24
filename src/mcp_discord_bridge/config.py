"""Application configuration loaded via python-decouple with typed helpers."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final, Protocol, cast

from decouple import (
    Config as DecoupleConfig,
    RepositoryEmpty,
    RepositoryEnv,
)

_DOTENV_PATH: Final[Path] = Path(".env")


def _build_decouple_config() -> DecoupleConfig:
    # Missing .env (CI/tests) falls back to an environment-only repository.
    try:
        return DecoupleConfig(RepositoryEnv(str(_DOTENV_PATH)))
    except FileNotFoundError:
        return DecoupleConfig(RepositoryEmpty())


_decouple_config: Final[DecoupleConfig] = _build_decouple_config()


@dataclass(slots=True, frozen=True)
class HttpSettings:
    """HTTP transport related settings."""

    host: str
    port: int
    path: str


@dataclass(slots=True, frozen=True)
class DiscordSettings:
    """Discord client connection settings."""

    token: str | None
    ready_timeout_seconds: float


@dataclass(slots=True, frozen=True)
class ReadSettings:
    """Default sizes for the message and member reading tools."""

    read_messages_default_limit: int
    bulk_read_default_limit: int
    category_read_default_limit: int
    members_default_limit: int


@dataclass(slots=True, frozen=True)
class Settings:
    """Top-level application settings."""

    environment: str
    http: HttpSettings
    discord: DiscordSettings
    reads: ReadSettings
    # Logging
    log_rich_enabled: bool
    log_level: str
    log_json_enabled: bool
    # Tools logging
    tools_log_enabled: bool


def _bool(value: str, *, default: bool) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y"}:
        return True
    if normalized in {"0", "false", "f", "no", "n"}:
        return False
    return default


def _int(value: str, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _float(value: str, *, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _positive(value: int, *, default: int) -> int:
    return value if value > 0 else default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""
    environment = _decouple_config("APP_ENVIRONMENT", default="development")

    http_settings = HttpSettings(
        host=_decouple_config("HTTP_HOST", default="127.0.0.1"),
        port=_int(_decouple_config("HTTP_PORT", default="8766"), default=8766),
        path=_decouple_config("HTTP_PATH", default="/mcp/"),
    )

    discord_settings = DiscordSettings(
        token=_decouple_config("DISCORD_TOKEN", default="").strip() or None,
        ready_timeout_seconds=_float(_decouple_config("DISCORD_READY_TIMEOUT_SECONDS", default="30"), default=30.0),
    )

    read_settings = ReadSettings(
        read_messages_default_limit=_positive(
            _int(_decouple_config("READ_MESSAGES_DEFAULT_LIMIT", default="50"), default=50), default=50
        ),
        bulk_read_default_limit=_positive(
            _int(_decouple_config("BULK_READ_DEFAULT_LIMIT", default="200"), default=200), default=200
        ),
        category_read_default_limit=_positive(
            _int(_decouple_config("CATEGORY_READ_DEFAULT_LIMIT", default="10"), default=10), default=10
        ),
        members_default_limit=_positive(
            _int(_decouple_config("MEMBERS_DEFAULT_LIMIT", default="100"), default=100), default=100
        ),
    )

    return Settings(
        environment=environment,
        http=http_settings,
        discord=discord_settings,
        reads=read_settings,
        log_rich_enabled=_bool(_decouple_config("LOG_RICH_ENABLED", default="true"), default=True),
        log_level=_decouple_config("LOG_LEVEL", default="INFO"),
        log_json_enabled=_bool(_decouple_config("LOG_JSON_ENABLED", default="false"), default=False),
        tools_log_enabled=_bool(_decouple_config("TOOLS_LOG_ENABLED", default="true"), default=True),
    )


class _CacheClearable(Protocol):
    def cache_clear(self) -> None: ...


def clear_settings_cache() -> None:
    """Clear the lru_cache for get_settings in a type-checker-friendly way."""
    cache_clear = getattr(cast(_CacheClearable, get_settings), "cache_clear", None)
    if callable(cache_clear):
        cache_clear()
