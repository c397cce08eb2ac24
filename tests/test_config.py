from __future__ import annotations

from mcp_discord_bridge.config import clear_settings_cache, get_settings


def test_defaults(isolated_env):
    settings = get_settings()
    assert settings.environment == "test"
    assert settings.discord.token is None
    assert settings.discord.ready_timeout_seconds == 30.0
    assert settings.http.port == 8766
    assert settings.reads.read_messages_default_limit == 50
    assert settings.reads.bulk_read_default_limit == 200
    assert settings.reads.category_read_default_limit == 10
    assert settings.reads.members_default_limit == 100
    assert settings.tools_log_enabled is False


def test_env_overrides_and_cache(isolated_env, monkeypatch):
    monkeypatch.setenv("DISCORD_TOKEN", "  abc.def  ")
    monkeypatch.setenv("BULK_READ_DEFAULT_LIMIT", "500")
    monkeypatch.setenv("DISCORD_READY_TIMEOUT_SECONDS", "12.5")
    clear_settings_cache()
    settings = get_settings()
    assert settings.discord.token == "abc.def"
    assert settings.reads.bulk_read_default_limit == 500
    assert settings.discord.ready_timeout_seconds == 12.5

    monkeypatch.setenv("BULK_READ_DEFAULT_LIMIT", "50")
    assert get_settings().reads.bulk_read_default_limit == 500
    clear_settings_cache()
    assert get_settings().reads.bulk_read_default_limit == 50


def test_invalid_values_fall_back(isolated_env, monkeypatch):
    monkeypatch.setenv("HTTP_PORT", "not-a-port")
    monkeypatch.setenv("READ_MESSAGES_DEFAULT_LIMIT", "-5")
    monkeypatch.setenv("LOG_JSON_ENABLED", "maybe")
    clear_settings_cache()
    settings = get_settings()
    assert settings.http.port == 8766
    assert settings.reads.read_messages_default_limit == 50
    assert settings.log_json_enabled is False
