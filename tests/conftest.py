from __future__ import annotations

import logging

import pytest
import structlog

import mcp_discord_bridge.app as app_module
from mcp_discord_bridge.config import clear_settings_cache
from mcp_discord_bridge.gateway import DiscordSession
from mcp_discord_bridge.models import ChannelKind

from tests.fakes import FakeGateway, make_history


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo configure_logging() so CLI runs cannot leave loggers on closed streams."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    try:
        yield
    finally:
        structlog.reset_defaults()
        app_module._LOGGING_CONFIGURED = False
        for handler in root.handlers[:]:
            # basicConfig() handlers bound to CliRunner's swapped stderr.
            if type(handler) is logging.StreamHandler and handler not in handlers:
                root.removeHandler(handler)
        root.setLevel(level)


@pytest.fixture
def isolated_env(monkeypatch):
    """Provide deterministic settings for tests and reset caches."""
    monkeypatch.setenv("APP_ENVIRONMENT", "test")
    monkeypatch.setenv("HTTP_HOST", "127.0.0.1")
    monkeypatch.setenv("HTTP_PORT", "8766")
    monkeypatch.setenv("HTTP_PATH", "/mcp/")
    monkeypatch.setenv("DISCORD_TOKEN", "")
    monkeypatch.setenv("TOOLS_LOG_ENABLED", "false")
    monkeypatch.setenv("LOG_RICH_ENABLED", "false")
    clear_settings_cache()
    try:
        yield
    finally:
        clear_settings_cache()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def session(gateway: FakeGateway) -> DiscordSession:
    return DiscordSession.attached(gateway)


@pytest.fixture
def single_server(gateway: FakeGateway) -> FakeGateway:
    """One server with a category, a couple of text channels, a voice channel and a thread."""
    guild = gateway.add_server("100", "Home Base")
    category = gateway.add_channel(guild, "200", "Projects", ChannelKind.CATEGORY)
    general = gateway.add_channel(guild, "201", "general", parent=category, history=make_history(5), topic="chatter")
    gateway.add_channel(guild, "202", "dev-log", parent=category, history=make_history(3, start_id=2_000_000, author="bob"))
    gateway.add_channel(guild, "203", "Voice Lounge", ChannelKind.VOICE, parent=category)
    gateway.add_channel(guild, "204", "release-thread", ChannelKind.THREAD, parent=general)
    gateway.add_channel(guild, "205", "Archive", ChannelKind.CATEGORY)
    return gateway


@pytest.fixture
def two_servers(gateway: FakeGateway) -> FakeGateway:
    alpha = gateway.add_server("100", "Alpha")
    beta = gateway.add_server("300", "Beta")
    gateway.add_channel(alpha, "101", "general")
    gateway.add_channel(beta, "301", "general")
    gateway.add_channel(beta, "302", "random")
    return gateway
