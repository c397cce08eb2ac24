from typing import Any

import pytest
from fastmcp import Client
from fastmcp.exceptions import ToolError
from typer.testing import CliRunner

from mcp_discord_bridge.app import build_mcp_server
from mcp_discord_bridge.cli import app
from mcp_discord_bridge.config import clear_settings_cache, get_settings
from mcp_discord_bridge.resolver import FailureKind, ResolutionFailure, Resolver


class _RecordingServer:
    def __init__(self, sink: dict[str, Any]) -> None:
        self._sink = sink

    def run(self, **kwargs: Any) -> None:
        self._sink.update(kwargs)


def test_cli_serve_http_uses_settings(isolated_env, monkeypatch):
    runner = CliRunner()
    call_args: dict[str, Any] = {}
    monkeypatch.setattr("mcp_discord_bridge.cli.build_mcp_server", lambda: _RecordingServer(call_args))
    result = runner.invoke(app, ["serve-http"])
    assert result.exit_code == 0, result.output
    assert call_args == {"transport": "http", "host": "127.0.0.1", "port": 8766, "path": "/mcp/"}


def test_cli_serve_http_options_override(isolated_env, monkeypatch):
    runner = CliRunner()
    call_args: dict[str, Any] = {}
    monkeypatch.setattr("mcp_discord_bridge.cli.build_mcp_server", lambda: _RecordingServer(call_args))
    result = runner.invoke(app, ["serve-http", "--host", "0.0.0.0", "--port", "9100", "--path", "/bridge/"])
    assert result.exit_code == 0, result.output
    assert call_args["host"] == "0.0.0.0"
    assert call_args["port"] == 9100
    assert call_args["path"] == "/bridge/"


def test_cli_serve_http_banner_follows_rich_setting(isolated_env, monkeypatch):
    runner = CliRunner()
    banners: list[str] = []
    monkeypatch.setattr("mcp_discord_bridge.cli.build_mcp_server", lambda: _RecordingServer({}))
    monkeypatch.setattr(
        "mcp_discord_bridge.rich_logger.display_startup_banner",
        lambda settings, transport, endpoint=None: banners.append(endpoint),
    )

    result = runner.invoke(app, ["serve-http"])
    assert result.exit_code == 0, result.output
    assert banners == []

    monkeypatch.setenv("LOG_RICH_ENABLED", "true")
    clear_settings_cache()
    result = runner.invoke(app, ["serve-http"])
    assert result.exit_code == 0, result.output
    assert banners == ["http://127.0.0.1:8766/mcp/"]


def test_cli_serve_stdio_disables_tool_panels(isolated_env, monkeypatch):
    runner = CliRunner()
    call_args: dict[str, Any] = {}
    monkeypatch.setenv("TOOLS_LOG_ENABLED", "true")
    monkeypatch.setattr("mcp_discord_bridge.cli.build_mcp_server", lambda: _RecordingServer(call_args))
    result = runner.invoke(app, ["serve-stdio"])
    assert result.exit_code == 0, result.output
    assert call_args == {"transport": "stdio"}
    assert get_settings().tools_log_enabled is False


@pytest.mark.asyncio
async def test_engine_logging_survives_cli_run(isolated_env, monkeypatch, gateway, session):
    monkeypatch.setattr("mcp_discord_bridge.cli.build_mcp_server", lambda: _RecordingServer({}))
    result = CliRunner().invoke(app, ["serve-stdio"])
    assert result.exit_code == 0, result.output

    gateway.add_server("1", "Guild")
    gateway.add_server("2", "guild")
    resolved = await Resolver(session).resolve_server("guild")
    assert isinstance(resolved, ResolutionFailure)
    assert resolved.kind is FailureKind.AMBIGUOUS

    guild = gateway.add_server("100", "Home Base")
    gateway.add_channel(guild, "11", "alerts")
    gateway.add_channel(guild, "12", "Alerts")
    server = build_mcp_server(session=session)
    async with Client(server) as client:
        with pytest.raises(ToolError) as excinfo:
            await client.call_tool("send_message", {"server": "100", "channel": "alerts", "content": "hi"})
    assert "Multiple channels" in str(excinfo.value)
    assert "closed file" not in str(excinfo.value)


def test_cli_show_config_hides_token(isolated_env, monkeypatch):
    monkeypatch.setenv("DISCORD_TOKEN", "super-secret-token")
    clear_settings_cache()
    runner = CliRunner()
    result = runner.invoke(app, ["show-config"])
    assert result.exit_code == 0
    assert "super-secret-token" not in result.output
    assert "bulk_read_default_limit" in result.output
    assert "log_rich_enabled" in result.output


def test_cli_config_show_is_not_registered(isolated_env):
    result = CliRunner().invoke(app, ["config-show"])
    assert result.exit_code != 0
