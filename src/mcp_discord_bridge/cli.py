"""Command-line interface for running the bridge and inspecting its configuration."""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from .app import build_mcp_server, configure_logging
from .config import clear_settings_cache, get_settings

console = Console()

app = typer.Typer(help="Run the MCP Discord Bridge server.", invoke_without_command=True)


@app.callback()
def _app_callback(ctx: typer.Context) -> None:
    """Default to ``serve-stdio`` when no subcommand is given."""
    if ctx.invoked_subcommand is None:
        serve_stdio()


@app.command("serve-http")
def serve_http(
    host: Optional[str] = typer.Option(None, help="Host interface for HTTP transport. Defaults to HTTP_HOST setting."),
    port: Optional[int] = typer.Option(None, help="Port for HTTP transport. Defaults to HTTP_PORT setting."),
    path: Optional[str] = typer.Option(None, help="HTTP path where the MCP endpoint is exposed."),
) -> None:
    """Run the MCP server over the Streamable HTTP transport."""
    settings = get_settings()
    resolved_host = host or settings.http.host
    resolved_port = port or settings.http.port
    resolved_path = path or settings.http.path
    configure_logging(settings)

    if settings.log_rich_enabled:
        from . import rich_logger

        rich_logger.display_startup_banner(settings, "http", f"http://{resolved_host}:{resolved_port}{resolved_path}")

    server = build_mcp_server()
    server.run(transport="http", host=resolved_host, port=resolved_port, path=resolved_path)


@app.command("serve-stdio")
def serve_stdio() -> None:
    """Run the MCP server over stdio transport for CLI integration.

    Note: All logging is redirected to stderr to avoid corrupting the stdio protocol.
    Tool debug panels are automatically disabled in stdio mode.
    """
    os.environ["TOOLS_LOG_ENABLED"] = "false"
    os.environ["LOG_RICH_ENABLED"] = "false"
    clear_settings_cache()

    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    configure_logging(get_settings())

    print("MCP Discord Bridge - Starting stdio transport...", file=sys.stderr)

    server = build_mcp_server()
    server.run(transport="stdio")


@app.command("show-config")
def show_config() -> None:
    """Print the effective configuration (the token is never shown)."""
    settings = get_settings()
    table = Table(title="MCP Discord Bridge Configuration", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("environment", settings.environment)
    table.add_row("discord.token", "set" if settings.discord.token else "missing")
    table.add_row("discord.ready_timeout_seconds", f"{settings.discord.ready_timeout_seconds:g}")
    table.add_row("http.host", settings.http.host)
    table.add_row("http.port", str(settings.http.port))
    table.add_row("http.path", settings.http.path)
    table.add_row("reads.read_messages_default_limit", str(settings.reads.read_messages_default_limit))
    table.add_row("reads.bulk_read_default_limit", str(settings.reads.bulk_read_default_limit))
    table.add_row("reads.category_read_default_limit", str(settings.reads.category_read_default_limit))
    table.add_row("reads.members_default_limit", str(settings.reads.members_default_limit))
    table.add_row("log_level", settings.log_level)
    table.add_row("log_json_enabled", str(settings.log_json_enabled))
    table.add_row("log_rich_enabled", str(settings.log_rich_enabled))
    table.add_row("tools_log_enabled", str(settings.tools_log_enabled))
    console.print(table)


if __name__ == "__main__":  # pragma: no cover - manual execution path
    app()
