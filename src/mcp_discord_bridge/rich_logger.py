"""Rich-based console logging for MCP tool calls and server startup.

Panels go to stderr so the stdio transport keeps stdout for the protocol.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from rich import box
from rich.console import Console, Group, RenderableType
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

console = Console(stderr=True, soft_wrap=True)


@dataclass
class ToolCallContext:
    """Context information for a tool call."""

    tool_name: str
    kwargs: dict[str, Any]
    server: Optional[str] = None
    channel: Optional[str] = None
    start_time: float = field(default_factory=time.perf_counter)
    end_time: Optional[float] = None
    result: Any = None
    error: Optional[Exception] = None
    success: bool = True
    _created_at: datetime = field(default_factory=datetime.now)

    @property
    def duration_ms(self) -> float:
        end = self.end_time if self.end_time else time.perf_counter()
        return (end - self.start_time) * 1000

    @property
    def timestamp(self) -> str:
        return self._created_at.strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]


def _safe_json_format(data: Any, max_length: int = 2000) -> str:
    """Format data as JSON with truncation."""
    json_str = json.dumps(data, indent=2, default=str, ensure_ascii=False)
    if len(json_str) > max_length:
        json_str = json_str[:max_length] + "\n... (truncated)"
    return json_str


def _create_syntax_panel(title: str, content: str, border_style: str) -> Panel:
    syntax = Syntax(content, "json", theme="monokai", line_numbers=False, word_wrap=True, background_color="default")
    return Panel(
        syntax,
        title=f"[bold bright_white]{title}[/bold bright_white]",
        border_style=border_style,
        box=box.ROUNDED,
        padding=(0, 1),
    )


def _duration_display(duration_ms: float) -> str:
    if duration_ms < 100:
        return f"[bold bright_green]{duration_ms:.2f}ms[/bold bright_green]"
    if duration_ms < 1000:
        return f"[bold yellow]{duration_ms:.2f}ms[/bold yellow]"
    # Bulk reads that walk many pages land here.
    return f"[bold red]{duration_ms:.2f}ms[/bold red]"


def _create_info_table(ctx: ToolCallContext) -> Table:
    """Create a table with tool call metadata."""
    table = Table(show_header=False, box=box.SIMPLE, padding=(0, 1), show_edge=False)
    table.add_column("Key", style="bold bright_yellow", width=12)
    table.add_column("Value", style="white", overflow="fold")

    table.add_row("Tool", f"[bold bright_green]{ctx.tool_name}[/bold bright_green]")
    table.add_row("Timestamp", f"[dim]{ctx.timestamp}[/dim]")
    if ctx.server:
        table.add_row("Server", f"[bright_cyan]{escape(ctx.server)}[/bright_cyan]")
    if ctx.channel:
        table.add_row("Channel", f"[bright_magenta]{escape(ctx.channel)}[/bright_magenta]")
    if ctx.end_time:
        table.add_row("Duration", _duration_display(ctx.duration_ms))
        if ctx.success:
            table.add_row("Status", "[bold bright_green]SUCCESS[/bold bright_green]")
        else:
            table.add_row("Status", "[bold bright_red]FAILED[/bold bright_red]")
    return table


def _create_result_display(ctx: ToolCallContext) -> Panel:
    if ctx.error:
        error_info: dict[str, Any] = {
            "error_type": getattr(ctx.error, "error_type", type(ctx.error).__name__),
            "error_message": str(ctx.error),
        }
        if getattr(ctx.error, "data", None):
            error_info["error_data"] = ctx.error.data  # type: ignore[attr-defined]
        return _create_syntax_panel("Error Details", _safe_json_format(error_info), "bright_red")
    return _create_syntax_panel("Result", _safe_json_format(ctx.result), "bright_green")


def log_tool_call_start(ctx: ToolCallContext) -> None:
    """Log the start of a tool call with its parameters."""
    components: list[RenderableType] = [Rule(style="bright_blue"), _create_info_table(ctx)]
    params = {k: v for k, v in ctx.kwargs.items() if k not in {"ctx", "context"}}
    if params:
        components.append(Text())
        components.append(_create_syntax_panel("Input Parameters", _safe_json_format(params), "bright_blue"))
    console.print(
        Panel(
            Group(*components),
            title="[bold bright_white on bright_blue]MCP TOOL CALL STARTED[/bold bright_white on bright_blue]",
            border_style="bright_blue",
            box=box.DOUBLE,
            padding=(1, 2),
        )
    )


def log_tool_call_end(ctx: ToolCallContext) -> None:
    """Log the end of a tool call with its result or error."""
    if not ctx.end_time:
        ctx.end_time = time.perf_counter()
    style = "bright_green" if ctx.success else "bright_red"
    components: list[RenderableType] = [
        Rule(style=style, characters="="),
        _create_info_table(ctx),
        Text(),
        _create_result_display(ctx),
    ]
    title = "MCP TOOL CALL COMPLETED" if ctx.success else "MCP TOOL CALL FAILED"
    console.print(
        Panel(
            Group(*components),
            title=f"[bold bright_white on {style}]{title}[/bold bright_white on {style}]",
            border_style=style,
            box=box.DOUBLE,
            padding=(1, 2),
        )
    )


def display_startup_banner(settings: Any, transport: str, endpoint: Optional[str] = None) -> None:
    """Print a configuration summary before the server starts accepting calls."""
    table = Table(
        box=box.ROUNDED,
        border_style="bright_blue",
        show_header=True,
        header_style="bold bright_white on bright_blue",
        title="[bold bright_yellow]MCP Discord Bridge[/bold bright_yellow]",
        padding=(0, 1),
    )
    table.add_column("Setting", style="bold bright_cyan", width=20)
    table.add_column("Value", style="white", overflow="fold")
    table.add_row("Environment", f"[bold bright_green]{settings.environment}[/bold bright_green]")
    table.add_row("Transport", transport)
    if endpoint:
        table.add_row("Endpoint", f"[bold bright_magenta]{endpoint}[/bold bright_magenta]")
    table.add_row(
        "Discord token",
        "[bold bright_green]configured[/bold bright_green]" if settings.discord.token else "[bold red]missing[/bold red]",
    )
    table.add_row("Ready timeout", f"{settings.discord.ready_timeout_seconds:.0f}s")
    table.add_row("Bulk read default", str(settings.reads.bulk_read_default_limit))
    table.add_row(
        "Tool logging",
        "[bold bright_green]ENABLED[/bold bright_green]" if settings.tools_log_enabled else "[dim]disabled[/dim]",
    )
    console.print(table)
