"""Top-level package for the MCP Discord Bridge server."""

from __future__ import annotations

from typing import Any


def build_mcp_server(session: Any = None) -> Any:
    """Lazily import and build the FastMCP server to avoid importing discord.py eagerly."""
    from .app import build_mcp_server as _build_mcp_server
    return _build_mcp_server(session)

__all__ = ["build_mcp_server"]
