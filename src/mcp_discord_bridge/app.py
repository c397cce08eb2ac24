"""Application factory for the MCP Discord Bridge server."""

from __future__ import annotations

import inspect
import logging
import time
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from dataclasses import replace
from functools import wraps
from typing import Annotated, Any, AsyncContextManager, Callable, Optional

import discord
import structlog
from fastmcp import Context, FastMCP
from pydantic import Field

from . import rich_logger
from .config import Settings, get_settings
from .formatting import bulk_payload, category_messages_payload, entity_ref, message_page_payload
from .gateway import ClientNotReadyError, DiscordSession
from .models import TEXT_SOURCE_KINDS, MessageSnapshot
from .pagination import Finite, Paginator, retrieval_target
from .resolver import Resolution, ResolutionFailure, Resolver

logger = logging.getLogger(__name__)

TOOL_METRICS: defaultdict[str, dict[str, int]] = defaultdict(lambda: {"calls": 0, "errors": 0})
TOOL_CLUSTER_MAP: dict[str, str] = {}
TOOL_METADATA: dict[str, dict[str, Any]] = {}

CLUSTER_SETUP = "infrastructure"
CLUSTER_DIRECTORY = "directory"
CLUSTER_MESSAGING = "messaging"
CLUSTER_REACTIONS = "reactions"
CLUSTER_ADMIN = "administration"

# Upper bound of a member timeout accepted by Discord (28 days).
MAX_TIMEOUT_MINUTES = 40320
MAX_MEMBERS_LIMIT = 1000

_LOGGING_CONFIGURED = False


class ToolExecutionError(Exception):
    def __init__(self, error_type: str, message: str, *, recoverable: bool = True, data: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.error_type = error_type
        self.recoverable = recoverable
        self.data = data or {}

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "type": self.error_type,
                "message": str(self),
                "recoverable": self.recoverable,
                "data": self.data,
            }
        }


def configure_logging(settings: Settings) -> None:
    """Initialize structlog and stdlib logging formatting."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if settings.log_json_enabled:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.processors.KeyValueRenderer(key_order=["event", "level"]))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        # Route through stdlib handlers so serve-stdio's stderr redirect applies.
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=level)

    # discord.py logs every gateway heartbeat and resume at DEBUG/INFO.
    logging.getLogger("discord").setLevel(max(level, logging.WARNING))
    logging.getLogger("mcp.server.lowlevel.server").setLevel(logging.WARNING)
    _LOGGING_CONFIGURED = True


def _record_tool_error(tool_name: str, exc: Exception) -> None:
    logger.warning(
        "tool_error",
        extra={
            "tool": tool_name,
            "error": type(exc).__name__,
            "error_message": str(exc),
        },
    )


def _register_tool(name: str, metadata: dict[str, Any]) -> None:
    TOOL_CLUSTER_MAP[name] = metadata["cluster"]
    TOOL_METADATA[name] = metadata


def _extract_argument(bound: inspect.BoundArguments, name: Optional[str]) -> Optional[str]:
    if not name:
        return None
    value = bound.arguments.get(name)
    if value is None:
        return None
    return str(value)


def _wrap_exception(tool_name: str, exc: Exception) -> ToolExecutionError:
    """Translate an exception escaping a tool into a structured tool error."""
    if isinstance(exc, ClientNotReadyError):
        return ToolExecutionError("CLIENT_NOT_READY", str(exc), recoverable=True, data={"tool": tool_name})
    if isinstance(exc, discord.NotFound):
        return ToolExecutionError(
            "NOT_FOUND",
            f"Discord could not find the requested resource: {exc.text or exc}",
            recoverable=True,
            data={"tool": tool_name, "status": exc.status, "code": exc.code},
        )
    if isinstance(exc, discord.Forbidden):
        return ToolExecutionError(
            "PERMISSION_DENIED",
            f"The bot lacks permission for this action: {exc.text or exc}",
            recoverable=False,
            data={"tool": tool_name, "status": exc.status, "code": exc.code},
        )
    if isinstance(exc, discord.HTTPException):
        return ToolExecutionError(
            "DISCORD_API_ERROR",
            f"Discord API request failed: {exc}",
            recoverable=True,
            data={"tool": tool_name, "status": exc.status, "code": exc.code},
        )
    if isinstance(exc, LookupError):
        return ToolExecutionError("NOT_FOUND", str(exc), recoverable=True, data={"tool": tool_name})
    if isinstance(exc, ValueError):
        return ToolExecutionError(
            "INVALID_ARGUMENT",
            f"Invalid argument value: {exc}. Check that all parameters have valid values.",
            recoverable=True,
            data={"tool": tool_name, "error_detail": str(exc)},
        )
    if isinstance(exc, TimeoutError):
        return ToolExecutionError(
            "TIMEOUT",
            f"Operation timed out: {exc}. Try again in a moment.",
            recoverable=True,
            data={"tool": tool_name, "error_detail": str(exc)},
        )
    error_type = type(exc).__name__
    return ToolExecutionError(
        "UNHANDLED_EXCEPTION",
        f"Unexpected error ({error_type}): {exc}",
        recoverable=False,
        data={"tool": tool_name, "original_error": error_type, "error_detail": str(exc)},
    )


def _instrument_tool(
    tool_name: str,
    *,
    cluster: str,
    complexity: str = "medium",
    server_arg: Optional[str] = "server",
    channel_arg: Optional[str] = None,
) -> Callable[[Any], Any]:
    meta = {
        "cluster": cluster,
        "complexity": complexity,
        "server_arg": server_arg,
        "channel_arg": channel_arg,
    }
    _register_tool(tool_name, meta)

    def decorator(func: Any) -> Any:
        signature = inspect.signature(func)

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            start_time = time.perf_counter()
            metrics = TOOL_METRICS[tool_name]
            metrics["calls"] += 1
            bound = signature.bind_partial(*args, **kwargs)

            settings = get_settings()
            log_ctx = None
            if settings.tools_log_enabled and settings.log_rich_enabled:
                try:
                    log_ctx = rich_logger.ToolCallContext(
                        tool_name=tool_name,
                        kwargs={k: v for k, v in bound.arguments.items() if k != "ctx"},
                        server=_extract_argument(bound, server_arg),
                        channel=_extract_argument(bound, channel_arg),
                        start_time=start_time,
                    )
                    rich_logger.log_tool_call_start(log_ctx)
                except Exception:
                    # Logging errors should not break tool execution
                    log_ctx = None

            result = None
            error: Optional[ToolExecutionError] = None
            try:
                result = await func(*args, **kwargs)
            except ToolExecutionError as exc:
                metrics["errors"] += 1
                _record_tool_error(tool_name, exc)
                error = exc
                raise
            except Exception as exc:
                metrics["errors"] += 1
                _record_tool_error(tool_name, exc)
                error = _wrap_exception(tool_name, exc)
                raise error from exc
            finally:
                if log_ctx is not None:
                    try:
                        log_ctx.end_time = time.perf_counter()
                        log_ctx.result = result
                        log_ctx.error = error
                        log_ctx.success = error is None
                        rich_logger.log_tool_call_end(log_ctx)
                    except Exception:
                        # Logging errors should not suppress original exceptions
                        pass
            return result

        # Preserve annotations so FastMCP can infer output schema
        with suppress(Exception):
            wrapper.__annotations__ = getattr(func, "__annotations__", {})
        return wrapper

    return decorator


def _tool_metrics_snapshot() -> list[dict[str, Any]]:
    snapshot = []
    for name, data in sorted(TOOL_METRICS.items()):
        metadata = TOOL_METADATA.get(name, {})
        snapshot.append(
            {
                "name": name,
                "calls": data["calls"],
                "errors": data["errors"],
                "cluster": TOOL_CLUSTER_MAP.get(name, "unclassified"),
                "complexity": metadata.get("complexity", "unknown"),
            }
        )
    return snapshot


def _unwrap(resolution: Resolution[Any]) -> Any:
    """Return the resolved entity or raise the failure as a recoverable tool error."""
    if isinstance(resolution, ResolutionFailure):
        raise ToolExecutionError(
            resolution.kind.value,
            resolution.message,
            recoverable=True,
            data={"candidates": [c.to_dict() for c in resolution.candidates]},
        )
    return resolution.entity


def _lifespan_factory(session: DiscordSession) -> Callable[[FastMCP], AsyncContextManager[None]]:
    @asynccontextmanager
    async def lifespan(app: FastMCP) -> AsyncIterator[None]:
        if session.is_ready:
            # Externally managed session (tests, embedding); leave its lifecycle alone.
            yield
            return
        await session.start()
        try:
            yield
        finally:
            await session.close()

    return lifespan


def build_mcp_server(session: Optional[DiscordSession] = None) -> FastMCP:
    """Create and configure the FastMCP server instance."""
    settings: Settings = get_settings()
    if session is None:
        session = DiscordSession(settings.discord)
    lifespan = _lifespan_factory(session)
    resolver = Resolver(session)
    paginator = Paginator(session)

    instructions = (
        "You are the MCP Discord Bridge. Servers, channels and categories may be given by ID or by name; "
        "when a name is ambiguous the error lists every candidate with its ID so you can retry precisely. "
        "Use read_messages for one page and read_messages_bulk to walk a channel's history."
    )

    mcp = FastMCP(name="mcp-discord-bridge", instructions=instructions, lifespan=lifespan)

    async def _ctx_info_safe(ctx: Context, message: str) -> None:
        try:
            await ctx.info(message)
        except Exception:
            # Context may not be available outside of a request; ignore logging
            return

    async def _server(server: Optional[str]) -> Any:
        return _unwrap(await resolver.resolve_server(server))

    async def _channel(channel: str, server: Optional[str], *, include_threads: bool = True) -> tuple[Any, Any]:
        resolved = _unwrap(await resolver.resolve_channel(channel, server, include_threads=include_threads))
        owner = session.gateway().server_of(resolved)
        return owner, resolved

    # ------------------------------------------------------------------ infrastructure

    @mcp.tool(name="health_check", description="Return readiness information for the Discord bridge.")
    @_instrument_tool("health_check", cluster=CLUSTER_SETUP, complexity="low", server_arg=None)
    async def health_check(ctx: Context) -> dict[str, Any]:
        """
        Quick readiness check.

        Returns
        -------
        dict
            {"status": "ok" | "degraded", "environment": str, "discord_ready": bool, "server_count": int | None}
        """
        ready = session.is_ready
        return {
            "status": "ok" if ready else "degraded",
            "environment": settings.environment,
            "discord_ready": ready,
            "server_count": len(session.gateway().list_servers()) if ready else None,
        }

    # ------------------------------------------------------------------ directory

    @mcp.tool(name="list_servers")
    @_instrument_tool("list_servers", cluster=CLUSTER_DIRECTORY, complexity="low", server_arg=None)
    async def list_servers(ctx: Context) -> dict[str, Any]:
        """List every Discord server the bot is a member of."""
        gateway = session.gateway()
        servers = []
        for guild in gateway.list_servers():
            info = gateway.describe_server(guild)
            servers.append({"id": info["id"], "name": info["name"], "member_count": info["member_count"]})
        return {"count": len(servers), "servers": servers}

    @mcp.tool(name="get_server_info")
    @_instrument_tool("get_server_info", cluster=CLUSTER_DIRECTORY, complexity="low")
    async def get_server_info(ctx: Context, server: Optional[str] = None) -> dict[str, Any]:
        """
        Describe one server.

        Parameters
        ----------
        server : str, optional
            Server name or ID. May be omitted when the bot is in exactly one server.
        """
        guild = await _server(server)
        return session.gateway().describe_server(guild)

    @mcp.tool(name="list_members")
    @_instrument_tool("list_members", cluster=CLUSTER_DIRECTORY)
    async def list_members(
        ctx: Context,
        server: Optional[str] = None,
        limit: Annotated[Optional[int], Field(ge=1, le=MAX_MEMBERS_LIMIT)] = None,
    ) -> dict[str, Any]:
        """List up to ``limit`` members with nickname, join date and role IDs."""
        guild = await _server(server)
        size = limit or settings.reads.members_default_limit
        members = await session.gateway().list_members(guild, limit=min(size, MAX_MEMBERS_LIMIT))
        return {"server": entity_ref(guild), "count": len(members), "members": members}

    @mcp.tool(name="get_user_info")
    @_instrument_tool("get_user_info", cluster=CLUSTER_DIRECTORY, complexity="low", server_arg=None)
    async def get_user_info(ctx: Context, user_id: str) -> dict[str, Any]:
        """Fetch a Discord user by ID."""
        return await session.gateway().fetch_user(user_id)

    @mcp.tool(name="list_category_channels")
    @_instrument_tool("list_category_channels", cluster=CLUSTER_DIRECTORY, channel_arg="category")
    async def list_category_channels(ctx: Context, category: str, server: Optional[str] = None) -> dict[str, Any]:
        """
        List the readable channels (text, voice and stage chat) of a category.

        ``category`` may be a category ID or its name (case-insensitive).
        """
        resolved = _unwrap(await resolver.resolve_category(category, server))
        gateway = session.gateway()
        channels = [
            gateway.describe_channel(child)
            for child in gateway.category_children(resolved)
            if gateway.channel_kind(child) in TEXT_SOURCE_KINDS
        ]
        return {
            "server": entity_ref(gateway.server_of(resolved)),
            "category": entity_ref(resolved),
            "count": len(channels),
            "channels": channels,
        }

    # ------------------------------------------------------------------ messaging

    @mcp.tool(name="read_messages")
    @_instrument_tool("read_messages", cluster=CLUSTER_MESSAGING, channel_arg="channel")
    async def read_messages(
        ctx: Context,
        channel: str,
        server: Optional[str] = None,
        limit: Annotated[Optional[int], Field(ge=1)] = None,
        before: Optional[str] = None,
        after: Optional[str] = None,
        around: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Read one page of a channel's history, newest first.

        Parameters
        ----------
        channel : str
            Channel ID or name; a leading ``#`` is ignored.
        limit : int, optional
            Page size, capped at 100 per request.
        before / after / around : str, optional
            Message ID anchor. At most one may be given.

        Returns
        -------
        dict
            Messages plus ``pagination`` hints: pass ``before=<pagination.before>``
            to read older messages and ``after=<pagination.after>`` for newer ones.
        """
        guild, resolved = await _channel(channel, server)
        page = await paginator.fetch_page(
            resolved,
            limit=limit or settings.reads.read_messages_default_limit,
            before=before,
            after=after,
            around=around,
        )
        return message_page_payload(guild, resolved, page)

    @mcp.tool(name="read_messages_bulk")
    @_instrument_tool("read_messages_bulk", cluster=CLUSTER_MESSAGING, complexity="high", channel_arg="channel")
    async def read_messages_bulk(
        ctx: Context,
        channel: str,
        server: Optional[str] = None,
        total_limit: Optional[int] = None,
        unlimited: bool = False,
    ) -> dict[str, Any]:
        """
        Walk a channel's history backwards until ``total_limit`` messages were read
        or the history is exhausted.

        Parameters
        ----------
        total_limit : int, optional
            Number of messages wanted. ``-1`` (or any value <= 0) reads everything.
        unlimited : bool
            Read the whole history regardless of ``total_limit``.
        """
        guild, resolved = await _channel(channel, server)
        requested = settings.reads.bulk_read_default_limit if total_limit is None else total_limit
        target = retrieval_target(requested, unlimited=unlimited)
        label = str(target.count) if isinstance(target, Finite) else "all"
        await _ctx_info_safe(ctx, f"Reading {label} messages from #{resolved.name}.")
        result = await paginator.collect(resolved, target)
        return bulk_payload(guild, resolved, result, target)

    @mcp.tool(name="read_category_channels")
    @_instrument_tool("read_category_channels", cluster=CLUSTER_MESSAGING, complexity="high", channel_arg="category")
    async def read_category_channels(
        ctx: Context,
        category: str,
        server: Optional[str] = None,
        limit: Annotated[Optional[int], Field(ge=1)] = None,
    ) -> dict[str, Any]:
        """
        Read the latest ``limit`` messages of every channel in a category and merge
        them newest first. Threads are not included. Channels the bot cannot read are
        listed under ``skipped`` instead of failing the whole call.
        """
        resolved = _unwrap(await resolver.resolve_category(category, server))
        gateway = session.gateway()
        per_channel = limit or settings.reads.category_read_default_limit
        merged: list[MessageSnapshot] = []
        skipped: list[dict[str, str]] = []
        for child in gateway.category_children(resolved):
            if gateway.channel_kind(child) not in TEXT_SOURCE_KINDS:
                continue
            try:
                page = await paginator.fetch_page(child, limit=per_channel)
            except discord.HTTPException as exc:
                logger.warning(
                    "category_read.channel_skipped",
                    extra={"channel": str(child.id), "channel_name": child.name, "error": str(exc)},
                )
                skipped.append({"id": str(child.id), "name": child.name, "reason": str(exc)})
                continue
            merged.extend(replace(message, channel=child.name) for message in page)
        return category_messages_payload(resolved, merged, skipped)

    @mcp.tool(name="send_message")
    @_instrument_tool("send_message", cluster=CLUSTER_MESSAGING, channel_arg="channel")
    async def send_message(ctx: Context, channel: str, content: str, server: Optional[str] = None) -> dict[str, Any]:
        """Send ``content`` to a channel or thread."""
        if not content.strip():
            raise ValueError("content must not be empty")
        guild, resolved = await _channel(channel, server)
        sent = await session.gateway().send_message(resolved, content)
        return {"server": entity_ref(guild), "channel": entity_ref(resolved), "message": sent.to_dict()}

    # ------------------------------------------------------------------ reactions

    @mcp.tool(name="add_reaction")
    @_instrument_tool("add_reaction", cluster=CLUSTER_REACTIONS, complexity="low", channel_arg="channel")
    async def add_reaction(
        ctx: Context, channel: str, message_id: str, emoji: str, server: Optional[str] = None
    ) -> dict[str, Any]:
        """Add one reaction to a message as the bot."""
        _, resolved = await _channel(channel, server)
        await session.gateway().add_reactions(resolved, message_id, [emoji])
        return {"channel": entity_ref(resolved), "message_id": message_id, "added": [emoji]}

    @mcp.tool(name="add_multiple_reactions")
    @_instrument_tool("add_multiple_reactions", cluster=CLUSTER_REACTIONS, complexity="low", channel_arg="channel")
    async def add_multiple_reactions(
        ctx: Context, channel: str, message_id: str, emojis: list[str], server: Optional[str] = None
    ) -> dict[str, Any]:
        """Add several reactions to a message, in order."""
        if not emojis:
            raise ValueError("emojis must contain at least one emoji")
        _, resolved = await _channel(channel, server)
        await session.gateway().add_reactions(resolved, message_id, emojis)
        return {"channel": entity_ref(resolved), "message_id": message_id, "added": list(emojis)}

    @mcp.tool(name="remove_reaction")
    @_instrument_tool("remove_reaction", cluster=CLUSTER_REACTIONS, complexity="low", channel_arg="channel")
    async def remove_reaction(
        ctx: Context, channel: str, message_id: str, emoji: str, server: Optional[str] = None
    ) -> dict[str, Any]:
        """Remove the bot's own reaction from a message."""
        _, resolved = await _channel(channel, server)
        await session.gateway().remove_own_reaction(resolved, message_id, emoji)
        return {"channel": entity_ref(resolved), "message_id": message_id, "removed": emoji}

    # ------------------------------------------------------------------ administration

    @mcp.tool(name="add_role")
    @_instrument_tool("add_role", cluster=CLUSTER_ADMIN)
    async def add_role(
        ctx: Context, user_id: str, role_id: str, server: Optional[str] = None, reason: Optional[str] = None
    ) -> dict[str, Any]:
        """Give a member a role."""
        guild = await _server(server)
        change = await session.gateway().change_member_role(
            guild, user_id, role_id, add=True, reason=reason or "Role added via MCP"
        )
        return {"server": entity_ref(guild), "action": "added", **change}

    @mcp.tool(name="remove_role")
    @_instrument_tool("remove_role", cluster=CLUSTER_ADMIN)
    async def remove_role(
        ctx: Context, user_id: str, role_id: str, server: Optional[str] = None, reason: Optional[str] = None
    ) -> dict[str, Any]:
        """Take a role away from a member."""
        guild = await _server(server)
        change = await session.gateway().change_member_role(
            guild, user_id, role_id, add=False, reason=reason or "Role removed via MCP"
        )
        return {"server": entity_ref(guild), "action": "removed", **change}

    @mcp.tool(name="create_text_channel")
    @_instrument_tool("create_text_channel", cluster=CLUSTER_ADMIN)
    async def create_text_channel(
        ctx: Context,
        name: str,
        server: Optional[str] = None,
        category_id: Optional[str] = None,
        topic: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> dict[str, Any]:
        """Create a text channel, optionally inside a category."""
        if not name.strip():
            raise ValueError("name must not be empty")
        guild = await _server(server)
        created = await session.gateway().create_text_channel(
            guild, name, category_id=category_id, topic=topic, reason=reason or "Channel created via MCP"
        )
        return {"server": entity_ref(guild), "channel": created}

    @mcp.tool(name="delete_channel")
    @_instrument_tool("delete_channel", cluster=CLUSTER_ADMIN, channel_arg="channel")
    async def delete_channel(
        ctx: Context, channel: str, server: Optional[str] = None, reason: Optional[str] = None
    ) -> dict[str, Any]:
        """Delete a channel or thread."""
        guild, resolved = await _channel(channel, server)
        deleted = entity_ref(resolved)
        await session.gateway().delete_channel(resolved, reason=reason or "Channel deleted via MCP")
        return {"server": entity_ref(guild), "deleted": deleted}

    @mcp.tool(name="moderate_message")
    @_instrument_tool("moderate_message", cluster=CLUSTER_ADMIN, channel_arg="channel")
    async def moderate_message(
        ctx: Context,
        channel: str,
        message_id: str,
        reason: str,
        server: Optional[str] = None,
        timeout_minutes: Annotated[Optional[int], Field(ge=0, le=MAX_TIMEOUT_MINUTES)] = None,
    ) -> dict[str, Any]:
        """
        Delete a message and optionally time out its author.

        A ``timeout_minutes`` of 0 (or omitted) only deletes the message; the timeout
        is applied only when the author is still a member of the server.
        """
        guild, resolved = await _channel(channel, server)
        timed_out = await session.gateway().moderate_message(
            resolved, message_id, reason=reason, timeout_minutes=timeout_minutes
        )
        return {
            "server": entity_ref(guild),
            "channel": entity_ref(resolved),
            "message_id": message_id,
            "deleted": True,
            "timed_out": timed_out,
            "timeout_minutes": timeout_minutes if timed_out else None,
        }

    # ------------------------------------------------------------------ resources

    @mcp.resource("resource://config/environment", mime_type="application/json")
    def environment_resource() -> dict[str, Any]:
        """Inspect the server's current environment, transport and read defaults."""
        return {
            "environment": settings.environment,
            "http": {
                "host": settings.http.host,
                "port": settings.http.port,
                "path": settings.http.path,
            },
            "reads": {
                "read_messages_default_limit": settings.reads.read_messages_default_limit,
                "bulk_read_default_limit": settings.reads.bulk_read_default_limit,
                "category_read_default_limit": settings.reads.category_read_default_limit,
                "members_default_limit": settings.reads.members_default_limit,
            },
        }

    @mcp.resource("resource://tooling/metrics", mime_type="application/json")
    def tooling_metrics_resource() -> dict[str, Any]:
        """Per-tool call and error counters since process start."""
        return {"tools": _tool_metrics_snapshot()}

    return mcp
