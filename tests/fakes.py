"""In-memory Discord doubles shared by the test modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Any, Optional, Sequence

import discord

from mcp_discord_bridge.gateway import MESSAGE_PAGE_CEILING
from mcp_discord_bridge.models import ChannelKind, MessageSnapshot


@dataclass(eq=False)
class FakeServer:
    id: str
    name: str
    member_count: int = 3


@dataclass(eq=False)
class FakeChannel:
    id: str
    name: str
    guild: FakeServer
    kind: ChannelKind = ChannelKind.TEXT
    parent: Optional["FakeChannel"] = None
    topic: Optional[str] = None
    history: list[MessageSnapshot] = field(default_factory=list)
    forbidden: bool = False


def make_history(count: int, *, start_id: int = 1_000_000, author: str = "alice") -> list[MessageSnapshot]:
    """Messages with strictly increasing IDs, oldest first."""
    return [
        MessageSnapshot(
            id=str(start_id + i),
            author=author,
            content=f"message {i}",
            timestamp=f"2024-01-01T00:{i // 60 % 60:02d}:{i % 60:02d}+00:00",
        )
        for i in range(count)
    ]


def forbidden_error() -> discord.Forbidden:
    return discord.Forbidden(SimpleNamespace(status=403, reason="Forbidden"), "Missing Access")


class FakeGateway:
    """In-memory stand-in for the discord.py backed gateway."""

    def __init__(self) -> None:
        self.servers: list[FakeServer] = []
        self.channels: list[FakeChannel] = []
        self.page_calls: list[dict[str, Any]] = []
        self.sent: list[tuple[str, str]] = []
        self.reactions: list[tuple[str, str, str]] = []
        self.removed_reactions: list[tuple[str, str, str]] = []
        self.deleted_channels: list[str] = []
        self.moderated: list[dict[str, Any]] = []
        self.role_changes: list[dict[str, Any]] = []
        self.members: dict[str, list[dict[str, Any]]] = {}

    # -- fixtures ----------------------------------------------------------

    def add_server(self, server_id: str, name: str) -> FakeServer:
        server = FakeServer(id=server_id, name=name)
        self.servers.append(server)
        return server

    def add_channel(
        self,
        server: FakeServer,
        channel_id: str,
        name: str,
        kind: ChannelKind = ChannelKind.TEXT,
        *,
        parent: Optional[FakeChannel] = None,
        history: Optional[list[MessageSnapshot]] = None,
        topic: Optional[str] = None,
    ) -> FakeChannel:
        channel = FakeChannel(
            id=channel_id,
            name=name,
            guild=server,
            kind=kind,
            parent=parent,
            topic=topic,
            history=history or [],
        )
        self.channels.append(channel)
        return channel

    # -- reads -------------------------------------------------------------

    def list_servers(self) -> Sequence[FakeServer]:
        return list(self.servers)

    async def fetch_server(self, server_id: str) -> Optional[FakeServer]:
        return next((s for s in self.servers if s.id == server_id), None)

    async def fetch_channel(self, channel_id: str) -> Optional[FakeChannel]:
        return next((c for c in self.channels if c.id == channel_id), None)

    def list_channels(self, server: FakeServer) -> Sequence[FakeChannel]:
        return [c for c in self.channels if c.guild is server]

    def server_of(self, channel: FakeChannel) -> Optional[FakeServer]:
        return channel.guild

    def channel_kind(self, channel: FakeChannel) -> ChannelKind:
        return channel.kind

    async def fetch_message_page(
        self,
        channel: FakeChannel,
        *,
        limit: int,
        before: Optional[str] = None,
        after: Optional[str] = None,
        around: Optional[str] = None,
    ) -> list[MessageSnapshot]:
        assert 1 <= limit <= MESSAGE_PAGE_CEILING
        self.page_calls.append({"channel": channel.id, "limit": limit, "before": before, "after": after, "around": around})
        if channel.forbidden:
            raise forbidden_error()
        newest_first = sorted(channel.history, key=lambda m: m.snowflake, reverse=True)
        if before is not None:
            return [m for m in newest_first if m.snowflake < int(before)][:limit]
        if after is not None:
            return [m for m in newest_first if m.snowflake > int(after)][-limit:]
        if around is not None:
            pivot = int(around)
            older = [m for m in newest_first if m.snowflake <= pivot][: (limit + 1) // 2]
            newer = [m for m in newest_first if m.snowflake > pivot][-(limit // 2):] if limit > 1 else []
            return newer + older
        return newest_first[:limit]

    def category_children(self, category: FakeChannel) -> Sequence[FakeChannel]:
        return [c for c in self.channels if c.parent is category]

    def describe_server(self, server: FakeServer) -> dict[str, Any]:
        return {
            "name": server.name,
            "id": server.id,
            "owner_id": "1",
            "member_count": server.member_count,
            "created_at": "2020-01-01T00:00:00+00:00",
            "description": None,
            "premium_tier": 0,
            "explicit_content_filter": "disabled",
        }

    def describe_channel(self, channel: FakeChannel) -> dict[str, Any]:
        return {"id": channel.id, "name": channel.name, "kind": channel.kind.value, "topic": channel.topic}

    async def list_members(self, server: FakeServer, *, limit: int) -> list[dict[str, Any]]:
        return self.members.get(server.id, [])[:limit]

    async def fetch_user(self, user_id: str) -> dict[str, Any]:
        if not user_id.isdigit():
            raise ValueError(f"user_id must be a numeric Discord ID, got {user_id!r}")
        return {"id": user_id, "name": "alice", "discriminator": "0", "bot": False, "created_at": None}

    # -- actions -----------------------------------------------------------

    async def send_message(self, channel: FakeChannel, content: str) -> MessageSnapshot:
        self.sent.append((channel.id, content))
        return MessageSnapshot(id="9999999", author="bridge-bot", content=content, timestamp="2024-02-01T00:00:00+00:00")

    async def add_reactions(self, channel: FakeChannel, message_id: str, emojis: Sequence[str]) -> None:
        for emoji in emojis:
            self.reactions.append((channel.id, message_id, emoji))

    async def remove_own_reaction(self, channel: FakeChannel, message_id: str, emoji: str) -> None:
        self.removed_reactions.append((channel.id, message_id, emoji))

    async def moderate_message(
        self, channel: FakeChannel, message_id: str, *, reason: str, timeout_minutes: Optional[int]
    ) -> bool:
        self.moderated.append(
            {"channel": channel.id, "message_id": message_id, "reason": reason, "timeout_minutes": timeout_minutes}
        )
        return bool(timeout_minutes)

    async def change_member_role(
        self, server: FakeServer, user_id: str, role_id: str, *, add: bool, reason: str
    ) -> dict[str, str]:
        self.role_changes.append({"server": server.id, "user_id": user_id, "role_id": role_id, "add": add, "reason": reason})
        return {"role": "moderator", "role_id": role_id, "user": "alice", "user_id": user_id}

    async def create_text_channel(
        self, server: FakeServer, name: str, *, category_id: Optional[str], topic: Optional[str], reason: str
    ) -> dict[str, Any]:
        parent = next((c for c in self.channels if c.id == category_id), None) if category_id else None
        channel = self.add_channel(server, str(5_000_000 + len(self.channels)), name, parent=parent, topic=topic)
        return self.describe_channel(channel)

    async def delete_channel(self, channel: FakeChannel, *, reason: str) -> None:
        self.deleted_channels.append(channel.id)
        self.channels.remove(channel)
