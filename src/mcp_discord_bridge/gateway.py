"""discord.py client lifecycle and the entity accessor used by the tool layer.

``DiscordSession`` owns the client: login, gateway connection, readiness and
shutdown. Callers never look at the client directly; they ask the session for
an ``EntityGateway`` and get ``ClientNotReadyError`` until the ready event fired.

``DiscordGateway`` is the only module that touches discord.py objects. Reads go
through the client's synchronized caches first and fall back to REST fetches;
"not found" style failures of an ID lookup come back as ``None`` so resolution can
continue with a name search, while every other transport error propagates.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from datetime import timedelta
from typing import Any, Optional, Protocol, Sequence

import discord

from .config import DiscordSettings
from .models import ChannelKind, MessageSnapshot

logger = logging.getLogger(__name__)

# Hard ceiling of the message history endpoint per request.
MESSAGE_PAGE_CEILING = 100

# Snowflakes are unsigned 64-bit integers; anything larger is rejected by the API.
SNOWFLAKE_LIMIT = 2**64


class ClientNotReadyError(RuntimeError):
    """Raised when a tool runs before the Discord client finished connecting."""


class EntityGateway(Protocol):
    """Read view over servers/channels/messages plus the thin write actions tools need."""

    def list_servers(self) -> Sequence[Any]: ...

    async def fetch_server(self, server_id: str) -> Optional[Any]: ...

    async def fetch_channel(self, channel_id: str) -> Optional[Any]: ...

    def list_channels(self, server: Any) -> Sequence[Any]: ...

    def server_of(self, channel: Any) -> Optional[Any]: ...

    def channel_kind(self, channel: Any) -> ChannelKind: ...

    async def fetch_message_page(
        self,
        channel: Any,
        *,
        limit: int,
        before: Optional[str] = None,
        after: Optional[str] = None,
        around: Optional[str] = None,
    ) -> list[MessageSnapshot]: ...

    def category_children(self, category: Any) -> Sequence[Any]: ...

    def describe_server(self, server: Any) -> dict[str, Any]: ...

    def describe_channel(self, channel: Any) -> dict[str, Any]: ...

    async def list_members(self, server: Any, *, limit: int) -> list[dict[str, Any]]: ...

    async def fetch_user(self, user_id: str) -> dict[str, Any]: ...

    async def send_message(self, channel: Any, content: str) -> MessageSnapshot: ...

    async def add_reactions(self, channel: Any, message_id: str, emojis: Sequence[str]) -> None: ...

    async def remove_own_reaction(self, channel: Any, message_id: str, emoji: str) -> None: ...

    async def moderate_message(
        self, channel: Any, message_id: str, *, reason: str, timeout_minutes: Optional[int]
    ) -> bool: ...

    async def change_member_role(
        self, server: Any, user_id: str, role_id: str, *, add: bool, reason: str
    ) -> dict[str, str]: ...

    async def create_text_channel(
        self, server: Any, name: str, *, category_id: Optional[str], topic: Optional[str], reason: str
    ) -> dict[str, Any]: ...

    async def delete_channel(self, channel: Any, *, reason: str) -> None: ...


def _snowflake(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    text = str(value).strip()
    # str.isdigit() also accepts superscripts and other non-ASCII digits.
    if not (text.isascii() and text.isdigit()):
        return None
    snowflake = int(text)
    if snowflake >= SNOWFLAKE_LIMIT:
        return None
    return snowflake


def _iso(dt: Any) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat()


def _reaction_label(reaction: discord.Reaction) -> str:
    emoji = reaction.emoji
    if isinstance(emoji, str):
        return emoji
    return emoji.name or str(emoji.id or emoji)


def snapshot_message(message: discord.Message, *, channel_name: Optional[str] = None) -> MessageSnapshot:
    return MessageSnapshot(
        id=str(message.id),
        author=str(message.author),
        content=message.content,
        timestamp=message.created_at.isoformat(),
        reactions=tuple((_reaction_label(r), r.count) for r in message.reactions),
        channel=channel_name,
    )


class DiscordGateway:
    """``EntityGateway`` implementation backed by a connected ``discord.Client``."""

    def __init__(self, client: discord.Client) -> None:
        self._client = client

    # -- reads -------------------------------------------------------------

    def list_servers(self) -> Sequence[discord.Guild]:
        return list(self._client.guilds)

    async def fetch_server(self, server_id: str) -> Optional[discord.Guild]:
        snowflake = _snowflake(server_id)
        if snowflake is None:
            return None
        guild = self._client.get_guild(snowflake)
        if guild is not None:
            return guild
        try:
            return await self._client.fetch_guild(snowflake)
        except (discord.NotFound, discord.Forbidden):
            return None

    async def fetch_channel(self, channel_id: str) -> Optional[Any]:
        snowflake = _snowflake(channel_id)
        if snowflake is None:
            return None
        channel = self._client.get_channel(snowflake)
        if channel is not None:
            return channel
        try:
            return await self._client.fetch_channel(snowflake)
        except (discord.NotFound, discord.Forbidden):
            return None

    def list_channels(self, server: discord.Guild) -> Sequence[Any]:
        # Active threads live outside guild.channels.
        return [*server.channels, *server.threads]

    def server_of(self, channel: Any) -> Optional[discord.Guild]:
        return getattr(channel, "guild", None)

    def channel_kind(self, channel: Any) -> ChannelKind:
        if isinstance(channel, discord.Thread):
            return ChannelKind.THREAD
        if isinstance(channel, discord.CategoryChannel):
            return ChannelKind.CATEGORY
        if isinstance(channel, discord.ForumChannel):
            return ChannelKind.FORUM
        if isinstance(channel, discord.StageChannel):
            return ChannelKind.STAGE
        if isinstance(channel, discord.VoiceChannel):
            return ChannelKind.VOICE
        if isinstance(channel, discord.TextChannel):
            return ChannelKind.TEXT
        return ChannelKind.OTHER

    async def fetch_message_page(
        self,
        channel: Any,
        *,
        limit: int,
        before: Optional[str] = None,
        after: Optional[str] = None,
        around: Optional[str] = None,
    ) -> list[MessageSnapshot]:
        if not 1 <= limit <= MESSAGE_PAGE_CEILING:
            raise ValueError(f"limit must be between 1 and {MESSAGE_PAGE_CEILING}, got {limit}")
        kwargs: dict[str, Any] = {"limit": limit, "oldest_first": False}
        for key, value in (("before", before), ("after", after), ("around", around)):
            if value is None:
                continue
            snowflake = _snowflake(value)
            if snowflake is None:
                raise ValueError(f"{key} must be a message ID, got {value!r}")
            kwargs[key] = discord.Object(id=snowflake)
        messages = [snapshot_message(m) async for m in channel.history(**kwargs)]
        messages.sort(key=lambda m: m.snowflake, reverse=True)
        return messages

    def category_children(self, category: discord.CategoryChannel) -> Sequence[Any]:
        return list(category.channels)

    def describe_server(self, server: discord.Guild) -> dict[str, Any]:
        return {
            "name": server.name,
            "id": str(server.id),
            "owner_id": str(server.owner_id) if server.owner_id else None,
            "member_count": server.member_count,
            "created_at": _iso(server.created_at),
            "description": server.description,
            "premium_tier": server.premium_tier,
            "explicit_content_filter": str(server.explicit_content_filter),
        }

    def describe_channel(self, channel: Any) -> dict[str, Any]:
        return {
            "id": str(channel.id),
            "name": channel.name,
            "kind": self.channel_kind(channel).value,
            "topic": getattr(channel, "topic", None),
        }

    async def list_members(self, server: discord.Guild, *, limit: int) -> list[dict[str, Any]]:
        members: list[dict[str, Any]] = []
        async for member in server.fetch_members(limit=limit):
            members.append(
                {
                    "id": str(member.id),
                    "name": member.name,
                    "nick": member.nick,
                    "joined_at": _iso(member.joined_at),
                    "roles": [str(role.id) for role in member.roles if not role.is_default()],
                }
            )
        return members

    async def fetch_user(self, user_id: str) -> dict[str, Any]:
        snowflake = _snowflake(user_id)
        if snowflake is None:
            raise ValueError(f"user_id must be a numeric Discord ID, got {user_id!r}")
        user = await self._client.fetch_user(snowflake)
        return {
            "id": str(user.id),
            "name": user.name,
            "discriminator": user.discriminator,
            "bot": user.bot,
            "created_at": _iso(user.created_at),
        }

    # -- actions -----------------------------------------------------------

    async def _fetch_message(self, channel: Any, message_id: str) -> discord.Message:
        snowflake = _snowflake(message_id)
        if snowflake is None:
            raise ValueError(f"message_id must be a numeric Discord ID, got {message_id!r}")
        return await channel.fetch_message(snowflake)

    async def send_message(self, channel: Any, content: str) -> MessageSnapshot:
        message = await channel.send(content)
        return snapshot_message(message)

    async def add_reactions(self, channel: Any, message_id: str, emojis: Sequence[str]) -> None:
        message = await self._fetch_message(channel, message_id)
        for emoji in emojis:
            await message.add_reaction(emoji)

    async def remove_own_reaction(self, channel: Any, message_id: str, emoji: str) -> None:
        message = await self._fetch_message(channel, message_id)
        me = self._client.user
        if me is None:
            raise ClientNotReadyError("Discord client has no logged-in user.")
        await message.remove_reaction(emoji, me)

    async def moderate_message(
        self, channel: Any, message_id: str, *, reason: str, timeout_minutes: Optional[int]
    ) -> bool:
        message = await self._fetch_message(channel, message_id)
        author = message.author
        await message.delete()
        if timeout_minutes and timeout_minutes > 0 and isinstance(author, discord.Member):
            await author.timeout(timedelta(minutes=timeout_minutes), reason=reason)
            return True
        return False

    async def _fetch_role(self, server: discord.Guild, role_id: str) -> discord.Role:
        snowflake = _snowflake(role_id)
        if snowflake is None:
            raise ValueError(f"role_id must be a numeric Discord ID, got {role_id!r}")
        role = server.get_role(snowflake)
        if role is None:
            role = discord.utils.get(await server.fetch_roles(), id=snowflake)
        if role is None:
            raise LookupError(f"Role {role_id} not found in server \"{server.name}\".")
        return role

    async def change_member_role(
        self, server: discord.Guild, user_id: str, role_id: str, *, add: bool, reason: str
    ) -> dict[str, str]:
        snowflake = _snowflake(user_id)
        if snowflake is None:
            raise ValueError(f"user_id must be a numeric Discord ID, got {user_id!r}")
        member = await server.fetch_member(snowflake)
        role = await self._fetch_role(server, role_id)
        if add:
            await member.add_roles(role, reason=reason)
        else:
            await member.remove_roles(role, reason=reason)
        return {"role": role.name, "role_id": str(role.id), "user": member.name, "user_id": str(member.id)}

    async def create_text_channel(
        self, server: discord.Guild, name: str, *, category_id: Optional[str], topic: Optional[str], reason: str
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"reason": reason}
        if category_id:
            category = server.get_channel(_snowflake(category_id) or 0)
            if not isinstance(category, discord.CategoryChannel):
                raise LookupError(f"Category {category_id} not found in server \"{server.name}\".")
            kwargs["category"] = category
        if topic:
            kwargs["topic"] = topic
        channel = await server.create_text_channel(name, **kwargs)
        return self.describe_channel(channel)

    async def delete_channel(self, channel: Any, *, reason: str) -> None:
        await channel.delete(reason=reason)


def _create_intents() -> discord.Intents:
    intents = discord.Intents.default()
    intents.guilds = True
    intents.members = True
    intents.message_content = True
    intents.guild_messages = True
    intents.guild_reactions = True
    return intents


class DiscordSession:
    """Readiness handle around one discord.py client.

    The resolver and paginator receive the session and call ``gateway()`` per
    operation, so a call made before the ready event fails with
    ``ClientNotReadyError`` instead of reading half-synchronized caches.
    """

    def __init__(self, settings: DiscordSettings) -> None:
        self._settings = settings
        self._client: discord.Client | None = None
        self._connect_task: asyncio.Task[None] | None = None
        self._gateway: EntityGateway | None = None

    @classmethod
    def attached(cls, gateway: EntityGateway, settings: DiscordSettings | None = None) -> "DiscordSession":
        """Return a session that is already ready and serves the given gateway."""
        session = cls(settings or DiscordSettings(token=None, ready_timeout_seconds=0.0))
        session._gateway = gateway
        return session

    @property
    def is_ready(self) -> bool:
        return self._gateway is not None

    def gateway(self) -> EntityGateway:
        if self._gateway is None:
            raise ClientNotReadyError("Discord client not ready. Wait for the bot to finish connecting and retry.")
        return self._gateway

    async def start(self) -> None:
        if self._gateway is not None:
            return
        token = self._settings.token
        if not token:
            raise ValueError("DISCORD_TOKEN is required to connect to Discord.")
        client = discord.Client(intents=_create_intents())
        self._client = client
        await client.login(token)
        self._connect_task = asyncio.create_task(client.connect(), name="discord-connect")
        ready_task = asyncio.create_task(client.wait_until_ready(), name="discord-ready")
        done, _ = await asyncio.wait(
            {ready_task, self._connect_task},
            timeout=self._settings.ready_timeout_seconds,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if ready_task not in done:
            ready_task.cancel()
            if self._connect_task in done:
                exc = self._connect_task.exception()
                await self.close()
                raise exc or RuntimeError("Discord connection closed before the client became ready.")
            await self.close()
            raise TimeoutError(
                f"Discord client did not become ready within {self._settings.ready_timeout_seconds:.0f}s."
            )
        self._gateway = DiscordGateway(client)
        logger.info(
            "discord.ready",
            extra={"user": str(client.user), "guilds": len(client.guilds)},
        )

    async def close(self) -> None:
        self._gateway = None
        client, self._client = self._client, None
        if client is not None:
            await client.close()
        task, self._connect_task = self._connect_task, None
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
