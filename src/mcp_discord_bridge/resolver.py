"""Resolve human-supplied server/channel/category identifiers to exactly one entity.

Identifiers are untyped strings, so every lookup runs two explicit steps: a
structured lookup by snowflake ID, then a case-insensitive name search over the
cached entities of the scope. The outcome is a ``Resolved`` value or a
``ResolutionFailure`` that lists every candidate the caller can pick from.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Generic, Optional, Sequence, TypeVar, Union

import structlog

from .gateway import DiscordSession, EntityGateway
from .models import TEXT_SOURCE_KINDS, Candidate, ChannelKind

log = structlog.get_logger("resolver")

T = TypeVar("T")


class FailureKind(str, Enum):
    AMBIGUOUS_SCOPE = "AMBIGUOUS_SCOPE"
    NOT_FOUND = "NOT_FOUND"
    AMBIGUOUS = "AMBIGUOUS"
    WRONG_TYPE = "WRONG_TYPE"


@dataclass(frozen=True)
class Resolved(Generic[T]):
    entity: T


@dataclass(slots=True, frozen=True)
class ResolutionFailure:
    kind: FailureKind
    message: str
    candidates: tuple[Candidate, ...] = field(default_factory=tuple)


Resolution = Union[Resolved[T], ResolutionFailure]


def _candidates(entities: Sequence[Any]) -> tuple[Candidate, ...]:
    return tuple(Candidate(name=e.name, id=str(e.id)) for e in entities)


def _quoted(entities: Sequence[Any], prefix: str = "") -> str:
    return ", ".join(f'"{prefix}{e.name}"' for e in entities)


def _with_ids(entities: Sequence[Any], fmt: str) -> str:
    return ", ".join(fmt.format(name=e.name, id=e.id) for e in entities)


def _strip_marker(identifier: str) -> str:
    return identifier[1:] if identifier.startswith("#") else identifier


class Resolver:
    """Maps ``(identifier, scope, kind)`` to one entity through the session's gateway."""

    def __init__(self, session: DiscordSession) -> None:
        self._session = session

    # -- servers -----------------------------------------------------------

    async def resolve_server(self, identifier: Optional[str]) -> Resolution[Any]:
        gateway = self._session.gateway()
        servers = list(gateway.list_servers())

        if not identifier:
            if len(servers) == 1:
                return Resolved(servers[0])
            if not servers:
                return ResolutionFailure(
                    FailureKind.AMBIGUOUS_SCOPE,
                    "I'm not in any Discord servers yet, so there is nothing to pick from.",
                )
            return ResolutionFailure(
                FailureKind.AMBIGUOUS_SCOPE,
                "I'm in multiple Discord servers! Please tell me which one you want to use. "
                f"Available servers: {_quoted(servers)}",
                _candidates(servers),
            )

        server = await gateway.fetch_server(identifier)
        if server is not None:
            return Resolved(server)

        wanted = identifier.lower()
        matches = [s for s in servers if s.name.lower() == wanted]
        if not matches:
            return ResolutionFailure(
                FailureKind.NOT_FOUND,
                f'I can\'t find a server called "{identifier}". Here are the servers I\'m in: {_quoted(servers)}',
                _candidates(servers),
            )
        if len(matches) > 1:
            log.info("resolver.ambiguous", kind="server", identifier=identifier, matches=len(matches))
            return ResolutionFailure(
                FailureKind.AMBIGUOUS,
                f'Multiple servers found with name "{identifier}": '
                f"{_with_ids(matches, '{name} (ID: {id})')}. Please specify the server ID.",
                _candidates(matches),
            )
        return Resolved(matches[0])

    # -- channels ----------------------------------------------------------

    async def resolve_channel(
        self,
        identifier: str,
        server: Optional[str] = None,
        *,
        include_threads: bool = True,
    ) -> Resolution[Any]:
        scope = await self.resolve_server(server)
        if isinstance(scope, ResolutionFailure):
            return scope
        guild = scope.entity
        gateway = self._session.gateway()

        def usable(channel: Any) -> bool:
            kind = gateway.channel_kind(channel)
            return kind in TEXT_SOURCE_KINDS or (include_threads and kind is ChannelKind.THREAD)

        by_id = await self._lookup_id(gateway, identifier, guild, usable)
        if isinstance(by_id, Resolved):
            return by_id
        if by_id is not None:
            kind = gateway.channel_kind(by_id)
            return ResolutionFailure(
                FailureKind.WRONG_TYPE,
                f'Channel "{identifier}" in server "{guild.name}" is a {kind.value} channel, '
                "not a channel I can read or post messages in.",
                _candidates([by_id]),
            )

        usable_channels = [c for c in gateway.list_channels(guild) if usable(c)]
        wanted = identifier.lower()
        bare = _strip_marker(wanted)
        matches = [c for c in usable_channels if c.name.lower() in (wanted, bare)]
        if not matches:
            return ResolutionFailure(
                FailureKind.NOT_FOUND,
                f'I can\'t find a channel called "{identifier}" in {guild.name}. '
                f"Here are the channels I can see: {_quoted(usable_channels, prefix='#')}",
                _candidates(usable_channels),
            )
        if len(matches) > 1:
            log.info("resolver.ambiguous", kind="channel", identifier=identifier, matches=len(matches))
            return ResolutionFailure(
                FailureKind.AMBIGUOUS,
                f'Multiple channels found with name "{identifier}" in server "{guild.name}": '
                f"{_with_ids(matches, '#{name} ({id})')}. Please specify the channel ID.",
                _candidates(matches),
            )
        return Resolved(matches[0])

    # -- categories --------------------------------------------------------

    async def resolve_category(self, identifier: str, server: Optional[str] = None) -> Resolution[Any]:
        scope = await self.resolve_server(server)
        if isinstance(scope, ResolutionFailure):
            return scope
        guild = scope.entity
        gateway = self._session.gateway()

        def is_category(channel: Any) -> bool:
            return gateway.channel_kind(channel) is ChannelKind.CATEGORY

        by_id = await self._lookup_id(gateway, identifier, guild, is_category)
        if isinstance(by_id, Resolved):
            return by_id
        if by_id is not None:
            return ResolutionFailure(
                FailureKind.WRONG_TYPE,
                f'"{identifier}" in server "{guild.name}" is a '
                f"{gateway.channel_kind(by_id).value} channel, not a category.",
                _candidates([by_id]),
            )

        categories = [c for c in gateway.list_channels(guild) if is_category(c)]
        wanted = identifier.lower()
        matches = [c for c in categories if c.name.lower() == wanted]
        if not matches:
            return ResolutionFailure(
                FailureKind.NOT_FOUND,
                f'Category "{identifier}" not found in server "{guild.name}". '
                f"Available categories: {_quoted(categories)}",
                _candidates(categories),
            )
        if len(matches) > 1:
            log.info("resolver.ambiguous", kind="category", identifier=identifier, matches=len(matches))
            return ResolutionFailure(
                FailureKind.AMBIGUOUS,
                f'Multiple categories found with name "{identifier}" in server "{guild.name}": '
                f"{_with_ids(matches, '{name} ({id})')}. Please specify the category ID.",
                _candidates(matches),
            )
        return Resolved(matches[0])

    # -- helpers -----------------------------------------------------------

    async def _lookup_id(
        self,
        gateway: EntityGateway,
        identifier: str,
        guild: Any,
        accept: Callable[[Any], bool],
    ) -> Union[Resolved[Any], Any, None]:
        """Look the identifier up as a channel ID inside ``guild``.

        Returns ``Resolved`` on a usable hit, the raw channel when it exists in
        the server but fails ``accept``, and ``None`` when the ID phase missed
        (unknown ID, non-numeric identifier, or a channel of another server).
        """
        channel = await gateway.fetch_channel(identifier)
        if channel is None:
            return None
        owner = gateway.server_of(channel)
        if owner is None or str(owner.id) != str(guild.id):
            return None
        if accept(channel):
            return Resolved(channel)
        return channel
