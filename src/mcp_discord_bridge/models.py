"""Plain value types shared by the resolver, the paginator and the tool layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ChannelKind(str, Enum):
    TEXT = "text"
    VOICE = "voice"
    STAGE = "stage"
    FORUM = "forum"
    CATEGORY = "category"
    THREAD = "thread"
    OTHER = "other"


# Kinds that carry a message history (voice and stage channels have text chat).
TEXT_SOURCE_KINDS: frozenset[ChannelKind] = frozenset({ChannelKind.TEXT, ChannelKind.VOICE, ChannelKind.STAGE})


@dataclass(slots=True, frozen=True)
class Candidate:
    """A name/ID pair surfaced to the caller when resolution cannot pick one entity."""

    name: str
    id: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "id": self.id}


@dataclass(slots=True, frozen=True)
class MessageSnapshot:
    """Immutable view of one fetched message."""

    id: str
    author: str
    content: str
    timestamp: str
    reactions: tuple[tuple[str, int], ...] = field(default_factory=tuple)
    channel: Optional[str] = None

    @property
    def snowflake(self) -> int:
        return int(self.id)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "author": self.author,
            "content": self.content,
            "timestamp": self.timestamp,
            "reactions": [{"emoji": emoji, "count": count} for emoji, count in self.reactions],
        }
        if self.channel is not None:
            payload["channel"] = self.channel
        return payload
