"""Render resolved entities and message snapshots into tool payloads."""

from __future__ import annotations

from typing import Any, Iterable, Optional, Sequence

from .models import MessageSnapshot
from .pagination import Finite, PaginationResult, RetrievalTarget


def entity_ref(entity: Any) -> dict[str, str]:
    return {"id": str(entity.id), "name": entity.name}


def reaction_summary(message: MessageSnapshot) -> str:
    if not message.reactions:
        return "No reactions"
    return ", ".join(f"{emoji}({count})" for emoji, count in message.reactions)


def message_line(message: MessageSnapshot) -> str:
    prefix = f"#{message.channel} - " if message.channel else f"[{message.id}] "
    return f"{prefix}{message.author} ({message.timestamp}): {message.content}"


def transcript(messages: Iterable[MessageSnapshot], *, with_reactions: bool = True) -> str:
    blocks = []
    for message in messages:
        line = message_line(message)
        if with_reactions:
            line += f"\nReactions: {reaction_summary(message)}"
        blocks.append(line)
    return "\n\n".join(blocks)


def pagination_hints(messages: Sequence[MessageSnapshot]) -> dict[str, str]:
    """Cursor hints for a newest-first page: go older with ``before``, newer with ``after``."""
    if not messages:
        return {}
    return {"before": messages[-1].id, "after": messages[0].id}


def message_page_payload(server: Any, channel: Any, messages: Sequence[MessageSnapshot]) -> dict[str, Any]:
    return {
        "server": entity_ref(server),
        "channel": entity_ref(channel),
        "count": len(messages),
        "summary": f"Retrieved {len(messages)} messages from #{channel.name} in {server.name}",
        "messages": [m.to_dict() for m in messages],
        "transcript": transcript(messages),
        "pagination": pagination_hints(messages),
    }


def bulk_payload(server: Any, channel: Any, result: PaginationResult, target: RetrievalTarget) -> dict[str, Any]:
    requested: Optional[int] = target.count if isinstance(target, Finite) else None
    requested_label = str(requested) if requested is not None else "all"
    return {
        "server": entity_ref(server),
        "channel": entity_ref(channel),
        "count": len(result.messages),
        "requested": requested,
        "pages_fetched": result.pages_fetched,
        "exhausted": result.exhausted,
        "summary": (
            f"Retrieved {len(result.messages)} messages from #{channel.name} in {server.name} "
            f"(requested: {requested_label})"
        ),
        "messages": [m.to_dict() for m in result.messages],
        "transcript": transcript(result.messages),
    }


def category_messages_payload(
    category: Any,
    messages: Iterable[MessageSnapshot],
    skipped: Sequence[dict[str, str]],
) -> dict[str, Any]:
    ordered = sorted(messages, key=lambda m: m.timestamp, reverse=True)
    return {
        "category": entity_ref(category),
        "count": len(ordered),
        "summary": f'Retrieved {len(ordered)} messages from category "{category.name}" (excluding threads)',
        "messages": [m.to_dict() for m in ordered],
        "transcript": transcript(ordered, with_reactions=False),
        "skipped": list(skipped),
    }
