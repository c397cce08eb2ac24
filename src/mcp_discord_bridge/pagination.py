"""Cursor-driven message retrieval over the history endpoint."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Union

import structlog

from .gateway import MESSAGE_PAGE_CEILING, DiscordSession
from .models import MessageSnapshot

log = structlog.get_logger("pagination")


@dataclass(slots=True, frozen=True)
class Finite:
    count: int

    def __post_init__(self) -> None:
        if self.count <= 0:
            raise ValueError(f"Finite retrieval target must be positive, got {self.count}")


@dataclass(slots=True, frozen=True)
class Unbounded:
    pass


RetrievalTarget = Union[Finite, Unbounded]

UNBOUNDED = Unbounded()


def retrieval_target(total_limit: Optional[int], *, unlimited: bool = False) -> RetrievalTarget:
    """Build a target from tool input; ``-1``, ``0`` and ``unlimited`` all mean "everything"."""
    if unlimited or total_limit is None or total_limit <= 0:
        return UNBOUNDED
    return Finite(total_limit)


@dataclass(slots=True, frozen=True)
class PaginationResult:
    messages: tuple[MessageSnapshot, ...]
    pages_fetched: int
    cursor: Optional[str]
    exhausted: bool


class Paginator:
    """Accumulates message history newest-first, one bounded page at a time."""

    def __init__(self, session: DiscordSession, *, page_size: int = MESSAGE_PAGE_CEILING) -> None:
        if not 1 <= page_size <= MESSAGE_PAGE_CEILING:
            raise ValueError(f"page_size must be between 1 and {MESSAGE_PAGE_CEILING}")
        self._session = session
        self._page_size = page_size

    async def collect(self, channel: Any, target: RetrievalTarget) -> PaginationResult:
        gateway = self._session.gateway()
        collected: list[MessageSnapshot] = []
        cursor: Optional[str] = None
        remaining = target.count if isinstance(target, Finite) else None
        pages = 0
        exhausted = False

        while True:
            batch_size = self._page_size if remaining is None else min(remaining, self._page_size)
            page = await gateway.fetch_message_page(channel, limit=batch_size, before=cursor)
            if not page:
                exhausted = True
                break

            oldest = page[-1]
            if cursor is not None and oldest.snowflake >= int(cursor):
                # The cursor only ever moves strictly backward.
                log.warning("pagination.cursor_stalled", cursor=cursor, oldest=oldest.id)
                exhausted = True
                break

            pages += 1
            collected.extend(page)
            cursor = oldest.id
            log.debug("pagination.page", page=pages, size=len(page), cursor=cursor)

            if remaining is not None:
                remaining -= len(page)
                if remaining <= 0:
                    break
            if len(page) < batch_size:
                exhausted = True
                break

        log.debug("pagination.done", pages=pages, total=len(collected), exhausted=exhausted)
        return PaginationResult(
            messages=tuple(collected),
            pages_fetched=pages,
            cursor=cursor,
            exhausted=exhausted,
        )

    async def fetch_page(
        self,
        channel: Any,
        *,
        limit: int,
        before: Optional[str] = None,
        after: Optional[str] = None,
        around: Optional[str] = None,
    ) -> list[MessageSnapshot]:
        """Fetch exactly one page anchored by at most one of ``before``/``after``/``around``."""
        anchors = {name: value for name, value in (("before", before), ("after", after), ("around", around)) if value}
        if len(anchors) > 1:
            raise ValueError(f"before, after and around are mutually exclusive; got {', '.join(sorted(anchors))}")
        size = max(1, min(limit, MESSAGE_PAGE_CEILING))
        gateway = self._session.gateway()
        return await gateway.fetch_message_page(channel, limit=size, **anchors)
