"""Cursor-based backward pagination over a room's history.

Key features:
    - ``before=None`` asks for the newest page; a cursor asks for messages
      strictly older than it
    - Concurrent identical requests share one in-flight round-trip
    - Cooldown guard: inside the window after a completed request, the same
      cursor is served from cache and an older cursor raises RateLimited
    - Source errors reach every waiting caller and never touch the cache
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from relaychat.errors import RateLimited
from relaychat.protocol import HistoryCursor, Message

from .api import HistorySource

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_MS = 500.0


@dataclass(frozen=True)
class TranscriptPage:
    """One batch of history.

    Attributes:
        messages: Oldest-first.
        has_more: Whether older messages exist beyond this page.
        next_cursor: Cursor for the page before this one; None when empty.
    """
    messages: List[Message] = field(default_factory=list)
    has_more: bool = False
    next_cursor: Optional[str] = None

    @classmethod
    def build(cls, messages: List[Message], page_size: int, exhausted: bool = False) -> "TranscriptPage":
        ordered = sorted(messages, key=lambda m: m.sort_key)
        cursor = HistoryCursor.from_message(ordered[0]).encode() if ordered else None
        has_more = len(ordered) == page_size and not exhausted
        return cls(messages=ordered, has_more=has_more, next_cursor=cursor)


@dataclass
class _Completed:
    cursor: Optional[str]
    page_size: int
    page: TranscriptPage
    finished_at: float


_Key = Tuple[str, Optional[str], int]


def _is_older(candidate: Optional[str], reference: Optional[str]) -> bool:
    """True when ``candidate`` points strictly further back than ``reference``."""
    if candidate is None:
        return False
    if reference is None:
        return True
    try:
        return HistoryCursor.decode(candidate) < HistoryCursor.decode(reference)
    except ValueError:
        return False


def _mark_retrieved(task: asyncio.Task) -> None:
    # Callers re-raise the error through shield(); this only stops asyncio
    # reporting it as never retrieved when every caller has gone.
    if not task.cancelled():
        task.exception()


class CursorPaginator:
    """Fetches history pages from a HistorySource.

    Args:
        source: Where pages come from.
        cooldown_ms: Rate-guard window after each completed request.
        clock: Monotonic clock in seconds, injectable for tests.
    """

    def __init__(
        self,
        source: HistorySource,
        cooldown_ms: float = DEFAULT_COOLDOWN_MS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._source = source
        self._cooldown_ms = cooldown_ms
        self._clock = clock
        self._in_flight: Dict[_Key, asyncio.Task] = {}
        self._last: Dict[str, _Completed] = {}

    async def fetch_page(
        self,
        session_id: str,
        before: Optional[str],
        page_size: int,
    ) -> TranscriptPage:
        """Fetch one page of history older than ``before``.

        Raises:
            ValueError: If ``page_size`` is not positive.
            RateLimited: If an older page is requested inside the cooldown.
            TransportError / AuthRejected: Propagated from the source.
        """
        if page_size < 1:
            raise ValueError("page_size must be positive")

        key = (session_id, before, page_size)
        task = self._in_flight.get(key)
        if task is not None:
            logger.debug("[Paginator] Joining in-flight request for %s before=%s", session_id, before)
        else:
            cached = self._guard(session_id, before, page_size)
            if cached is not None:
                return cached
            task = asyncio.ensure_future(self._run(key))
            task.add_done_callback(_mark_retrieved)
            self._in_flight[key] = task

        # A cancelled caller stops waiting; the request keeps running for the others.
        return await asyncio.shield(task)

    def reset(self, session_id: str) -> None:
        """Drop cached state for a room (room closed)."""
        self._last.pop(session_id, None)

    async def _run(self, key: _Key) -> TranscriptPage:
        session_id, before, page_size = key
        try:
            page = await self._request(session_id, before, page_size)
            self._last[session_id] = _Completed(before, page_size, page, self._clock())
            return page
        finally:
            self._in_flight.pop(key, None)

    def _guard(self, session_id: str, before: Optional[str], page_size: int) -> Optional[TranscriptPage]:
        last = self._last.get(session_id)
        if last is None:
            return None
        elapsed_ms = (self._clock() - last.finished_at) * 1000.0
        if elapsed_ms >= self._cooldown_ms:
            return None

        if before == last.cursor and page_size == last.page_size:
            logger.debug("[Paginator] Serving cached page for %s before=%s", session_id, before)
            return last.page
        if _is_older(before, last.cursor):
            retry_after = self._cooldown_ms - elapsed_ms
            logger.info("[Paginator] Rate limited %s; retry in %.0fms", session_id, retry_after)
            raise RateLimited(session_id, retry_after)
        return None

    async def _request(self, session_id: str, before: Optional[str], page_size: int) -> TranscriptPage:
        logger.debug("[Paginator] Fetching %d messages for %s before=%s", page_size, session_id, before)
        response = await self._source.fetch(session_id, before, page_size)
        exhausted = response.hasMore is False
        page = TranscriptPage.build(response.messages, page_size, exhausted=exhausted)
        logger.info(
            "[Paginator] Fetched %d messages for %s (has_more=%s)",
            len(page.messages), session_id, page.has_more,
        )
        return page
