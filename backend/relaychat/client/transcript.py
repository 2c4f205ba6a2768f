"""In-memory ordered transcript for one open room.

The transcript is a set of messages kept sorted by (timestamp, id) and
deduplicated by id. History pages, pushed history batches and live messages
all funnel through the same insertion path, so the order never depends on
which arrived first.
"""
import bisect
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from relaychat.protocol import HistoryCursor, Message

from .anchor import ScrollAnchorHint, compute_anchor
from .paginator import TranscriptPage

logger = logging.getLogger(__name__)


class TranscriptStore:
    """Ordered, duplicate-free message log."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.has_more = False
        self._keys: List[Tuple[float, str]] = []
        self._messages: List[Message] = []
        self._by_id: Dict[str, Message] = {}

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._by_id

    @property
    def next_cursor(self) -> Optional[str]:
        """Cursor for the page older than everything held, or None if empty."""
        if not self._messages:
            return None
        return HistoryCursor.from_message(self._messages[0]).encode()

    def seed(self, page: TranscriptPage) -> None:
        """Replace the content with ``page`` (initial load)."""
        self._keys.clear()
        self._messages.clear()
        self._by_id.clear()
        self._insert_many(page.messages)
        self.has_more = page.has_more
        logger.debug("[Transcript] Seeded %s with %d messages", self.session_id, len(self._messages))

    def prepend(
        self,
        page: TranscriptPage,
        top_visible_id: Optional[str] = None,
        offset_px: Optional[float] = None,
    ) -> Optional[ScrollAnchorHint]:
        """Merge an older page and return where to pin the viewport.

        The hint refers to the topmost visible message before the merge;
        None when the store was empty.
        """
        hint = compute_anchor(self._messages, top_visible_id, offset_px)
        inserted = self._insert_many(page.messages)
        self.has_more = page.has_more
        logger.debug(
            "[Transcript] Prepended %d of %d messages to %s", inserted, len(page.messages), self.session_id
        )
        return hint

    def append(self, message: Message) -> bool:
        """Insert a live message. Returns False for a duplicate id."""
        return self._insert(message)

    def merge(self, messages: Iterable[Message]) -> int:
        """Insert a batch (e.g. a pushed history batch). Returns inserted count."""
        return self._insert_many(messages)

    def snapshot(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    def _insert_many(self, messages: Iterable[Message]) -> int:
        return sum(1 for message in messages if self._insert(message))

    def _insert(self, message: Message) -> bool:
        if message.sessionId != self.session_id:
            logger.warning(
                "[Transcript] Ignoring message %s for session %s in %s",
                message.id, message.sessionId, self.session_id,
            )
            return False
        if message.id in self._by_id:
            return False
        key = message.sort_key
        index = bisect.bisect_left(self._keys, key)
        self._keys.insert(index, key)
        self._messages.insert(index, message)
        self._by_id[message.id] = message
        return True
