"""One open chat room: connection, transcript and history paging wired together.

Data flow:
    open() -> manager.connect -> fetch newest page -> seed transcript
    live message -> append (buffered until the seed lands)
    history_batch push -> merge
    load_older() -> fetch page before the oldest held message -> prepend -> pin anchor
"""
import logging
from typing import Callable, List, Optional, Union

from relaychat.protocol import ContentType, Message

from .anchor import ScrollAnchorController, ScrollAnchorHint
from .manager import ConnectionManager, SessionFailure
from .paginator import CursorPaginator
from .session_socket import ConnectionState
from .transcript import TranscriptStore

logger = logging.getLogger(__name__)

UpdateListener = Callable[["RoomSession"], None]


class RoomSession:
    """Client-side state of a single open room.

    Args:
        session_id: Room identifier.
        manager: The application's shared ConnectionManager.
        paginator: The application's shared CursorPaginator.
        page_size: Messages per history page.
        anchor: UI collaborator pinned after each prepend.
        on_update: Called whenever the transcript or failure state changes.
    """

    def __init__(
        self,
        session_id: str,
        manager: ConnectionManager,
        paginator: CursorPaginator,
        page_size: int = 50,
        anchor: Optional[ScrollAnchorController] = None,
        on_update: Optional[UpdateListener] = None,
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be positive")
        self.session_id = session_id
        self.store = TranscriptStore(session_id)
        self.failure: Optional[SessionFailure] = None

        self._manager = manager
        self._paginator = paginator
        self._page_size = page_size
        self._anchor = anchor
        self._on_update = on_update

        self._seeded = False
        self._loading_older = False
        self._closed = False
        self._buffered: List[Message] = []
        self._unsubscribe: List[Callable[[], None]] = []

    @property
    def state(self) -> ConnectionState:
        return self._manager.state(self.session_id)

    @property
    def is_seeded(self) -> bool:
        return self._seeded

    @property
    def is_loading_older(self) -> bool:
        return self._loading_older

    async def open(self) -> None:
        """Connect and load the newest page.

        Safe to call again after a failed history fetch; the connection and
        handlers are only set up once.

        Raises:
            TransportError / AuthRejected: If the initial page cannot be fetched.
        """
        if self._closed:
            raise RuntimeError(f"room {self.session_id} is closed")
        if not self._unsubscribe:
            self._unsubscribe = [
                self._manager.on_message(self.session_id, self._handle_message),
                self._manager.on_history(self.session_id, self._handle_history),
            ]
        self._manager.connect(self.session_id)

        page = await self._paginator.fetch_page(self.session_id, None, self._page_size)
        if self._closed:
            return
        self.store.seed(page)
        self._seeded = True

        buffered, self._buffered = self._buffered, []
        if buffered:
            inserted = self.store.merge(buffered)
            logger.debug(f"[Room] Applied {inserted} buffered messages to {self.session_id}")
        logger.info(f"[Room] Opened {self.session_id} with {len(self.store)} messages")
        self._notify()

    async def load_older(
        self,
        top_visible_id: Optional[str] = None,
        offset_px: Optional[float] = None,
    ) -> Optional[ScrollAnchorHint]:
        """Fetch and prepend the page before the oldest held message.

        Returns None without fetching when there is nothing more to load or a
        load is already running. A failed fetch leaves the transcript as it
        was and propagates.
        """
        if self._closed or not self._seeded or not self.store.has_more or self._loading_older:
            return None

        self._loading_older = True
        try:
            page = await self._paginator.fetch_page(
                self.session_id, self.store.next_cursor, self._page_size
            )
        finally:
            self._loading_older = False

        if self._closed:
            return None
        hint = self.store.prepend(page, top_visible_id, offset_px)
        if hint is not None and self._anchor is not None:
            self._anchor.pin(hint.anchor_message_id, hint.offset_px)
        self._notify()
        return hint

    async def send(self, content: str, content_type: ContentType = ContentType.TEXT) -> None:
        await self._manager.send(self.session_id, content, content_type)

    def reconnect(self) -> None:
        """Manual retry after the connection reached Failed."""
        if self._closed:
            return
        self.failure = None
        self._manager.reconnect(self.session_id)

    def close(self) -> None:
        """Disconnect and discard the transcript's paging state."""
        if self._closed:
            return
        self._closed = True
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        self._manager.disconnect(self.session_id)
        self._paginator.reset(self.session_id)
        logger.info(f"[Room] Closed {self.session_id}")

    # =========================================================================
    # Handlers
    # =========================================================================

    def _handle_message(self, event: Union[Message, SessionFailure]) -> None:
        if isinstance(event, SessionFailure):
            self._handle_failure(event)
            return
        if not self._seeded:
            self._buffered.append(event)
            return
        if self.store.append(event):
            self._notify()

    def _handle_history(self, event: Union[List[Message], SessionFailure]) -> None:
        if isinstance(event, SessionFailure):
            self._handle_failure(event)
            return
        if not self._seeded:
            self._buffered.extend(event)
            return
        if self.store.merge(event):
            self._notify()

    def _handle_failure(self, failure: SessionFailure) -> None:
        if self.failure is failure:
            return
        self.failure = failure
        logger.warning(f"[Room] {self.session_id} disconnected: {failure.reason}")
        self._notify()

    def _notify(self) -> None:
        if self._on_update is None:
            return
        try:
            self._on_update(self)
        except Exception:
            logger.exception(f"[Room] Update listener failed for {self.session_id}")
