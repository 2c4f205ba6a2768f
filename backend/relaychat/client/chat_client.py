"""Top-level session-lifecycle controller for the RelayChat client.

Usage:
    async with ChatClient.from_config(user_id="alice") as chat:
        room = await chat.open_room("room-1")
        await room.send("hello")
        await room.load_older()
        chat.logout()

The ChatClient owns the one ConnectionManager of the application and hands
it to every RoomSession it opens.
"""
import logging
from typing import Dict, List, Optional

import httpx

from relaychat.config import AppSettings, ClientSettings, get_config

from .anchor import ScrollAnchorController
from .api import AccessTokenProvider, HistorySource, HttpHistorySource, HttpTokenProvider
from .manager import ConnectionManager
from .paginator import CursorPaginator
from .room import RoomSession, UpdateListener
from .transport import TransportFactory, websocket_factory

logger = logging.getLogger(__name__)


class ChatClient:
    """Owns the HTTP client, the token and history collaborators, the
    paginator and the connection manager.

    Args:
        settings: Client configuration.
        user_id: Identity used when requesting session tokens.
        transport_factory: Overrides the WebSocket transport (tests).
        http_client: Overrides the httpx client; not closed by ``aclose``.
        token_provider: Overrides the HTTP token provider.
        history_source: Overrides the HTTP history source.
    """

    def __init__(
        self,
        settings: ClientSettings,
        user_id: str,
        transport_factory: Optional[TransportFactory] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        token_provider: Optional[AccessTokenProvider] = None,
        history_source: Optional[HistorySource] = None,
    ) -> None:
        self.settings = settings
        self.user_id = user_id

        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=settings.api_base_url,
            timeout=settings.request_timeout_seconds,
        )
        self.token_provider = token_provider or HttpTokenProvider(self._http, user_id)
        self.history_source = history_source or HttpHistorySource(self._http)
        self.paginator = CursorPaginator(
            self.history_source, cooldown_ms=settings.pagination_cooldown_ms
        )
        self.manager = ConnectionManager.from_settings(
            settings,
            transport_factory or websocket_factory(open_timeout=settings.request_timeout_seconds),
            self.token_provider,
        )
        self._rooms: Dict[str, RoomSession] = {}

    @classmethod
    def from_config(
        cls,
        user_id: str,
        config: Optional[AppSettings] = None,
        **overrides,
    ) -> "ChatClient":
        """Build a client from the loaded application settings."""
        config = config or get_config()
        return cls(config.client, user_id, **overrides)

    async def __aenter__(self) -> "ChatClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # =========================================================================
    # Rooms
    # =========================================================================

    async def open_room(
        self,
        session_id: str,
        anchor: Optional[ScrollAnchorController] = None,
        on_update: Optional[UpdateListener] = None,
    ) -> RoomSession:
        """Open a room, or return it if it is already open.

        If the initial history fetch fails the room is closed again and the
        error propagates.
        """
        room = self._rooms.get(session_id)
        if room is not None:
            return room

        room = RoomSession(
            session_id,
            self.manager,
            self.paginator,
            page_size=self.settings.page_size,
            anchor=anchor,
            on_update=on_update,
        )
        self._rooms[session_id] = room
        try:
            await room.open()
        except Exception:
            logger.warning(f"[Client] Failed to open room {session_id}")
            if self._rooms.get(session_id) is room:
                del self._rooms[session_id]
            room.close()
            raise
        return room

    def get_room(self, session_id: str) -> Optional[RoomSession]:
        return self._rooms.get(session_id)

    @property
    def rooms(self) -> List[str]:
        return list(self._rooms)

    def close_room(self, session_id: str) -> None:
        room = self._rooms.pop(session_id, None)
        if room is not None:
            room.close()

    def logout(self) -> None:
        """Close every room and drop every connection."""
        for session_id in list(self._rooms):
            self.close_room(session_id)
        self.manager.disconnect_all()
        logger.info(f"[Client] Logged out {self.user_id}")

    async def aclose(self) -> None:
        self.logout()
        if self._owns_http:
            await self._http.aclose()
