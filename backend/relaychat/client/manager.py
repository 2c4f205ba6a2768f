"""Client-side connection manager for multi-room chat.

Owns one SessionSocket per active session and routes inbound events to the
handlers registered for that session.

Key features:
    - Idempotent connect: at most one live socket per session id
    - Disconnect cancels pending reconnect timers and drops all handlers
    - Fan-out delivery: every handler sees every message, in arrival order
    - Separate channels for live messages and history batches
    - A single terminal SessionFailure per handler when a socket gives up
    - State-change listeners for surfacing "disconnected" in a UI

Thread Safety:
    Designed for a single asyncio event loop. The session-id -> socket map is
    only mutated inside manager methods; socket callbacks are ignored unless
    the socket is still the instance registered for its session id.

Note:
    There is deliberately no module-level instance. The application's
    top-level ChatClient constructs one manager and passes it to every room.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Union
from urllib.parse import quote

from relaychat.config import ClientSettings
from relaychat.errors import NotConnected
from relaychat.protocol import ContentType, EnvelopeKind, InboundEnvelope, Message

from .api import AccessTokenProvider
from .backoff import BackoffPolicy
from .session_socket import ConnectionState, SessionSocket
from .transport import TransportFactory

logger = logging.getLogger(__name__)

# States in which a socket is considered alive; connect() leaves it alone
_ACTIVE_STATES = (
    ConnectionState.CONNECTING,
    ConnectionState.AUTHENTICATING,
    ConnectionState.OPEN,
    ConnectionState.RECONNECTING,
)


@dataclass(frozen=True)
class SessionFailure:
    """Terminal notification delivered once to each handler of a session.

    Attributes:
        session_id: The session that gave up.
        reason: Human-readable cause.
        error: The underlying AuthRejected / TransportError, if any.
    """
    session_id: str
    reason: str
    error: Optional[Exception] = None


MessageHandler = Callable[[Union[Message, SessionFailure]], None]
HistoryHandler = Callable[[Union[List[Message], SessionFailure]], None]
StateListener = Callable[[str, ConnectionState, Optional[Exception]], None]


class ConnectionManager:
    """Creates, tears down and monitors session sockets.

    Args:
        transport_factory: Opens a transport for a URL.
        token_provider: Issues per-session access tokens.
        ws_base_url: Base WebSocket URL, e.g. ``ws://localhost:8000``.
        backoff: Reconnect delay policy shared by all sockets.
        max_reconnect_attempts: Retry budget per socket.
        auth_timeout: Seconds to wait for auth_ack.
    """

    def __init__(
        self,
        transport_factory: TransportFactory,
        token_provider: AccessTokenProvider,
        ws_base_url: str,
        backoff: Optional[BackoffPolicy] = None,
        max_reconnect_attempts: int = 5,
        auth_timeout: float = 10.0,
    ) -> None:
        self._transport_factory = transport_factory
        self._token_provider = token_provider
        self._ws_base_url = ws_base_url.rstrip("/")
        self._backoff = backoff or BackoffPolicy()
        self._max_reconnect_attempts = max_reconnect_attempts
        self._auth_timeout = auth_timeout

        # session_id -> the one socket currently owned for it
        self._sockets: Dict[str, SessionSocket] = {}

        # session_id -> handlers, in registration order
        self._message_handlers: Dict[str, List[MessageHandler]] = {}
        self._history_handlers: Dict[str, List[HistoryHandler]] = {}
        self._state_listeners: Dict[str, List[StateListener]] = {}

    @classmethod
    def from_settings(
        cls,
        settings: ClientSettings,
        transport_factory: TransportFactory,
        token_provider: AccessTokenProvider,
    ) -> "ConnectionManager":
        return cls(
            transport_factory=transport_factory,
            token_provider=token_provider,
            ws_base_url=settings.ws_base_url,
            backoff=BackoffPolicy(
                base_ms=settings.backoff_base_ms,
                cap_ms=settings.backoff_cap_ms,
                jitter=settings.backoff_jitter,
            ),
            max_reconnect_attempts=settings.max_reconnect_attempts,
            auth_timeout=settings.auth_timeout_seconds,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def session_url(self, session_id: str) -> str:
        return f"{self._ws_base_url}/ws/session/{quote(session_id, safe='')}"

    def connect(self, session_id: str) -> SessionSocket:
        """Ensure a live socket exists for ``session_id``.

        A socket that is connecting, authenticating, open or waiting to
        reconnect is left alone. An Idle or Failed socket is replaced by a new
        instance with a fresh attempt counter.

        Must be called from the running event loop. Returns immediately; the
        connection completes in the background.
        """
        existing = self._sockets.get(session_id)
        if existing is not None and existing.state in _ACTIVE_STATES:
            logger.debug(f"[Manager] connect({session_id}) ignored; socket is {existing.state.value}")
            return existing

        socket = SessionSocket(
            session_id=session_id,
            url=self.session_url(session_id),
            transport_factory=self._transport_factory,
            token_provider=self._token_provider,
            backoff=self._backoff,
            max_reconnect_attempts=self._max_reconnect_attempts,
            auth_timeout=self._auth_timeout,
            on_envelope=self._handle_envelope,
            on_state_change=self._handle_state_change,
        )
        self._sockets[session_id] = socket
        if existing is not None:
            existing.close()
        logger.info(f"[Manager] Connecting session {session_id}")
        socket.open()
        return socket

    def disconnect(self, session_id: str) -> None:
        """Tear down the session's socket and forget its handlers.

        Unknown session ids are a no-op.
        """
        self._message_handlers.pop(session_id, None)
        self._history_handlers.pop(session_id, None)
        self._state_listeners.pop(session_id, None)

        socket = self._sockets.pop(session_id, None)
        if socket is None:
            return
        socket.close()
        logger.info(f"[Manager] Disconnected session {session_id}")

    def disconnect_all(self) -> None:
        """Disconnect every tracked session (application-wide logout)."""
        session_ids = set(self._sockets) | set(self._message_handlers) \
            | set(self._history_handlers) | set(self._state_listeners)
        for session_id in session_ids:
            self.disconnect(session_id)
        logger.info(f"[Manager] Disconnected all sessions ({len(session_ids)})")

    def reconnect(self, session_id: str) -> SessionSocket:
        """Replace the session's socket with a new instance, keeping handlers."""
        socket = self._sockets.pop(session_id, None)
        if socket is not None:
            socket.close()
        return self.connect(session_id)

    async def send(
        self,
        session_id: str,
        content: str,
        content_type: ContentType = ContentType.TEXT,
    ) -> None:
        """Send a chat message on the session's socket.

        Raises:
            NotConnected: If the session has no Open socket.
            TransportError: If the transport fails while sending.
        """
        socket = self._sockets.get(session_id)
        if socket is None:
            raise NotConnected(session_id)
        await socket.send(content, content_type)

    # =========================================================================
    # Registration
    # =========================================================================

    def on_message(self, session_id: str, handler: MessageHandler) -> Callable[[], None]:
        """Register a handler for live messages. Returns an unsubscribe callable."""
        return self._register(self._message_handlers, session_id, handler)

    def on_history(self, session_id: str, handler: HistoryHandler) -> Callable[[], None]:
        """Register a handler for history batches. Returns an unsubscribe callable."""
        return self._register(self._history_handlers, session_id, handler)

    def on_state_change(self, session_id: str, listener: StateListener) -> Callable[[], None]:
        """Register a listener for lifecycle transitions. Returns an unsubscribe callable."""
        return self._register(self._state_listeners, session_id, listener)

    @staticmethod
    def _register(registry: Dict[str, list], session_id: str, handler) -> Callable[[], None]:
        handlers = registry.setdefault(session_id, [])
        handlers.append(handler)

        def unsubscribe() -> None:
            current = registry.get(session_id)
            if current is not None and handler in current:
                current.remove(handler)

        return unsubscribe

    # =========================================================================
    # Queries
    # =========================================================================

    def state(self, session_id: str) -> ConnectionState:
        socket = self._sockets.get(session_id)
        return socket.state if socket is not None else ConnectionState.IDLE

    def get_socket(self, session_id: str) -> Optional[SessionSocket]:
        return self._sockets.get(session_id)

    @property
    def session_ids(self) -> List[str]:
        return list(self._sockets)

    # =========================================================================
    # Socket callbacks
    # =========================================================================

    def _is_registered(self, socket: SessionSocket) -> bool:
        return self._sockets.get(socket.session_id) is socket

    def _handle_envelope(self, socket: SessionSocket, envelope: InboundEnvelope) -> None:
        if not self._is_registered(socket):
            return
        session_id = socket.session_id

        if envelope.kind is EnvelopeKind.MESSAGE:
            self._fan_out(self._message_handlers, session_id, envelope.payload)
        elif envelope.kind is EnvelopeKind.HISTORY_BATCH:
            batch = sorted(envelope.payload.messages, key=lambda m: m.sort_key)
            self._fan_out(self._history_handlers, session_id, batch)
        else:
            logger.debug(f"[Manager] {envelope.kind.value} envelope on session {session_id} not routed")

    def _handle_state_change(
        self,
        socket: SessionSocket,
        state: ConnectionState,
        error: Optional[Exception],
    ) -> None:
        if not self._is_registered(socket):
            return
        session_id = socket.session_id
        for listener in list(self._state_listeners.get(session_id, [])):
            try:
                listener(session_id, state, error)
            except Exception:
                logger.exception(f"[Manager] State listener failed for session {session_id}")

        if state is ConnectionState.FAILED:
            self._notify_failure(session_id, error)

    def _notify_failure(self, session_id: str, error: Optional[Exception]) -> None:
        failure = SessionFailure(
            session_id=session_id,
            reason=str(error) if error is not None else "connection failed",
            error=error,
        )
        logger.warning(f"[Manager] Session {session_id} failed: {failure.reason}")

        notified: list = []
        handlers = list(self._message_handlers.get(session_id, [])) \
            + list(self._history_handlers.get(session_id, []))
        for handler in handlers:
            if handler in notified:
                continue
            notified.append(handler)
            try:
                handler(failure)
            except Exception:
                logger.exception(f"[Manager] Failure handler raised for session {session_id}")

    @staticmethod
    def _fan_out(registry: Dict[str, list], session_id: str, payload) -> None:
        for handler in list(registry.get(session_id, [])):
            try:
                handler(payload)
            except Exception:
                logger.exception(f"[Manager] Handler failed for session {session_id}")
