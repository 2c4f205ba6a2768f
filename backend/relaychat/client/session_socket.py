"""One authenticated transport connection for one chat session.

State machine (no skipping):

    Idle -> Connecting -> Authenticating -> Open -> Closing -> Idle

    Connecting / Authenticating / Open -> Reconnecting   transport error or unexpected close
    Reconnecting -> Connecting                           backoff timer fired
    Authenticating -> Failed                             auth_ack(success=false) or server error
    Reconnecting budget exhausted -> Failed

Failed is terminal for the instance's current credential: it never retries
on its own. ``open()`` may be called again from Failed, which discards the
token snapshot so a fresh credential is requested.

Every connection attempt, timer and reader loop is stamped with a generation
number. Callbacks compare their generation with the socket's current one
before acting, so a stale timer or a late frame from a torn-down transport is
a guaranteed no-op.

Thread Safety:
    All methods must be called from the event loop that runs the socket.
    Transport events are handled synchronously; no state is observable
    mid-transition.
"""
import asyncio
import logging
from enum import Enum
from typing import Callable, Optional

from relaychat.errors import (
    AuthRejected,
    MalformedFrame,
    NotConnected,
    TransportError,
)
from relaychat.protocol import (
    AccessToken,
    AuthAck,
    ContentType,
    EnvelopeKind,
    InboundEnvelope,
    auth_frame,
    outbound_message_frame,
    parse_envelope,
)

from .api import AccessTokenProvider
from .backoff import BackoffPolicy
from .transport import Frame, Transport, TransportFactory

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

DEFAULT_MAX_RECONNECT_ATTEMPTS = 5

DEFAULT_AUTH_TIMEOUT_SECONDS = 10.0


class ConnectionState(str, Enum):
    """Lifecycle state of a session socket."""
    IDLE = "idle"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    OPEN = "open"
    CLOSING = "closing"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


# States from which a transport failure leads to Reconnecting
_LIVE_STATES = (
    ConnectionState.CONNECTING,
    ConnectionState.AUTHENTICATING,
    ConnectionState.OPEN,
)

EnvelopeCallback = Callable[["SessionSocket", InboundEnvelope], None]
StateCallback = Callable[["SessionSocket", ConnectionState, Optional[Exception]], None]


class SessionSocket:
    """Owns exactly one transport connection for one session.

    Args:
        session_id: Session (room) this socket serves.
        url: Transport URL for the session.
        transport_factory: Coroutine function opening a transport for a URL.
        token_provider: Source of per-session access tokens.
        backoff: Reconnect delay policy.
        max_reconnect_attempts: Retries allowed before giving up with Failed.
        auth_timeout: Seconds to wait for auth_ack after sending the credential.
        on_envelope: Called with each message / history_batch / error envelope
            received while Open.
        on_state_change: Called after every state transition.
    """

    def __init__(
        self,
        session_id: str,
        url: str,
        transport_factory: TransportFactory,
        token_provider: AccessTokenProvider,
        backoff: Optional[BackoffPolicy] = None,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        auth_timeout: float = DEFAULT_AUTH_TIMEOUT_SECONDS,
        on_envelope: Optional[EnvelopeCallback] = None,
        on_state_change: Optional[StateCallback] = None,
    ) -> None:
        self.session_id = session_id
        self.url = url
        self.state = ConnectionState.IDLE
        self.reconnect_attempt = 0
        self.auth_token: Optional[AccessToken] = None
        self.failure: Optional[Exception] = None

        self._transport_factory = transport_factory
        self._token_provider = token_provider
        self._backoff = backoff or BackoffPolicy()
        self._max_reconnect_attempts = max_reconnect_attempts
        self._auth_timeout = auth_timeout
        self._on_envelope = on_envelope
        self._on_state_change = on_state_change

        self._generation = 0
        self._transport: Optional[Transport] = None
        self._task: Optional[asyncio.Task] = None
        self._reconnect_timer: Optional[asyncio.TimerHandle] = None
        self._auth_timer: Optional[asyncio.TimerHandle] = None

    def __repr__(self) -> str:
        return (
            f"SessionSocket(session_id={self.session_id!r}, state={self.state.value}, "
            f"attempt={self.reconnect_attempt}, generation={self._generation})"
        )

    # =========================================================================
    # Public API
    # =========================================================================

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_timer is not None

    def open(self) -> None:
        """Start connecting. Returns before the network round-trip completes.

        Accepted from Idle and Failed; ignored in any other state.
        """
        if self.state not in (ConnectionState.IDLE, ConnectionState.FAILED):
            logger.debug("[Socket] open() ignored for session %s in state %s", self.session_id, self.state.value)
            return
        self.auth_token = None
        self.failure = None
        self.reconnect_attempt = 0
        self._start_attempt()

    def close(self) -> None:
        """Tear the connection down and cancel any pending timer."""
        if self.state in (ConnectionState.IDLE, ConnectionState.CLOSING):
            return
        self._generation += 1
        transport = self._abort_attempt()
        self._set_state(ConnectionState.CLOSING)
        if transport is None:
            self._set_state(ConnectionState.IDLE)
            return
        asyncio.get_running_loop().create_task(self._finish_close(transport))

    async def send(self, content: str, content_type: ContentType = ContentType.TEXT) -> None:
        """Serialize and transmit a chat message.

        Raises:
            NotConnected: If the socket is not Open. Nothing is queued.
            TransportError: If the transport fails mid-send; reconnection is
                started before the error propagates.
        """
        transport = self._transport
        if self.state is not ConnectionState.OPEN or transport is None:
            raise NotConnected(self.session_id, self.state.value)
        frame = outbound_message_frame(content, content_type)
        generation = self._generation
        try:
            await transport.send(frame)
        except TransportError as exc:
            if self._is_current(generation):
                self._handle_transport_failure(exc)
            raise

    # =========================================================================
    # Connection attempts
    # =========================================================================

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _start_attempt(self) -> None:
        self._generation += 1
        generation = self._generation
        self._task = asyncio.get_running_loop().create_task(
            self._run(generation), name=f"session-socket:{self.session_id}:{generation}"
        )
        self._set_state(ConnectionState.CONNECTING)

    async def _ensure_token(self) -> AccessToken:
        if self.auth_token is None or self.auth_token.is_expired():
            self.auth_token = await self._token_provider.get_access_token(self.session_id)
        return self.auth_token

    async def _run(self, generation: int) -> None:
        try:
            token = await self._ensure_token()
        except AuthRejected as exc:
            if self._is_current(generation):
                self._fail(exc)
            return
        except TransportError as exc:
            if self._is_current(generation):
                self._handle_transport_failure(exc)
            return

        if not self._is_current(generation):
            return

        try:
            transport = await self._transport_factory(self.url)
        except TransportError as exc:
            if self._is_current(generation):
                self._handle_transport_failure(exc)
            return

        if not self._is_current(generation):
            await self._close_quietly(transport)
            return

        self._transport = transport
        self._arm_auth_timer(generation)
        self._set_state(ConnectionState.AUTHENTICATING)
        if not self._is_current(generation):
            return

        error: Optional[Exception] = None
        try:
            await transport.send(auth_frame(token.token))
            async for raw in transport:
                if not self._is_current(generation):
                    break
                self._handle_frame(raw)
        except TransportError as exc:
            error = exc
        except Exception as exc:
            logger.exception("[Socket] Reader for session %s crashed", self.session_id)
            error = TransportError(f"reader crashed: {exc}")

        if self._is_current(generation):
            self._handle_transport_failure(error or TransportError("connection closed unexpectedly"))

    # =========================================================================
    # Inbound frames
    # =========================================================================

    def _handle_frame(self, raw: Frame) -> None:
        try:
            envelope = parse_envelope(raw)
        except MalformedFrame as exc:
            logger.warning("[Socket] Dropping malformed frame on session %s: %s", self.session_id, exc.reason)
            return

        if envelope.kind is EnvelopeKind.AUTH_ACK:
            self._handle_auth_ack(envelope.payload)
            return

        if envelope.kind is EnvelopeKind.ERROR:
            if self.state is ConnectionState.AUTHENTICATING:
                self._fail(AuthRejected(envelope.payload.reason))
                return
            logger.warning("[Socket] Server error on session %s: %s", self.session_id, envelope.payload.reason)

        if self.state is not ConnectionState.OPEN:
            logger.debug(
                "[Socket] Dropping %s frame on session %s while %s",
                envelope.kind.value, self.session_id, self.state.value,
            )
            return

        if self._on_envelope is not None:
            try:
                self._on_envelope(self, envelope)
            except Exception:
                logger.exception("[Socket] Envelope callback failed for session %s", self.session_id)

    def _handle_auth_ack(self, ack: AuthAck) -> None:
        if self.state is not ConnectionState.AUTHENTICATING:
            logger.debug("[Socket] Unexpected auth_ack on session %s in state %s", self.session_id, self.state.value)
            return
        self._cancel_auth_timer()
        if not ack.success:
            self._fail(AuthRejected(ack.reason or "authentication rejected"))
            return
        self.reconnect_attempt = 0
        logger.info("[Socket] Session %s authenticated", self.session_id)
        self._set_state(ConnectionState.OPEN)

    # =========================================================================
    # Failure handling
    # =========================================================================

    def _handle_transport_failure(self, error: Exception) -> None:
        """Schedule a retry, or give up once the budget is spent."""
        if self.state not in _LIVE_STATES:
            return

        if self.reconnect_attempt >= self._max_reconnect_attempts:
            self._fail(TransportError(
                f"gave up after {self.reconnect_attempt} reconnect attempts: {error}"
            ))
            return

        self._generation += 1
        generation = self._generation
        self._release_transport(self._abort_attempt())

        delay = self._backoff.delay_seconds(self.reconnect_attempt)
        self.reconnect_attempt += 1
        logger.info(
            "[Socket] Session %s lost (%s); reconnect %d/%d in %.0fms",
            self.session_id, error, self.reconnect_attempt,
            self._max_reconnect_attempts, delay * 1000,
        )
        self._reconnect_timer = asyncio.get_running_loop().call_later(
            delay, self._on_reconnect_timer, generation
        )
        self._set_state(ConnectionState.RECONNECTING, error)

    def _on_reconnect_timer(self, generation: int) -> None:
        if not self._is_current(generation) or self.state is not ConnectionState.RECONNECTING:
            logger.debug("[Socket] Stale reconnect timer ignored for session %s", self.session_id)
            return
        self._reconnect_timer = None
        self._start_attempt()

    def _arm_auth_timer(self, generation: int) -> None:
        self._cancel_auth_timer()
        self._auth_timer = asyncio.get_running_loop().call_later(
            self._auth_timeout, self._on_auth_timeout, generation
        )

    def _on_auth_timeout(self, generation: int) -> None:
        self._auth_timer = None
        if not self._is_current(generation) or self.state is not ConnectionState.AUTHENTICATING:
            return
        logger.warning(
            "[Socket] No auth_ack for session %s within %.1fs", self.session_id, self._auth_timeout
        )
        self._handle_transport_failure(TransportError("auth handshake timed out"))

    def _fail(self, error: Exception) -> None:
        self._generation += 1
        self._release_transport(self._abort_attempt())
        self.failure = error
        if isinstance(error, AuthRejected):
            logger.warning("[Socket] Session %s authentication rejected: %s", self.session_id, error.reason)
        else:
            logger.error("[Socket] Session %s failed: %s", self.session_id, error)
        self._set_state(ConnectionState.FAILED, error)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _set_state(self, state: ConnectionState, error: Optional[Exception] = None) -> None:
        previous = self.state
        self.state = state
        logger.debug("[Socket] Session %s: %s -> %s", self.session_id, previous.value, state.value)
        if self._on_state_change is not None:
            try:
                self._on_state_change(self, state, error)
            except Exception:
                logger.exception("[Socket] State callback failed for session %s", self.session_id)

    def _cancel_auth_timer(self) -> None:
        if self._auth_timer is not None:
            self._auth_timer.cancel()
            self._auth_timer = None

    def _abort_attempt(self) -> Optional[Transport]:
        """Cancel timers and the running attempt; hand back the transport."""
        self._cancel_auth_timer()
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

        transport, self._transport = self._transport, None
        return transport

    def _release_transport(self, transport: Optional[Transport]) -> None:
        if transport is not None:
            asyncio.get_running_loop().create_task(self._close_quietly(transport))

    async def _finish_close(self, transport: Transport) -> None:
        await self._close_quietly(transport)
        if self.state is ConnectionState.CLOSING:
            self._set_state(ConnectionState.IDLE)

    async def _close_quietly(self, transport: Transport) -> None:
        try:
            await transport.close()
        except Exception as exc:
            logger.debug("[Socket] Closing transport for session %s failed: %s", self.session_id, exc)
