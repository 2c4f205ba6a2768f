"""Error taxonomy shared by the RelayChat client core and the relay server.

    - TransportError: network-level failure, always retryable per backoff policy
    - AuthRejected: credential refused; terminal until a fresh token is obtained
    - RateLimited: advisory, the caller should back off pagination requests
    - NotConnected: send attempted on a socket that is not Open
    - MalformedFrame: undecodable inbound frame; dropped and logged
"""
from typing import Optional


class RelayChatError(Exception):
    """Base class for all RelayChat errors."""


class TransportError(RelayChatError):
    """Network-level failure (refused connection, reset, handshake timeout)."""


class AuthRejected(RelayChatError):
    """The server or token service refused the credential."""

    def __init__(self, reason: str = "unauthorized") -> None:
        super().__init__(reason)
        self.reason = reason


class RateLimited(RelayChatError):
    """A history request was issued inside the cooldown window."""

    def __init__(self, session_id: str, retry_after_ms: float) -> None:
        super().__init__(
            f"history request for session {session_id} rate limited; "
            f"retry in {retry_after_ms:.0f}ms"
        )
        self.session_id = session_id
        self.retry_after_ms = retry_after_ms


class NotConnected(RelayChatError):
    """Send attempted while the session socket is not Open."""

    def __init__(self, session_id: str, state: Optional[str] = None) -> None:
        detail = f" (state={state})" if state else ""
        super().__init__(f"session {session_id} is not connected{detail}")
        self.session_id = session_id
        self.state = state


class MalformedFrame(RelayChatError):
    """An inbound frame could not be decoded into an envelope."""

    def __init__(self, reason: str, raw: object = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.raw = raw
