"""Transport abstraction for session sockets.

A transport is a message-oriented, full-duplex text stream. The production
implementation wraps a ``websockets`` client connection; tests substitute an
in-memory fake with the same three operations.
"""
import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Protocol, Union

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException

from relaychat.errors import TransportError

logger = logging.getLogger(__name__)

Frame = Union[str, bytes]


class Transport(Protocol):
    """An open connection. Iterating yields inbound frames until it closes."""

    async def send(self, frame: str) -> None: ...

    def __aiter__(self) -> AsyncIterator[Frame]: ...

    async def close(self) -> None: ...


TransportFactory = Callable[[str], Awaitable[Transport]]


class WebSocketTransport:
    """Transport over a ``websockets`` client connection."""

    def __init__(self, connection) -> None:
        self._connection = connection

    async def send(self, frame: str) -> None:
        try:
            await self._connection.send(frame)
        except ConnectionClosed as exc:
            raise TransportError(f"connection closed while sending: {exc}") from exc

    async def __aiter__(self) -> AsyncIterator[Frame]:
        try:
            async for frame in self._connection:
                yield frame
        except ConnectionClosedOK:
            return
        except ConnectionClosed as exc:
            raise TransportError(f"connection closed abnormally: {exc}") from exc

    async def close(self) -> None:
        await self._connection.close()


def websocket_factory(open_timeout: float = 10.0) -> TransportFactory:
    """Build a transport factory that opens real WebSocket connections."""

    async def _open(url: str) -> Transport:
        try:
            connection = await websockets.connect(url, open_timeout=open_timeout)
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            raise TransportError(f"could not open {url}: {exc}") from exc
        logger.debug("[Transport] Opened %s", url)
        return WebSocketTransport(connection)

    return _open
