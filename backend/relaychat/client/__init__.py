"""RelayChat client core.

Provides:
    - ConnectionManager / SessionSocket: authenticated, self-healing
      per-session connections.
    - CursorPaginator / TranscriptStore: backward history paging merged with
      live messages.
    - RoomSession / ChatClient: application-level glue.
"""
from relaychat.protocol import AccessToken

from .anchor import ScrollAnchorController, ScrollAnchorHint, compute_anchor
from .api import HttpHistorySource, HttpTokenProvider, HistoryResponse
from .backoff import BackoffPolicy
from .chat_client import ChatClient
from .manager import ConnectionManager, SessionFailure
from .paginator import CursorPaginator, TranscriptPage
from .room import RoomSession
from .session_socket import ConnectionState, SessionSocket
from .transcript import TranscriptStore
from .transport import WebSocketTransport, websocket_factory

__all__ = [
    "AccessToken",
    "BackoffPolicy",
    "ChatClient",
    "ConnectionManager",
    "ConnectionState",
    "CursorPaginator",
    "HistoryResponse",
    "HttpHistorySource",
    "HttpTokenProvider",
    "RoomSession",
    "ScrollAnchorController",
    "ScrollAnchorHint",
    "SessionFailure",
    "SessionSocket",
    "TranscriptPage",
    "TranscriptStore",
    "WebSocketTransport",
    "compute_anchor",
    "websocket_factory",
]
