"""Message relay server: token issuance, paged history and live fan-out."""

from .hub import RelayHub, hub
from .message_store import MessageStore
from .router import router
from .tokens import TokenIssuer

__all__ = [
    "MessageStore",
    "RelayHub",
    "TokenIssuer",
    "hub",
    "router",
]
