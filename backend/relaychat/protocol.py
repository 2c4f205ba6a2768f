"""Wire protocol shared by the RelayChat client and relay server.

Frames are JSON text. Client -> server:
    - {token}: credential frame, first frame after the transport opens
    - {type: "message", contentType, content}: outbound chat message

Server -> client:
    - {type: "auth_ack", success, reason?}
    - {type: "message", id, sessionId, authorId, contentType, content, timestamp}
    - {type: "history_batch", messages: [...], hasMore}
    - {type: "error", reason}

Inbound frames are decoded into an ``InboundEnvelope``; anything that does
not decode raises ``MalformedFrame`` so callers can drop and log it.
"""
import json
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, model_validator

from .errors import MalformedFrame

# Validation context for frames received from the network. Inbound messages
# must carry their own id and timestamp; only locally built messages get defaults.
INBOUND = {"inbound": True}

# =============================================================================
# Data Models
# =============================================================================


class ContentType(str, Enum):
    """Kind of content carried by a chat message.

    Attributes:
        TEXT: Plain text message.
        IMAGE: Image message; content is the image URL.
    """
    TEXT = "text"
    IMAGE = "image"


class EnvelopeKind(str, Enum):
    """Tag of a decoded inbound frame."""
    AUTH_ACK = "auth_ack"
    MESSAGE = "message"
    ERROR = "error"
    HISTORY_BATCH = "history_batch"


class Message(BaseModel):
    """A chat message as seen by both live push and history pages.

    Identity is ``id``: two messages with the same id are the same message
    regardless of where they came from.

    Attributes:
        id: Unique message identifier.
        sessionId: Room the message belongs to.
        authorId: Sender's user ID.
        contentType: text or image.
        content: Message text, or image URL for image messages.
        timestamp: Seconds since epoch.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique message ID"
    )
    sessionId: str = Field(..., description="Session this message belongs to")
    authorId: str = Field(..., description="User ID of the sender")
    contentType: ContentType = Field(
        default=ContentType.TEXT,
        description="Content type (text or image)"
    )
    content: str = Field(..., description="Message content")
    timestamp: float = Field(
        default_factory=time.time,
        description="Timestamp in seconds since epoch"
    )

    @model_validator(mode="before")
    @classmethod
    def _inbound_identity(cls, data: Any, info: ValidationInfo) -> Any:
        if info.context and info.context.get("inbound") and isinstance(data, dict):
            missing = [name for name in ("id", "timestamp") if data.get(name) is None]
            if missing:
                raise ValueError(f"inbound message is missing {', '.join(missing)}")
        return data

    @property
    def sort_key(self) -> Tuple[float, str]:
        return (self.timestamp, self.id)


class AuthAck(BaseModel):
    success: bool
    reason: Optional[str] = None


class ServerError(BaseModel):
    reason: str = "unknown error"


class HistoryBatch(BaseModel):
    messages: List[Message] = Field(default_factory=list)
    hasMore: bool = False


class OutboundMessage(BaseModel):
    """Client -> server chat frame. sessionId is implied by the connection."""
    type: Literal["message"] = "message"
    contentType: ContentType = ContentType.TEXT
    content: str = Field(..., min_length=1)


EnvelopePayload = Union[AuthAck, Message, ServerError, HistoryBatch]


@dataclass(frozen=True)
class InboundEnvelope:
    kind: EnvelopeKind
    payload: EnvelopePayload


@dataclass(frozen=True)
class AccessToken:
    """A short-lived per-session credential.

    Attributes:
        token: Opaque token string sent in the auth frame.
        expires_at: Expiry as seconds since epoch.
    """
    token: str
    expires_at: float

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at


# =============================================================================
# Cursors
# =============================================================================


@dataclass(frozen=True, order=True)
class HistoryCursor:
    """Position in a room's history: the (timestamp, id) of a message.

    Encoded on the wire as ``"<timestamp>:<id>"``. Comparison follows the
    (timestamp, id) order, so a smaller cursor points further back.
    """
    timestamp: float
    message_id: str

    @classmethod
    def from_message(cls, message: Message) -> "HistoryCursor":
        return cls(message.timestamp, message.id)

    def encode(self) -> str:
        return f"{self.timestamp!r}:{self.message_id}"

    @classmethod
    def decode(cls, value: str) -> "HistoryCursor":
        """Parse an encoded cursor.

        Raises:
            ValueError: If the value is not ``"<float>:<id>"``.
        """
        ts_part, sep, message_id = value.partition(":")
        if not sep:
            raise ValueError(f"Invalid history cursor: {value!r}")
        return cls(float(ts_part), message_id)


# =============================================================================
# Decoding
# =============================================================================


def _load_json(raw: Union[str, bytes]) -> Dict[str, Any]:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedFrame("frame is not valid UTF-8", raw) from exc
    try:
        data = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as exc:
        raise MalformedFrame("frame is not valid JSON", raw) from exc
    if not isinstance(data, dict):
        raise MalformedFrame("frame is not a JSON object", raw)
    return data


def parse_envelope(raw: Union[str, bytes]) -> InboundEnvelope:
    """Decode a raw server frame into an envelope.

    Frames of the form ``{"error": "..."}`` without a type are accepted as
    error envelopes.

    Raises:
        MalformedFrame: If the frame is not JSON, has an unknown type, or its
            payload does not validate.
    """
    data = _load_json(raw)
    frame_type = data.get("type")
    if frame_type is None and "error" in data:
        return InboundEnvelope(EnvelopeKind.ERROR, ServerError(reason=str(data["error"])))

    try:
        kind = EnvelopeKind(frame_type)
    except ValueError as exc:
        raise MalformedFrame(f"unknown frame type: {frame_type!r}", raw) from exc

    body = {k: v for k, v in data.items() if k != "type"}
    try:
        if kind is EnvelopeKind.AUTH_ACK:
            payload: EnvelopePayload = AuthAck.model_validate(body)
        elif kind is EnvelopeKind.MESSAGE:
            payload = Message.model_validate(body, context=INBOUND)
        elif kind is EnvelopeKind.HISTORY_BATCH:
            payload = HistoryBatch.model_validate(body, context=INBOUND)
        else:
            payload = ServerError(reason=str(body.get("reason") or body.get("error") or "unknown error"))
    except ValidationError as exc:
        raise MalformedFrame(f"invalid {kind.value} payload: {exc.error_count()} error(s)", raw) from exc

    return InboundEnvelope(kind, payload)


def parse_outbound(raw: Union[str, bytes]) -> OutboundMessage:
    """Decode a client chat frame (server side).

    Raises:
        MalformedFrame: If the frame is not a valid outbound message.
    """
    data = _load_json(raw)
    try:
        return OutboundMessage.model_validate(data)
    except ValidationError as exc:
        raise MalformedFrame("invalid message frame: content is required", raw) from exc


# =============================================================================
# Encoding
# =============================================================================


def encode_frame(frame: Dict[str, Any]) -> str:
    return json.dumps(frame, separators=(",", ":"))


def auth_frame(token: str) -> str:
    return encode_frame({"token": token})


def outbound_message_frame(content: str, content_type: ContentType = ContentType.TEXT) -> str:
    outbound = OutboundMessage(contentType=content_type, content=content)
    return encode_frame(outbound.model_dump(mode="json"))


def auth_ack_frame(success: bool, reason: Optional[str] = None) -> Dict[str, Any]:
    frame: Dict[str, Any] = {"type": EnvelopeKind.AUTH_ACK.value, "success": success}
    if reason:
        frame["reason"] = reason
    return frame


def message_frame(message: Message) -> Dict[str, Any]:
    return {"type": EnvelopeKind.MESSAGE.value, **message.model_dump(mode="json")}


def history_batch_frame(messages: List[Message], has_more: bool) -> Dict[str, Any]:
    return {
        "type": EnvelopeKind.HISTORY_BATCH.value,
        "messages": [m.model_dump(mode="json") for m in messages],
        "hasMore": has_more,
    }


def error_frame(reason: str) -> Dict[str, Any]:
    return {"type": EnvelopeKind.ERROR.value, "reason": reason}
