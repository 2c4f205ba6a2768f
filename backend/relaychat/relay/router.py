"""Relay router providing WebSocket and HTTP endpoints.

This module provides:
    - POST /sessions/{session_id}/token: Issue a short-lived session token
    - GET /sessions/{session_id}/messages: Paginated message history
    - WebSocket /ws/session/{session_id}: Authenticated real-time messaging

Protocol Flow:
    1. Client connects and sends: {token}
       → Server replies: {type: "auth_ack", success: true}
       → or {type: "auth_ack", success: false, reason} and closes with 1008
    2. Server sends: {type: "history_batch", messages: [...], hasMore}
    3. Client sends: {type: "message", contentType, content}
       → Server persists and broadcasts: {type: "message", ...fullMessage}
       → Invalid frames are answered with {type: "error", reason}
"""
import asyncio
import json
import logging
from typing import Optional, Union

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from relaychat.config import get_config
from relaychat.errors import AuthRejected, MalformedFrame
from relaychat.protocol import (
    Message,
    auth_ack_frame,
    error_frame,
    history_batch_frame,
    message_frame,
    parse_outbound,
)

from .hub import hub
from .message_store import MessageStore
from .tokens import TokenIssuer

logger = logging.getLogger(__name__)

router = APIRouter()

# WebSocket close code for policy violations (bad credentials, room full)
POLICY_VIOLATION = 1008


class TokenRequest(BaseModel):
    userId: str = Field(..., min_length=1, description="User requesting access")


def get_message_store() -> MessageStore:
    relay = get_config().relay
    return MessageStore.get_instance(db_path=relay.db_path, max_page_size=relay.max_page_size)


def get_token_issuer() -> TokenIssuer:
    return TokenIssuer.from_settings(get_config())


# =============================================================================
# HTTP endpoints
# =============================================================================


@router.post("/sessions/{session_id}/token")
async def issue_session_token(session_id: str, request: TokenRequest) -> JSONResponse:
    """Issue an access token scoped to one session.

    Returns:
        JSON with token and expiresAt (seconds since epoch).
    """
    token = get_token_issuer().issue(session_id, request.userId)
    logger.info(f"[Tokens] Issued token for {request.userId} on session {session_id}")
    return JSONResponse({"token": token.token, "expiresAt": token.expires_at})


@router.get("/sessions/{session_id}/messages")
async def get_message_history(
    session_id: str,
    before: Optional[str] = Query(None, description="Cursor of the oldest message already held"),
    limit: Optional[int] = Query(None, ge=1, description="Number of messages to return"),
) -> JSONResponse:
    """Get paginated message history for a session.

    Clients fetch older messages by passing the cursor ``"<timestamp>:<id>"``
    of the oldest message they currently have.

    Example:
        GET /sessions/abc123/messages?limit=50
        GET /sessions/abc123/messages?before=1707321600.123:9f1c...&limit=50
    """
    store = get_message_store()
    page_size = limit or get_config().relay.default_page_size
    try:
        messages, has_more = store.page(session_id, before, page_size)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    return JSONResponse({
        "messages": [msg.model_dump(mode="json") for msg in messages],
        "hasMore": has_more
    })


# =============================================================================
# WebSocket endpoint
# =============================================================================


async def _receive_frame(websocket: WebSocket) -> Union[str, bytes]:
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000))
    if message.get("text") is not None:
        return message["text"]
    return message.get("bytes") or b""


def _extract_token(raw: Union[str, bytes]) -> str:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        raise AuthRejected("invalid credential frame")
    token = data.get("token") if isinstance(data, dict) else None
    if not isinstance(token, str) or not token:
        raise AuthRejected("invalid credential frame")
    return token


async def _reject(websocket: WebSocket, session_id: str, reason: str) -> None:
    logger.warning(f"[WS] Rejecting connection to session {session_id}: {reason}")
    try:
        await websocket.send_json(auth_ack_frame(False, reason))
        await websocket.close(code=POLICY_VIOLATION)
    except (WebSocketDisconnect, RuntimeError) as exc:
        logger.debug(f"[WS] Client left before rejection was delivered: {exc}")


@router.websocket("/ws/session/{session_id}")
async def websocket_session_endpoint(websocket: WebSocket, session_id: str) -> None:
    """WebSocket endpoint for one client in one session.

    The first frame must carry a token issued for this session. Until the
    handshake succeeds the connection receives nothing else.
    """
    config = get_config()
    logger.info(f"[WS] New connection to session: {session_id}")

    # Enforce max_participants from config (0 = no limit)
    max_participants = config.relay.max_participants
    if max_participants > 0 and hub.room_size(session_id) >= max_participants:
        logger.warning(
            f"[WS] Session {session_id} is full ({max_participants} participants). "
            "Rejecting new connection."
        )
        await websocket.close(code=POLICY_VIOLATION)
        return

    await websocket.accept()

    try:
        raw = await asyncio.wait_for(
            _receive_frame(websocket), timeout=config.relay.auth_timeout_seconds
        )
    except asyncio.TimeoutError:
        await _reject(websocket, session_id, "auth timeout")
        return
    except WebSocketDisconnect:
        logger.info(f"[WS] Client left session {session_id} before authenticating")
        return

    try:
        claims = get_token_issuer().verify(_extract_token(raw), session_id)
    except AuthRejected as exc:
        await _reject(websocket, session_id, exc.reason)
        return

    user_id = claims["sub"]
    store = get_message_store()

    try:
        await websocket.send_json(auth_ack_frame(True))
        hub.add(session_id, websocket)
        logger.info(f"[WS] User {user_id} authenticated on session {session_id}")

        history, has_more = store.page(session_id, None, config.relay.default_page_size)
        await websocket.send_json(history_batch_frame(history, has_more))

        # Main message loop
        while True:
            raw = await _receive_frame(websocket)
            try:
                outbound = parse_outbound(raw)
            except MalformedFrame as exc:
                logger.debug(f"[WS] Session {session_id} invalid frame from {user_id}: {exc.reason}")
                await websocket.send_json(error_frame(exc.reason))
                continue

            message = Message(
                sessionId=session_id,
                authorId=user_id,
                contentType=outbound.contentType,
                content=outbound.content,
            )
            store.add(message)

            logger.info(f"[WS] Broadcasting message to {hub.room_size(session_id)} connections")
            await hub.broadcast(message_frame(message), session_id)

    except WebSocketDisconnect:
        logger.info(f"[WS] User {user_id} disconnected from session {session_id}")
    finally:
        hub.remove(session_id, websocket)
