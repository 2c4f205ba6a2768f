"""Tests for the relay endpoints: token issuance, history paging, WebSocket relay.

Protocol under test:
1. Client sends {token} as the first frame
2. Server answers {type: "auth_ack", success} (closing with 1008 on failure)
3. Server pushes {type: "history_batch", messages, hasMore}
4. Chat frames are persisted and broadcast to every connection of the session
"""
import time

import pytest
from starlette.websockets import WebSocketDisconnect

from relaychat.protocol import HistoryCursor, Message
from relaychat.relay.hub import hub

from fakes import make_messages


def authenticate(ws, token):
    ws.send_json({"token": token})
    return ws.receive_json()


def open_session(ws, token):
    """Authenticate and consume the initial history batch."""
    ack = authenticate(ws, token)
    assert ack == {"type": "auth_ack", "success": True}
    batch = ws.receive_json()
    assert batch["type"] == "history_batch"
    return batch


def test_health(api_client):
    assert api_client.get("/health").json() == {"status": "ok"}


class TestTokenEndpoint:
    def test_issue_token(self, api_client, token_issuer):
        response = api_client.post("/sessions/room-1/token", json={"userId": "alice"})
        assert response.status_code == 200
        body = response.json()
        assert body["expiresAt"] > time.time()
        claims = token_issuer.verify(body["token"], "room-1")
        assert claims["sub"] == "alice"

    def test_user_id_required(self, api_client):
        response = api_client.post("/sessions/room-1/token", json={})
        assert response.status_code == 422


class TestHistoryEndpoint:
    def test_newest_page(self, api_client, message_store):
        for message in make_messages("room-1", 8):
            message_store.add(message)

        response = api_client.get("/sessions/room-1/messages", params={"limit": 3})
        body = response.json()
        assert [m["id"] for m in body["messages"]] == ["m005", "m006", "m007"]
        assert body["hasMore"] is True

    def test_default_page_size(self, api_client, message_store):
        for message in make_messages("room-1", 8):
            message_store.add(message)
        body = api_client.get("/sessions/room-1/messages").json()
        assert len(body["messages"]) == 5

    def test_equal_timestamps_are_never_skipped(self, api_client, message_store):
        for message_id in "abcdefg":
            message_store.add(Message(
                id=message_id, sessionId="room-1", authorId="bob", content=message_id, timestamp=1000.0,
            ))

        collected = []
        before = None
        while True:
            params = {"limit": 3}
            if before:
                params["before"] = before
            body = api_client.get("/sessions/room-1/messages", params=params).json()
            page = [m["id"] for m in body["messages"]]
            collected = page + collected
            if not body["hasMore"]:
                break
            oldest = body["messages"][0]
            before = HistoryCursor(oldest["timestamp"], oldest["id"]).encode()

        assert collected == list("abcdefg")

    def test_bad_cursor(self, api_client):
        response = api_client.get("/sessions/room-1/messages", params={"before": "yesterday"})
        assert response.status_code == 400

    def test_unknown_session_is_empty(self, api_client):
        body = api_client.get("/sessions/nobody/messages").json()
        assert body == {"messages": [], "hasMore": False}


class TestWebSocketAuth:
    def test_valid_token_gets_ack_and_history(self, api_client, message_store, token_issuer):
        for message in make_messages("room-1", 7):
            message_store.add(message)
        token = token_issuer.issue("room-1", "alice").token

        with api_client.websocket_connect("/ws/session/room-1") as ws:
            batch = open_session(ws, token)
        assert [m["id"] for m in batch["messages"]] == ["m002", "m003", "m004", "m005", "m006"]
        assert batch["hasMore"] is True

    @pytest.mark.parametrize("issued_for, issued_at, reason", [
        ("room-2", None, "token not valid for this session"),
        ("room-1", time.time() - 3600, "token expired"),
    ])
    def test_bad_token_rejected(self, api_client, token_issuer, issued_for, issued_at, reason):
        token = token_issuer.issue(issued_for, "alice", now=issued_at).token
        with api_client.websocket_connect("/ws/session/room-1") as ws:
            ack = authenticate(ws, token)
            assert ack == {"type": "auth_ack", "success": False, "reason": reason}
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
        assert exc_info.value.code == 1008

    def test_forged_token_rejected(self, api_client):
        with api_client.websocket_connect("/ws/session/room-1") as ws:
            ack = authenticate(ws, "not-a-jwt")
        assert ack["success"] is False
        assert ack["reason"] == "invalid token"

    def test_credential_frame_must_be_json(self, api_client):
        with api_client.websocket_connect("/ws/session/room-1") as ws:
            ws.send_text("hello")
            ack = ws.receive_json()
        assert ack["success"] is False
        assert ack["reason"] == "invalid credential frame"

    def test_auth_timeout(self, api_client, test_settings):
        test_settings.relay.auth_timeout_seconds = 0.1
        with api_client.websocket_connect("/ws/session/room-1") as ws:
            ack = ws.receive_json()
        assert ack == {"type": "auth_ack", "success": False, "reason": "auth timeout"}

    def test_room_full(self, api_client, test_settings, token_issuer):
        test_settings.relay.max_participants = 1
        token = token_issuer.issue("room-1", "alice").token
        with api_client.websocket_connect("/ws/session/room-1") as ws1:
            open_session(ws1, token)
            with pytest.raises(WebSocketDisconnect):
                with api_client.websocket_connect("/ws/session/room-1") as ws2:
                    ws2.receive_json()


class TestWebSocketRelay:
    def test_message_persisted_and_broadcast(self, api_client, message_store, token_issuer):
        alice = token_issuer.issue("room-1", "alice").token
        bob = token_issuer.issue("room-1", "bob").token

        with api_client.websocket_connect("/ws/session/room-1") as ws1, \
             api_client.websocket_connect("/ws/session/room-1") as ws2:
            open_session(ws1, alice)
            open_session(ws2, bob)
            assert hub.room_size("room-1") == 2

            ws1.send_json({"type": "message", "contentType": "text", "content": "Hello from alice"})
            received_1 = ws1.receive_json()
            received_2 = ws2.receive_json()

        assert received_1 == received_2
        assert received_1["type"] == "message"
        assert received_1["authorId"] == "alice"
        assert received_1["sessionId"] == "room-1"
        assert received_1["content"] == "Hello from alice"
        assert message_store.count("room-1") == 1

        messages, _ = message_store.page("room-1", None, 10)
        assert messages[0].id == received_1["id"]

    def test_sessions_are_isolated(self, api_client, message_store, token_issuer):
        with api_client.websocket_connect("/ws/session/room-1") as ws1, \
             api_client.websocket_connect("/ws/session/room-2") as ws2:
            open_session(ws1, token_issuer.issue("room-1", "alice").token)
            open_session(ws2, token_issuer.issue("room-2", "bob").token)

            ws2.send_json({"type": "message", "content": "only room 2"})
            assert ws2.receive_json()["content"] == "only room 2"

        assert message_store.count("room-1") == 0
        assert message_store.count("room-2") == 1

    def test_invalid_frame_gets_error_and_connection_survives(self, api_client, message_store, token_issuer):
        with api_client.websocket_connect("/ws/session/room-1") as ws:
            open_session(ws, token_issuer.issue("room-1", "alice").token)

            ws.send_json({"type": "message", "content": ""})
            error = ws.receive_json()
            assert error["type"] == "error"

            ws.send_json({"type": "message", "contentType": "image", "content": "https://img/cat.png"})
            message = ws.receive_json()
            assert message["contentType"] == "image"

        assert message_store.count("room-1") == 1

    def test_disconnect_leaves_hub(self, api_client, token_issuer):
        with api_client.websocket_connect("/ws/session/room-1") as ws:
            open_session(ws, token_issuer.issue("room-1", "alice").token)
            assert hub.room_size("room-1") == 1
        time.sleep(0.05)
        assert hub.room_size("room-1") == 0
