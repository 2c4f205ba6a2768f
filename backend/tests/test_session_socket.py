"""Tests for the session socket state machine.

Covers:
* Auth handshake: success, negative auth_ack, server error frame, timeout
* Reconnection: unexpected close, refused connections, retry budget
* Cancellation: close() with a pending reconnect timer, stale timers
* Send / receive gating on the Open state
"""
import asyncio

import pytest

from relaychat.client.backoff import BackoffPolicy
from relaychat.client.session_socket import ConnectionState, SessionSocket
from relaychat.errors import AuthRejected, NotConnected, TransportError

from fakes import (
    FakeTokenProvider,
    FakeTransportFactory,
    RecordingBackoff,
    make_messages,
    settle,
)

SESSION = "room-1"


class Harness:
    def __init__(self, backoff=None, tokens=None, max_attempts=5, auth_timeout=10.0):
        self.factory = FakeTransportFactory()
        self.tokens = tokens or FakeTokenProvider()
        self.backoff = backoff or RecordingBackoff()
        self.events = []
        self.states = []
        self.socket = SessionSocket(
            session_id=SESSION,
            url=f"ws://relay.test/ws/session/{SESSION}",
            transport_factory=self.factory,
            token_provider=self.tokens,
            backoff=self.backoff,
            max_reconnect_attempts=max_attempts,
            auth_timeout=auth_timeout,
            on_envelope=lambda socket, envelope: self.events.append(envelope),
            on_state_change=lambda socket, state, error: self.states.append(state),
        )

    async def open_and_ack(self):
        self.socket.open()
        await settle()
        self.factory.last.ack()
        await settle()
        assert self.socket.state is ConnectionState.OPEN

    async def shutdown(self):
        self.socket.close()
        await settle()


class TestHandshake:
    @pytest.mark.asyncio
    async def test_open_sends_credential_then_opens_on_ack(self):
        h = Harness()
        h.socket.open()
        assert h.socket.state is ConnectionState.CONNECTING

        await settle()
        assert h.socket.state is ConnectionState.AUTHENTICATING
        assert h.factory.last.sent_frames == [{"token": "token-1"}]

        h.factory.last.ack()
        await settle()
        assert h.socket.state is ConnectionState.OPEN
        assert h.states == [
            ConnectionState.CONNECTING,
            ConnectionState.AUTHENTICATING,
            ConnectionState.OPEN,
        ]
        await h.shutdown()

    @pytest.mark.asyncio
    async def test_negative_ack_fails_without_reconnect(self):
        h = Harness()
        h.socket.open()
        await settle()
        h.factory.last.ack(success=False, reason="invalid token")
        await settle()

        assert h.socket.state is ConnectionState.FAILED
        assert isinstance(h.socket.failure, AuthRejected)
        assert h.socket.failure.reason == "invalid token"
        assert not h.socket.reconnect_pending
        assert h.backoff.attempts == []
        assert len(h.factory.transports) == 1
        assert h.factory.last.closed

    @pytest.mark.asyncio
    async def test_error_frame_during_auth_is_terminal(self):
        h = Harness()
        h.socket.open()
        await settle()
        h.factory.last.push({"error": "invalid token"})
        await settle()

        assert h.socket.state is ConnectionState.FAILED
        assert isinstance(h.socket.failure, AuthRejected)
        assert h.backoff.attempts == []

    @pytest.mark.asyncio
    async def test_auth_timeout_leads_to_reconnecting(self):
        h = Harness(auth_timeout=0.01, max_attempts=1)
        h.socket.open()
        await asyncio.sleep(0.1)
        await settle()

        assert ConnectionState.RECONNECTING in h.states
        assert h.backoff.attempts[0] == 0
        assert h.factory.transports[0].closed
        assert h.socket.state is ConnectionState.FAILED

    @pytest.mark.asyncio
    async def test_token_rejection_is_terminal(self):
        h = Harness(tokens=FakeTokenProvider(error=AuthRejected("unknown user")))
        h.socket.open()
        await settle()

        assert h.socket.state is ConnectionState.FAILED
        assert h.factory.urls == []
        assert h.backoff.attempts == []

    @pytest.mark.asyncio
    async def test_token_service_outage_is_retried(self):
        h = Harness(tokens=FakeTokenProvider(error=TransportError("503")), max_attempts=2)
        h.socket.open()
        await settle(50)

        assert h.socket.state is ConnectionState.FAILED
        assert isinstance(h.socket.failure, TransportError)
        assert len(h.tokens.calls) == 3
        assert h.backoff.attempts == [0, 1]

    @pytest.mark.asyncio
    async def test_open_from_failed_requests_fresh_token(self):
        h = Harness()
        h.socket.open()
        await settle()
        h.factory.last.ack(success=False)
        await settle()
        assert h.socket.state is ConnectionState.FAILED

        h.socket.open()
        await settle()
        assert h.socket.failure is None
        assert len(h.tokens.calls) == 2
        assert h.factory.last.sent_frames == [{"token": "token-2"}]
        await h.shutdown()


class TestReconnect:
    @pytest.mark.asyncio
    async def test_unexpected_close_reconnects_with_token_snapshot(self):
        h = Harness()
        await h.open_and_ack()

        h.factory.last.drop()
        await settle()

        assert ConnectionState.RECONNECTING in h.states
        assert len(h.factory.transports) == 2
        assert h.socket.state is ConnectionState.AUTHENTICATING
        assert h.factory.last.sent_frames == [{"token": "token-1"}]
        assert h.tokens.calls == [SESSION]

        h.factory.last.ack()
        await settle()
        assert h.socket.state is ConnectionState.OPEN
        assert h.socket.reconnect_attempt == 0
        await h.shutdown()

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed_on_reconnect(self):
        h = Harness(tokens=FakeTokenProvider(ttl=-1))
        await h.open_and_ack()
        h.factory.last.drop(TransportError("reset by peer"))
        await settle()

        assert len(h.tokens.calls) == 2
        assert h.factory.last.sent_frames == [{"token": "token-2"}]
        await h.shutdown()

    @pytest.mark.asyncio
    async def test_retry_budget_exhausted_fails(self):
        h = Harness(max_attempts=3)
        h.factory.refuse = True
        h.socket.open()
        await settle(60)

        assert h.socket.state is ConnectionState.FAILED
        assert isinstance(h.socket.failure, TransportError)
        assert h.backoff.attempts == [0, 1, 2]
        assert len(h.factory.urls) == 4
        assert not h.socket.reconnect_pending

    @pytest.mark.asyncio
    async def test_attempt_counter_resets_after_open(self):
        h = Harness(max_attempts=2)
        await h.open_and_ack()
        for _ in range(3):
            h.factory.last.drop()
            await settle()
            h.factory.last.ack()
            await settle()
            assert h.socket.state is ConnectionState.OPEN
        assert h.backoff.attempts == [0, 0, 0]
        await h.shutdown()

    @pytest.mark.asyncio
    async def test_close_cancels_pending_reconnect(self):
        h = Harness(backoff=BackoffPolicy(base_ms=50, cap_ms=50))
        await h.open_and_ack()
        h.factory.last.drop()
        await settle()
        assert h.socket.state is ConnectionState.RECONNECTING
        assert h.socket.reconnect_pending

        h.socket.close()
        assert h.socket.state is ConnectionState.IDLE
        assert not h.socket.reconnect_pending

        await asyncio.sleep(0.1)
        assert len(h.factory.transports) == 1
        assert h.socket.state is ConnectionState.IDLE
        assert h.states[-2:] == [ConnectionState.CLOSING, ConnectionState.IDLE]

    @pytest.mark.asyncio
    async def test_stale_timer_does_not_touch_new_attempt(self):
        h = Harness(backoff=BackoffPolicy(base_ms=50, cap_ms=50))
        await h.open_and_ack()
        h.factory.last.drop()
        await settle()
        stale_generation = h.socket.generation

        h.socket.close()
        h.socket.open()
        await settle()
        transports_before = len(h.factory.transports)

        h.socket._on_reconnect_timer(stale_generation)
        await settle()
        assert len(h.factory.transports) == transports_before
        assert h.socket.state is ConnectionState.AUTHENTICATING
        await h.shutdown()


class TestTraffic:
    @pytest.mark.asyncio
    async def test_send_requires_open(self):
        h = Harness()
        with pytest.raises(NotConnected):
            await h.socket.send("hello")

        h.socket.open()
        await settle()
        with pytest.raises(NotConnected):
            await h.socket.send("too early")
        await h.shutdown()

    @pytest.mark.asyncio
    async def test_send_serializes_message_frame(self):
        h = Harness()
        await h.open_and_ack()
        await h.socket.send("hello")
        assert h.factory.last.sent_frames[-1] == {
            "type": "message",
            "contentType": "text",
            "content": "hello",
        }
        await h.shutdown()

    @pytest.mark.asyncio
    async def test_send_failure_starts_reconnect(self):
        h = Harness(backoff=BackoffPolicy(base_ms=50, cap_ms=50))
        await h.open_and_ack()
        h.factory.last.send_error = TransportError("broken pipe")

        with pytest.raises(TransportError):
            await h.socket.send("lost")
        assert h.socket.state is ConnectionState.RECONNECTING
        await h.shutdown()

    @pytest.mark.asyncio
    async def test_frames_before_open_are_dropped(self):
        h = Harness()
        early, late = make_messages(SESSION, 2)
        h.socket.open()
        await settle()
        h.factory.last.push_message(early)
        h.factory.last.ack()
        h.factory.last.push_message(late)
        await settle()

        assert [e.payload.id for e in h.events] == [late.id]
        await h.shutdown()

    @pytest.mark.asyncio
    async def test_malformed_frames_are_dropped(self):
        h = Harness()
        await h.open_and_ack()
        (message,) = make_messages(SESSION, 1)
        h.factory.last.push("not json at all")
        h.factory.last.push({"type": "mystery"})
        h.factory.last.push({"type": "message", "content": "missing fields"})
        h.factory.last.push_message(message)
        await settle()

        assert h.socket.state is ConnectionState.OPEN
        assert [e.payload.id for e in h.events] == [message.id]
        await h.shutdown()
