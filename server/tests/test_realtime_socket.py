"""Tests for the realtime socket: request dispatch, acks, handshake and presence."""
import json

import pytest
from unittest.mock import AsyncMock, MagicMock
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from api.routes import realtime
from api.routes.realtime import SocketSession, WS_CLOSE_UNAUTHORIZED
from core.connection_registry import ConnectionRegistry
from core.dependencies import (
    get_conversation_service,
    get_ingress,
    get_receipt_tracker,
    get_registry,
)
from core.errors import NotFoundError, PersistenceError
from utils.jwt_utils import generate_access_token


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def ingress(make_message):
    i = MagicMock()
    i.submit_text = AsyncMock(return_value=make_message(id="m1", client_ref="ref-1"))
    return i


@pytest.fixture
def tracker(make_message):
    t = MagicMock()
    t.on_read = AsyncMock(return_value=make_message(id="m1", read_by=["user-b"]))
    return t


@pytest.fixture
def conversations(make_conversation):
    c = MagicMock()
    c.require_participant = AsyncMock(return_value=make_conversation())
    c.fetch_history = AsyncMock(return_value=[])
    c.delete_messages = AsyncMock(return_value=[])
    return c


# ---------------------------------------------------------------------------
# SocketSession dispatch
# ---------------------------------------------------------------------------

class TestSocketSession:
    @pytest.fixture
    def socket(self, make_socket):
        return make_socket("a")

    @pytest.fixture
    def session(self, socket, registry, ingress, tracker, conversations):
        return SocketSession(socket, "user-a", registry, ingress, tracker, conversations)

    @staticmethod
    def _frame(action, data=None, request_id="r1"):
        return json.dumps({"action": action, "request_id": request_id, "data": data or {}})

    @pytest.mark.asyncio
    async def test_submit_text_acked_with_canonical_message(self, session, socket, ingress):
        await session.handle_frame(
            self._frame("submitText", {"conversation_id": "conv-1", "content": "Hello", "client_ref": "ref-1"})
        )

        ingress.submit_text.assert_awaited_once_with(
            "conv-1", "user-a", "Hello", reply_to_id=None, client_ref="ref-1"
        )
        reply = socket.sent[-1]
        assert reply["event"] == "ack"
        assert reply["data"]["request_id"] == "r1"
        assert reply["data"]["ok"] is True
        assert reply["data"]["result"]["id"] == "m1"
        assert reply["data"]["result"]["client_ref"] == "ref-1"

    @pytest.mark.asyncio
    async def test_service_error_becomes_failed_ack(self, session, socket, ingress):
        ingress.submit_text.side_effect = NotFoundError("Conversation conv-9 not found")
        await session.handle_frame(self._frame("submitText", {"conversation_id": "conv-9", "content": "x"}))

        data = socket.sent[-1]["data"]
        assert data["ok"] is False
        assert data["error"]["code"] == "E_NOT_FOUND"
        assert data["error"]["retryable"] is False

    @pytest.mark.asyncio
    async def test_persistence_error_is_retryable(self, session, socket, ingress):
        ingress.submit_text.side_effect = PersistenceError("Could not store message")
        await session.handle_frame(self._frame("submitText", {"conversation_id": "conv-1", "content": "x"}))
        assert socket.sent[-1]["data"]["error"] == {
            "code": "E_PERSISTENCE", "message": "Could not store message", "retryable": True,
        }

    @pytest.mark.asyncio
    async def test_unexpected_error_is_internal(self, session, socket, ingress):
        ingress.submit_text.side_effect = RuntimeError("boom")
        await session.handle_frame(self._frame("submitText", {"conversation_id": "conv-1", "content": "x"}))
        assert socket.sent[-1]["data"]["error"]["code"] == "E_INTERNAL"

    @pytest.mark.asyncio
    async def test_invalid_payload(self, session, socket, ingress):
        await session.handle_frame(self._frame("submitText", {"conversation_id": "conv-1"}))
        assert socket.sent[-1]["data"]["error"]["code"] == "E_INVALID_ARGUMENT"
        ingress.submit_text.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", ["not json", json.dumps({"action": "explode"})])
    async def test_malformed_frame(self, session, socket, raw):
        await session.handle_frame(raw)
        data = socket.sent[-1]["data"]
        assert data["request_id"] is None
        assert data["error"]["code"] == "E_INVALID_ARGUMENT"

    @pytest.mark.asyncio
    async def test_ping(self, session, socket):
        await session.handle_frame(self._frame("ping", request_id="p1"))
        assert socket.sent[-1] == {"event": "pong", "data": {"request_id": "p1"}}

    @pytest.mark.asyncio
    async def test_mark_read(self, session, socket, tracker):
        await session.handle_frame(self._frame("markRead", {"message_id": "m1", "conversation_id": "conv-1"}))
        tracker.on_read.assert_awaited_once_with("m1", "conv-1", "user-a")
        assert socket.sent[-1]["data"]["result"]["read_by"] == ["user-b"]

    @pytest.mark.asyncio
    async def test_request_without_id_gets_no_ack(self, session, socket):
        await session.handle_frame(self._frame("typing", {"conversation_id": "conv-1"}, request_id=None))
        assert socket.sent == []

    @pytest.mark.asyncio
    async def test_join_room_checks_membership(self, session, socket, registry, conversations):
        await registry.register("user-a", socket)
        await session.handle_frame(self._frame("joinConversationRoom", {"conversation_id": "conv-1"}))

        conversations.require_participant.assert_awaited_once_with("conv-1", "user-a")
        assert registry.room_handles("conv-1") == [socket]

    @pytest.mark.asyncio
    async def test_typing_relayed_to_room_except_sender(
        self, session, socket, registry, make_socket, ingress, tracker, conversations
    ):
        other = make_socket("b")
        await registry.register("user-a", socket)
        await registry.register("user-b", other)
        await registry.join_room(socket, "conv-1")
        await registry.join_room(other, "conv-1")

        await session.handle_frame(self._frame("typing", {"conversation_id": "conv-1", "is_typing": True}))

        notice = other.events("typing")[0]["data"]
        assert notice == {"conversation_id": "conv-1", "user_id": "user-a", "is_typing": True}
        assert not socket.events("typing")

    @pytest.mark.asyncio
    async def test_delete_messages(self, session, socket, conversations):
        await session.handle_frame(self._frame("deleteMessages", {"message_ids": ["m1", "m2"]}))
        conversations.delete_messages.assert_awaited_once_with(["m1", "m2"], "user-a")
        assert socket.sent[-1]["data"]["ok"] is True


# ---------------------------------------------------------------------------
# Endpoint (handshake, registration, presence)
# ---------------------------------------------------------------------------

@pytest.fixture
def client(registry, ingress, tracker, conversations):
    app = FastAPI()
    app.include_router(realtime.router)
    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_ingress] = lambda: ingress
    app.dependency_overrides[get_receipt_tracker] = lambda: tracker
    app.dependency_overrides[get_conversation_service] = lambda: conversations
    with TestClient(app) as c:
        yield c


class TestEndpoint:
    def test_invalid_token_rejected(self, client):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws?token=not-a-jwt"):
                pass
        assert exc.value.code == WS_CLOSE_UNAUTHORIZED

    def test_missing_token_rejected(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws"):
                pass

    def test_presence_follows_connections(self, client):
        token_a = generate_access_token("user-a")
        token_b = generate_access_token("user-b")

        with client.websocket_connect(f"/ws?token={token_a}") as ws_a:
            assert ws_a.receive_json() == {"event": "presence-snapshot", "data": {"user_ids": ["user-a"]}}

            with client.websocket_connect(f"/ws?token={token_b}") as ws_b:
                assert ws_b.receive_json()["data"]["user_ids"] == ["user-a", "user-b"]
                assert ws_a.receive_json()["data"]["user_ids"] == ["user-a", "user-b"]

            # B went away: A's latest snapshot is exactly {A}
            assert ws_a.receive_json()["data"]["user_ids"] == ["user-a"]

    def test_request_round_trip(self, client, ingress):
        token = generate_access_token("user-a")
        with client.websocket_connect(f"/ws?token={token}") as ws:
            ws.receive_json()  # presence
            ws.send_json({
                "action": "submitText",
                "request_id": "r7",
                "data": {"conversation_id": "conv-1", "content": "Hello"},
            })
            reply = ws.receive_json()

        assert reply["event"] == "ack"
        assert reply["data"]["request_id"] == "r7"
        assert reply["data"]["result"]["id"] == "m1"
        ingress.submit_text.assert_awaited_once()
