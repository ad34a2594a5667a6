"""Tests for ChatConnection: ack correlation, event routing and REST calls."""
import asyncio
import json
from types import SimpleNamespace

import aiohttp
import httpx
import pytest
from unittest.mock import AsyncMock

from chat_client.connection import ChatConnection, RequestFailed, _socket_url
from chat_client.session import ChatSession


def _connection(handler=None, on_event=None):
    transport = httpx.MockTransport(handler or (lambda request: httpx.Response(200, json={})))
    http = httpx.AsyncClient(transport=transport, base_url="http://chat.test")
    return ChatConnection("http://chat.test", "tok", on_event or AsyncMock(), http=http)


@pytest.mark.parametrize(
    "server_url, expected",
    [
        ("http://localhost:8000", "ws://localhost:8000/ws"),
        ("https://chat.example.com/", "wss://chat.example.com/ws"),
    ],
)
def test_socket_url(server_url, expected):
    assert _socket_url(server_url) == expected


class TestDispatch:
    @pytest.mark.asyncio
    async def test_ack_resolves_pending_request(self):
        conn = _connection()
        future = asyncio.get_running_loop().create_future()
        conn._pending["r1"] = future

        await conn.dispatch({"event": "ack", "data": {"request_id": "r1", "ok": True, "result": {"id": "m1"}}})

        assert future.result() == {"id": "m1"}

    @pytest.mark.asyncio
    async def test_failed_ack_raises_request_failed(self):
        conn = _connection()
        future = asyncio.get_running_loop().create_future()
        conn._pending["r1"] = future

        await conn.dispatch({
            "event": "ack",
            "data": {
                "request_id": "r1",
                "ok": False,
                "error": {"code": "E_PERSISTENCE", "message": "Could not store message", "retryable": True},
            },
        })

        with pytest.raises(RequestFailed) as exc:
            future.result()
        assert exc.value.code == "E_PERSISTENCE"
        assert exc.value.retryable

    @pytest.mark.asyncio
    async def test_unknown_ack_ignored(self):
        conn = _connection()
        await conn.dispatch({"event": "ack", "data": {"request_id": "stale", "ok": True}})

    @pytest.mark.asyncio
    async def test_events_go_to_callback(self):
        on_event = AsyncMock()
        conn = _connection(on_event=on_event)
        await conn.dispatch({"event": "presence-snapshot", "data": {"user_ids": ["user-b"]}})
        on_event.assert_awaited_once_with("presence-snapshot", {"user_ids": ["user-b"]})

    @pytest.mark.asyncio
    async def test_callback_errors_do_not_escape(self):
        conn = _connection(on_event=AsyncMock(side_effect=KeyError("id")))
        await conn.dispatch({"event": "message-added", "data": {}})

    @pytest.mark.asyncio
    async def test_request_while_disconnected(self):
        conn = _connection()
        with pytest.raises(RequestFailed) as exc:
            await conn.request("ping")
        assert exc.value.code == "E_CLOSED"

    @pytest.mark.asyncio
    async def test_close_fails_pending(self):
        conn = _connection()
        future = asyncio.get_running_loop().create_future()
        conn._pending["r1"] = future
        await conn.close()
        with pytest.raises(RequestFailed):
            future.result()


class TestRest:
    @pytest.mark.asyncio
    async def test_list_conversations_sends_bearer_token(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            return httpx.Response(200, json={"conversations": [{"conversation": {"id": "c1"}}]})

        conn = _connection(handler)
        conn.http.headers["Authorization"] = "Bearer tok"
        assert await conn.list_conversations() == [{"conversation": {"id": "c1"}}]
        assert seen["path"] == "/conversations"

    @pytest.mark.asyncio
    async def test_upload_is_multipart(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["content_type"] = request.headers["content-type"]
            seen["body"] = request.content
            return httpx.Response(201, json={"message": {"id": "m1"}})

        conn = _connection(handler)
        message = await conn.upload_attachment(
            "conv-1", b"\x89PNG", "cat.png", "image/png", client_ref="ref-1"
        )

        assert message == {"id": "m1"}
        assert seen["path"] == "/conversations/conv-1/attachments"
        assert seen["content_type"].startswith("multipart/form-data")
        assert b"ref-1" in seen["body"]
        assert b"duration_seconds" not in seen["body"]

    @pytest.mark.asyncio
    async def test_error_body_becomes_request_failed(self):
        def handler(request):
            return httpx.Response(
                400,
                content=json.dumps({"error": "E_INVALID_ARGUMENT", "detail": "Invalid file type", "retryable": False}),
                headers={"content-type": "application/json"},
            )

        conn = _connection(handler)
        with pytest.raises(RequestFailed) as exc:
            await conn.open_direct("user-b")
        assert exc.value.code == "E_INVALID_ARGUMENT"
        assert exc.value.message == "Invalid file type"
        assert not exc.value.retryable


# ---------------------------------------------------------------------------
# Socket loop: a fake aiohttp session hands out scripted sockets
# ---------------------------------------------------------------------------

class FakeSocket:
    """Answers every request with an ack at once; ``push`` and ``drop`` act as the server."""

    def __init__(self, answer=None):
        self.answer = answer or (lambda action, data: {})
        self.incoming = asyncio.Queue()
        self.sent = []
        self.closed = False

    def actions(self):
        return [frame["action"] for frame in self.sent]

    def push(self, event, data):
        frame = json.dumps({"event": event, "data": data})
        self.incoming.put_nowait(SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=frame))

    def drop(self):
        self.incoming.put_nowait(SimpleNamespace(type=aiohttp.WSMsgType.CLOSED, data=None))

    async def send_json(self, frame):
        if self.closed:
            raise ConnectionResetError("socket closed")
        self.sent.append(frame)
        if "request_id" in frame:
            result = self.answer(frame["action"], frame["data"])
            self.push("ack", {"request_id": frame["request_id"], "ok": True, "result": result})

    async def receive(self):
        msg = await self.incoming.get()
        if msg.type == aiohttp.WSMsgType.CLOSED:
            self.closed = True
        return msg

    async def close(self):
        self.closed = True


class FakeClientSession:
    def __init__(self, sockets):
        self.sockets = list(sockets)
        self.connects = 0

    async def ws_connect(self, url, **kwargs):
        self.connects += 1
        if not self.sockets:
            raise aiohttp.ClientConnectionError("connection refused")
        return self.sockets.pop(0)

    async def close(self):
        pass


async def _until(predicate, timeout=1.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout)


def _http(conversations=()):
    def handler(request):
        return httpx.Response(200, json={"conversations": list(conversations)})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://chat.test")


def _read_answer(messages):
    """Server behaviour for markRead / fetchHistory / room requests."""

    def answer(action, data):
        if action == "markRead":
            return {**messages[data["message_id"]], "read_by": ["user-a"]}
        if action == "fetchHistory":
            return [m for m in messages.values() if m["conversation_id"] == data["conversation_id"]]
        return {"conversation_id": data.get("conversation_id")}

    return answer


def _session_over(fake_session, http, **kwargs):
    session = ChatSession("user-a")
    session.connection = ChatConnection(
        "http://chat.test",
        "tok",
        on_event=session.handle_event,
        on_reconnect=session.resync,
        http=http,
        session=fake_session,
        **kwargs,
    )
    return session


class TestSocketLoop:
    @pytest.mark.asyncio
    async def test_event_handler_can_wait_for_its_own_ack(self, server_message):
        """Marking an incoming message read needs an ack the reader must still deliver."""
        incoming = server_message(id="m1", conversation_id="c1", sender_id="user-b")
        socket = FakeSocket(_read_answer({"m1": incoming}))
        session = _session_over(FakeClientSession([socket]), _http(), request_timeout=5.0)
        session.active_conversation_id = "c1"
        await session.connection.connect()

        socket.push("message-added", incoming)
        socket.push("presence-snapshot", {"user_ids": ["user-a", "user-b"]})

        await _until(lambda: session.online == {"user-a", "user-b"})
        assert socket.actions() == ["markRead"]
        assert session.engine.find("m1").read_by == ["user-a"]
        await session.close()

    @pytest.mark.asyncio
    async def test_events_keep_their_order(self, server_message):
        seen = []

        async def on_event(event, data):
            seen.append(event)

        socket = FakeSocket()
        conn = ChatConnection(
            "http://chat.test", "tok", on_event, http=_http(), session=FakeClientSession([socket])
        )
        await conn.connect()
        socket.push("message-added", server_message())
        socket.push("delivery-receipt", {"message_id": "m1", "conversation_id": "conv-1", "recipient_id": "user-b"})

        await _until(lambda: len(seen) == 2)
        assert seen == ["message-added", "delivery-receipt"]
        await conn.close()

    @pytest.mark.asyncio
    async def test_reconnect_then_resync(self, server_message):
        missed = server_message(id="m-missed", conversation_id="c1", sender_id="user-b")
        first = FakeSocket()
        second = FakeSocket(_read_answer({"m-missed": missed}))
        fake_session = FakeClientSession([first, second])
        session = _session_over(
            fake_session,
            _http([{"conversation": {"id": "c1", "participant_ids": ["user-a", "user-b"]}, "last_message": None}]),
            initial_backoff=0.01,
        )
        session.active_conversation_id = "c1"
        await session.connection.connect()

        first.drop()

        await _until(lambda: session.engine.find("m-missed") is not None)
        assert fake_session.connects == 2
        assert "c1" in session.conversations
        assert second.actions()[:2] == ["joinConversationRoom", "fetchHistory"]
        assert session.connection.connected
        await session.close()

    @pytest.mark.asyncio
    async def test_pending_request_fails_when_socket_drops(self):
        socket = FakeSocket(answer=lambda action, data: None)
        socket.send_json = AsyncMock()  # never acks
        conn = ChatConnection(
            "http://chat.test", "tok", AsyncMock(), http=_http(),
            session=FakeClientSession([socket]), max_reconnect_attempts=0,
        )
        await conn.connect()

        request = asyncio.create_task(conn.request("fetchHistory", {"conversation_id": "c1"}))
        await _until(lambda: conn._pending)
        socket.drop()

        with pytest.raises(RequestFailed) as exc:
            await request
        assert exc.value.code == "E_CLOSED"
        await conn.close()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        socket = FakeSocket()
        fake_session = FakeClientSession([socket])
        conn = ChatConnection(
            "http://chat.test", "tok", AsyncMock(), http=_http(),
            session=fake_session, initial_backoff=0.01, max_reconnect_attempts=2,
        )
        await conn.connect()

        socket.drop()

        await _until(lambda: conn._reader.done())
        assert fake_session.connects == 3
        assert not conn.connected
        with pytest.raises(RequestFailed) as exc:
            await conn.request("ping")
        assert exc.value.code == "E_CLOSED"
        await conn.close()
