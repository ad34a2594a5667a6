"""Transport to the chat server: one realtime socket plus the REST surface."""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import uuid4

import aiohttp
import httpx

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, Any], Awaitable[None]]
ReconnectCallback = Callable[[], Awaitable[None]]

# Queued after a successful reconnect so the resync runs in event order
_RECONNECTED = "__reconnected__"


class RequestFailed(Exception):
    """A socket request or REST call the server rejected (or never answered)."""

    def __init__(self, code: str, message: str, retryable: bool = False):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
        self.retryable = retryable


def _socket_url(server_url: str) -> str:
    base = server_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return f"{base}/ws"


class ChatConnection:
    """Socket requests are correlated with their ``ack`` by ``request_id``;
    every other server frame goes to ``on_event``.

    The reader task only routes frames: acks are resolved on the spot and
    events are queued for a separate consumer task, so an event handler may
    itself await a request. When the socket drops, the reader reconnects with
    exponential backoff and queues ``on_reconnect`` ahead of any new events.
    """

    def __init__(
        self,
        server_url: str,
        access_token: str,
        on_event: EventCallback,
        request_timeout: float = 10.0,
        http: Optional[httpx.AsyncClient] = None,
        on_reconnect: Optional[ReconnectCallback] = None,
        session: Optional[aiohttp.ClientSession] = None,
        initial_backoff: float = 0.5,
        max_backoff: float = 5.0,
        max_reconnect_attempts: Optional[int] = None,
    ):
        self.server_url = server_url.rstrip("/")
        self.access_token = access_token
        self.on_event = on_event
        self.on_reconnect = on_reconnect
        self.request_timeout = request_timeout
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.max_reconnect_attempts = max_reconnect_attempts
        self.http = http or httpx.AsyncClient(
            base_url=self.server_url,
            timeout=30.0,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        self._session = session
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._consumer: Optional[asyncio.Task] = None
        self._events: asyncio.Queue = asyncio.Queue()
        self._pending: Dict[str, asyncio.Future] = {}
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> None:
        self._closing = False
        await self._open()
        self._reader = asyncio.create_task(self._read_loop())
        self._consumer = asyncio.create_task(self._consume_events())
        logger.info(f"Connected to {self.server_url}")

    async def close(self) -> None:
        self._closing = True
        for task in (self._reader, self._consumer):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._reader = self._consumer = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._session is not None:
            await self._session.close()
            self._session = None
        self._fail_pending(RequestFailed("E_CLOSED", "Connection closed", retryable=True))
        await self.http.aclose()

    async def _open(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        self._ws = await self._session.ws_connect(
            _socket_url(self.server_url),
            params={"token": self.access_token},
            heartbeat=20,
        )

    # ------------------------------------------------------------------
    # Socket
    # ------------------------------------------------------------------

    async def request(self, action: str, data: Optional[dict] = None, timeout: Optional[float] = None) -> Any:
        """Send a request and wait for its ack. Returns the ack result."""
        if not self.connected:
            raise RequestFailed("E_CLOSED", "Not connected", retryable=True)

        request_id = uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._ws.send_json({"action": action, "request_id": request_id, "data": data or {}})
            return await asyncio.wait_for(future, timeout or self.request_timeout)
        except asyncio.TimeoutError:
            raise RequestFailed("E_TIMEOUT", f"No answer to {action}", retryable=True)
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, action: str, data: Optional[dict] = None) -> None:
        """Fire-and-forget request (no ack expected)."""
        if not self.connected:
            return
        await self._ws.send_json({"action": action, "data": data or {}})

    async def _read_loop(self) -> None:
        while True:
            await self._receive_until_closed()
            self._fail_pending(RequestFailed("E_CLOSED", "Connection lost", retryable=True))
            if self._closing or not await self._reconnect():
                return
            self._events.put_nowait({"event": _RECONNECTED})

    async def _receive_until_closed(self) -> None:
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    frame = json.loads(msg.data)
                except json.JSONDecodeError:
                    logger.warning("Dropping malformed frame")
                    continue
                self._route(frame)
            elif msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
                aiohttp.WSMsgType.ERROR,
            ):
                logger.warning(f"Socket closed by server ({msg.type.name})")
                return

    async def _reconnect(self) -> bool:
        """Reopen the socket with exponential backoff. False once attempts run out."""
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        backoff = self.initial_backoff
        attempt = 0
        while self.max_reconnect_attempts is None or attempt < self.max_reconnect_attempts:
            attempt += 1
            await asyncio.sleep(backoff)
            try:
                await self._open()
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
                logger.warning(f"Reconnect attempt {attempt} failed: {e}")
                backoff = min(backoff * 2, self.max_backoff)
                continue
            logger.info(f"Reconnected to {self.server_url} after {attempt} attempt(s)")
            return True
        logger.error(f"Giving up on {self.server_url} after {attempt} reconnect attempt(s)")
        return False

    def _route(self, frame: dict) -> None:
        if frame.get("event") == "ack":
            self._resolve(frame.get("data") or {})
        else:
            self._events.put_nowait(frame)

    async def _consume_events(self) -> None:
        while True:
            frame = await self._events.get()
            if frame.get("event") == _RECONNECTED:
                await self._resync()
            else:
                await self.dispatch(frame)

    async def _resync(self) -> None:
        if self.on_reconnect is None:
            return
        try:
            await self.on_reconnect()
        except Exception as e:
            logger.error(f"Resync after reconnect failed: {e}", exc_info=True)

    async def dispatch(self, frame: dict) -> None:
        """Route one server frame: acks resolve requests, the rest are events."""
        event = frame.get("event")
        data = frame.get("data")
        if event == "ack":
            self._resolve(data or {})
            return
        if event is None:
            return
        try:
            await self.on_event(event, data)
        except Exception as e:
            logger.error(f"Handling {event} failed: {e}", exc_info=True)

    def _resolve(self, payload: dict) -> None:
        future = self._pending.get(payload.get("request_id"))
        if future is None or future.done():
            return
        if payload.get("ok"):
            future.set_result(payload.get("result"))
        else:
            error = payload.get("error") or {}
            future.set_exception(
                RequestFailed(
                    error.get("code", "E_INTERNAL"),
                    error.get("message", "Request failed"),
                    retryable=bool(error.get("retryable")),
                )
            )

    def _fail_pending(self, error: RequestFailed) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    # ------------------------------------------------------------------
    # REST
    # ------------------------------------------------------------------

    async def _call(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = await self.http.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise RequestFailed("E_TRANSPORT", str(e), retryable=True)
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            raise RequestFailed(
                body.get("error", f"HTTP_{response.status_code}"),
                body.get("detail") or response.text,
                retryable=bool(body.get("retryable")),
            )
        return response.json()

    async def list_conversations(self) -> list:
        body = await self._call("GET", "/conversations")
        return body["conversations"]

    async def open_direct(self, recipient_id: str, is_ephemeral: bool = False) -> dict:
        body = await self._call(
            "POST", "/conversations", json={"recipient_id": recipient_id, "is_ephemeral": is_ephemeral}
        )
        return body["conversation"]

    async def create_group(self, name: str, participant_ids: list, is_ephemeral: bool = False) -> dict:
        body = await self._call(
            "POST",
            "/conversations/group",
            json={"name": name, "participant_ids": participant_ids, "is_ephemeral": is_ephemeral},
        )
        return body["conversation"]

    async def upload_attachment(
        self,
        conversation_id: str,
        data: bytes,
        filename: str,
        mime_type: str,
        duration_seconds: Optional[float] = None,
        reply_to_id: Optional[str] = None,
        client_ref: Optional[str] = None,
        caption: Optional[str] = None,
    ) -> dict:
        form = {
            key: str(value)
            for key, value in {
                "duration_seconds": duration_seconds,
                "reply_to_id": reply_to_id,
                "client_ref": client_ref,
                "caption": caption,
            }.items()
            if value is not None
        }
        body = await self._call(
            "POST",
            f"/conversations/{conversation_id}/attachments",
            files={"file": (filename, data, mime_type)},
            data=form,
        )
        return body["message"]
