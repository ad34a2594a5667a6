"""Realtime socket: one logical channel per identity.

Client frames: ``{"action": ..., "request_id": ..., "data": {...}}``.
Server frames: ``{"event": ..., "data": {...}}``; each request carrying a
``request_id`` is answered with an ``ack`` frame.
"""
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from typing import Any, Optional
import json
import logging

from api.middleware.auth_middleware import identity_from_token
from core.connection_registry import ConnectionRegistry
from core.dependencies import (
    get_conversation_service,
    get_ingress,
    get_receipt_tracker,
    get_registry,
)
from core.errors import ChatError, InvalidArgumentError, TransientDeliveryError
from core.receipt_tracker import ReceiptTracker
from models.events import (
    ClientRequest,
    ConversationRef,
    DeleteMessagesData,
    EventType,
    MarkReadData,
    RequestAction,
    SubmitTextData,
    TypingData,
    TypingNotice,
    ack,
    envelope,
)
from services.conversation_service import ConversationService
from services.message_ingress import MessageIngress

logger = logging.getLogger(__name__)
router = APIRouter()

# Close code for a failed handshake (application range 4000-4999)
WS_CLOSE_UNAUTHORIZED = 4401


class SocketSession:
    """Dispatches the requests of one authenticated connection."""

    def __init__(
        self,
        websocket: Any,
        user_id: str,
        registry: ConnectionRegistry,
        ingress: MessageIngress,
        tracker: ReceiptTracker,
        conversations: ConversationService,
    ):
        self.websocket = websocket
        self.user_id = user_id
        self.registry = registry
        self.ingress = ingress
        self.tracker = tracker
        self.conversations = conversations
        self._handlers = {
            RequestAction.SUBMIT_TEXT: self._submit_text,
            RequestAction.MARK_READ: self._mark_read,
            RequestAction.JOIN_ROOM: self._join_room,
            RequestAction.LEAVE_ROOM: self._leave_room,
            RequestAction.FETCH_HISTORY: self._fetch_history,
            RequestAction.DELETE_MESSAGES: self._delete_messages,
            RequestAction.TYPING: self._typing,
        }

    async def handle_frame(self, raw: str) -> None:
        try:
            request = ClientRequest.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Malformed frame from {self.user_id}: {e}")
            await self._reply(ack(None, error=InvalidArgumentError("Malformed request").to_dict()))
            return

        if request.action == RequestAction.PING:
            await self._reply(envelope(EventType.PONG, {"request_id": request.request_id}))
            return

        try:
            result = await self._handlers[request.action](request.data)
        except ValidationError as e:
            error = InvalidArgumentError(f"Invalid {request.action.value} payload: {e.errors()[0]['msg']}")
            await self._reply(ack(request.request_id, error=error.to_dict()))
            return
        except ChatError as e:
            logger.info(f"{request.action.value} from {self.user_id} rejected: {e.code} {e.message}")
            await self._reply(ack(request.request_id, error=e.to_dict()))
            return
        except Exception as e:
            logger.error(f"{request.action.value} from {self.user_id} failed: {e}", exc_info=True)
            await self._reply(
                ack(request.request_id, error=ChatError("Internal error").to_dict())
            )
            return

        if request.request_id is not None:
            await self._reply(ack(request.request_id, result=result))

    async def _reply(self, frame: dict) -> None:
        try:
            await self.registry.send_to_handle(self.websocket, frame)
        except TransientDeliveryError as e:
            logger.debug(f"Reply to {self.user_id} dropped: {e}")

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def _submit_text(self, data: dict):
        payload = SubmitTextData.model_validate(data)
        return await self.ingress.submit_text(
            payload.conversation_id,
            self.user_id,
            payload.content,
            reply_to_id=payload.reply_to_id,
            client_ref=payload.client_ref,
        )

    async def _mark_read(self, data: dict):
        payload = MarkReadData.model_validate(data)
        return await self.tracker.on_read(payload.message_id, payload.conversation_id, self.user_id)

    async def _join_room(self, data: dict):
        payload = ConversationRef.model_validate(data)
        await self.conversations.require_participant(payload.conversation_id, self.user_id)
        await self.registry.join_room(self.websocket, payload.conversation_id)
        return {"conversation_id": payload.conversation_id}

    async def _leave_room(self, data: dict):
        payload = ConversationRef.model_validate(data)
        await self.registry.leave_room(self.websocket, payload.conversation_id)
        return {"conversation_id": payload.conversation_id}

    async def _fetch_history(self, data: dict):
        payload = ConversationRef.model_validate(data)
        return await self.conversations.fetch_history(payload.conversation_id, self.user_id)

    async def _delete_messages(self, data: dict):
        payload = DeleteMessagesData.model_validate(data)
        return await self.conversations.delete_messages(payload.message_ids, self.user_id)

    async def _typing(self, data: dict):
        payload = TypingData.model_validate(data)
        notice = envelope(
            EventType.TYPING,
            TypingNotice(
                conversation_id=payload.conversation_id,
                user_id=self.user_id,
                is_typing=payload.is_typing,
            ),
        )
        for handle in self.registry.room_handles(payload.conversation_id):
            if handle is self.websocket:
                continue
            try:
                await self.registry.send_to_handle(handle, notice)
            except TransientDeliveryError:
                continue
        return None


@router.websocket("/ws")
async def realtime_socket(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
    registry: ConnectionRegistry = Depends(get_registry),
    ingress: MessageIngress = Depends(get_ingress),
    tracker: ReceiptTracker = Depends(get_receipt_tracker),
    conversations: ConversationService = Depends(get_conversation_service),
):
    """Authenticate, register the connection and serve requests until it closes."""
    user_id = identity_from_token(token)
    if not user_id:
        await websocket.close(code=WS_CLOSE_UNAUTHORIZED)
        return

    await websocket.accept()
    session = SocketSession(websocket, user_id, registry, ingress, tracker, conversations)
    await registry.register(user_id, websocket)

    try:
        while True:
            raw = await websocket.receive_text()
            await session.handle_frame(raw)
    except WebSocketDisconnect:
        pass
    finally:
        await registry.unregister(websocket)
