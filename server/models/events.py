"""Realtime wire protocol: server events and client requests."""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Server → client event names."""
    MESSAGE_ADDED = "message-added"
    CONVERSATION_UPDATED = "conversation-updated"
    PRESENCE_SNAPSHOT = "presence-snapshot"
    DELIVERY_RECEIPT = "delivery-receipt"
    READ_RECEIPT = "read-receipt"
    MESSAGE_DELETED = "message-deleted"
    CONVERSATION_CREATED = "conversation-created"
    TYPING = "typing"
    ACK = "ack"
    PONG = "pong"


class RequestAction(str, Enum):
    """Client → server request names."""
    SUBMIT_TEXT = "submitText"
    MARK_READ = "markRead"
    JOIN_ROOM = "joinConversationRoom"
    LEAVE_ROOM = "leaveConversationRoom"
    FETCH_HISTORY = "fetchHistory"
    DELETE_MESSAGES = "deleteMessages"
    TYPING = "typing"
    PING = "ping"


class PresenceSnapshot(BaseModel):
    user_ids: List[str]


class DeliveryReceipt(BaseModel):
    message_id: str
    conversation_id: str
    recipient_id: str


class ReadReceipt(BaseModel):
    message_id: str
    conversation_id: str
    reader_id: str


class MessageDeleted(BaseModel):
    message_id: str
    conversation_id: str


class TypingNotice(BaseModel):
    conversation_id: str
    user_id: str
    is_typing: bool


class ClientRequest(BaseModel):
    """Envelope of every frame a client sends over the socket."""
    action: RequestAction
    request_id: Optional[str] = Field(None, max_length=128)
    data: Dict[str, Any] = {}


# Request payloads

class SubmitTextData(BaseModel):
    conversation_id: str
    content: str
    reply_to_id: Optional[str] = None
    client_ref: Optional[str] = Field(None, max_length=128)


class MarkReadData(BaseModel):
    message_id: str
    conversation_id: str


class ConversationRef(BaseModel):
    conversation_id: str


class DeleteMessagesData(BaseModel):
    message_ids: List[str] = Field(..., min_length=1)


class TypingData(BaseModel):
    conversation_id: str
    is_typing: bool = True


def envelope(event: EventType, data: Any) -> dict:
    """Build the JSON-safe frame for a server event."""
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    elif isinstance(data, list):
        data = [d.model_dump(mode="json") if isinstance(d, BaseModel) else d for d in data]
    return {"event": event.value, "data": data}


def ack(request_id: Optional[str], result: Any = None, error: Optional[dict] = None) -> dict:
    """Build the acknowledgement frame for a client request."""
    payload: Dict[str, Any] = {"request_id": request_id, "ok": error is None}
    if error is not None:
        payload["error"] = error
    else:
        if isinstance(result, BaseModel):
            result = result.model_dump(mode="json")
        elif isinstance(result, list):
            result = [r.model_dump(mode="json") if isinstance(r, BaseModel) else r for r in result]
        payload["result"] = result
    return {"event": EventType.ACK.value, "data": payload}
