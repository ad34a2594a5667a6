"""API response schemas"""
from pydantic import BaseModel
from typing import Optional, List

from models.conversation import Conversation, ConversationSummary
from models.message import Message
from services.conversation_service import DeleteOutcome


class ConversationListResponse(BaseModel):
    conversations: List[ConversationSummary]


class ConversationResponse(BaseModel):
    conversation: Conversation
    created: bool = False


class MessageHistoryResponse(BaseModel):
    conversation_id: str
    messages: List[Message]


class MessageResponse(BaseModel):
    message: Message


class DeleteMessagesResponse(BaseModel):
    results: List[DeleteOutcome]


class ErrorResponse(BaseModel):
    error: str
    detail: Optional[str] = None
    retryable: bool = False
