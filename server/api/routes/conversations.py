"""Conversation API routes: list, create, history and attachment upload."""
from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from typing import Optional
import logging

from api.middleware.auth_middleware import get_current_user
from api.schemas.request_schemas import CreateConversationRequest, CreateGroupRequest
from api.schemas.response_schemas import (
    ConversationListResponse,
    ConversationResponse,
    MessageHistoryResponse,
    MessageResponse,
)
from config.settings import settings
from core.dependencies import get_conversation_service, get_ingress
from core.errors import InvalidArgumentError
from services.conversation_service import ConversationService
from services.message_ingress import MessageIngress

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("", response_model=ConversationListResponse)
async def list_conversations(
    current_user: dict = Depends(get_current_user),
    service: ConversationService = Depends(get_conversation_service),
):
    """All conversations of the current user, most recently active first."""
    summaries = await service.list_for_user(str(current_user["id"]))
    return ConversationListResponse(conversations=summaries)


@router.post("", response_model=ConversationResponse)
async def create_conversation(
    request: CreateConversationRequest,
    current_user: dict = Depends(get_current_user),
    service: ConversationService = Depends(get_conversation_service),
):
    """Find or create the 1:1 conversation with ``recipient_id``."""
    conversation, created = await service.get_or_create_direct(
        str(current_user["id"]), request.recipient_id, is_ephemeral=request.is_ephemeral
    )
    return ConversationResponse(conversation=conversation, created=created)


@router.post("/group", response_model=ConversationResponse, status_code=status.HTTP_201_CREATED)
async def create_group(
    request: CreateGroupRequest,
    current_user: dict = Depends(get_current_user),
    service: ConversationService = Depends(get_conversation_service),
):
    conversation = await service.create_group(
        str(current_user["id"]),
        request.name,
        request.participant_ids,
        group_icon=request.group_icon,
        is_ephemeral=request.is_ephemeral,
    )
    return ConversationResponse(conversation=conversation, created=True)


@router.get("/{conversation_id}/messages", response_model=MessageHistoryResponse)
async def get_messages(
    conversation_id: str,
    current_user: dict = Depends(get_current_user),
    service: ConversationService = Depends(get_conversation_service),
):
    """Full message history, oldest first, with stored receipt state."""
    messages = await service.fetch_history(conversation_id, str(current_user["id"]))
    return MessageHistoryResponse(conversation_id=conversation_id, messages=messages)


@router.post(
    "/{conversation_id}/attachments",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def upload_attachment(
    conversation_id: str,
    file: UploadFile = File(...),
    duration_seconds: Optional[float] = Form(None),
    reply_to_id: Optional[str] = Form(None),
    client_ref: Optional[str] = Form(None),
    caption: Optional[str] = Form(None),
    current_user: dict = Depends(get_current_user),
    ingress: MessageIngress = Depends(get_ingress),
):
    """Send an image or voice note. The message is also fanned out over sockets."""
    limit = settings.MAX_ATTACHMENT_BYTES
    if file.size is not None and file.size > limit:
        raise InvalidArgumentError(f"Attachment exceeds {limit} bytes")
    # One byte past the limit is enough for ingress to reject it
    data = await file.read(limit + 1)
    message = await ingress.submit_binary(
        conversation_id,
        str(current_user["id"]),
        data,
        file.content_type,
        filename=file.filename,
        duration_seconds=duration_seconds,
        reply_to_id=reply_to_id,
        client_ref=client_ref,
        caption=caption,
    )
    return MessageResponse(message=message)
