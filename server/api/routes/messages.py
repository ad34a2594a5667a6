"""Message API routes: HTTP fallbacks for read receipts and deletion."""
from fastapi import APIRouter, Depends
import logging

from api.middleware.auth_middleware import get_current_user
from api.schemas.request_schemas import DeleteMessagesRequest, MarkReadRequest
from api.schemas.response_schemas import DeleteMessagesResponse, MessageResponse
from core.dependencies import get_conversation_service, get_receipt_tracker
from core.receipt_tracker import ReceiptTracker
from services.conversation_service import ConversationService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/delete", response_model=DeleteMessagesResponse)
async def delete_messages(
    request: DeleteMessagesRequest,
    current_user: dict = Depends(get_current_user),
    service: ConversationService = Depends(get_conversation_service),
):
    """Delete several messages. Each id reports its own outcome."""
    results = await service.delete_messages(request.message_ids, str(current_user["id"]))
    return DeleteMessagesResponse(results=results)


@router.post("/{message_id}/read", response_model=MessageResponse)
async def mark_read(
    message_id: str,
    request: MarkReadRequest,
    current_user: dict = Depends(get_current_user),
    tracker: ReceiptTracker = Depends(get_receipt_tracker),
):
    message = await tracker.on_read(message_id, request.conversation_id, str(current_user["id"]))
    return MessageResponse(message=message)
