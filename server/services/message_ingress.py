"""Message Ingress: validates, persists and fans out new messages."""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from config.settings import settings
from core.broadcaster import FanoutBroadcaster
from core.errors import DuplicateSendError, InvalidArgumentError, NotFoundError, PersistenceError
from database.repositories.conversation_repo import ConversationRepository
from database.repositories.message_repo import MessageRepository
from database.repositories.user_repo import UserRepository
from integrations.supabase_storage.client import AttachmentStorage
from models.conversation import Conversation
from models.message import ContentType, Message, MessageDraft, ReplyRef
from services.attachment_classifier import classify_attachment

logger = logging.getLogger(__name__)


class MessageIngress:
    """Entry point for every new message, text or binary.

    Order of effects: validate → (upload) → insert → move conversation
    pointer → fan out. The pointer never references an unsaved message and a
    failed push never rolls back the insert.
    """

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        message_repo: MessageRepository,
        user_repo: UserRepository,
        storage: AttachmentStorage,
        broadcaster: FanoutBroadcaster,
    ):
        self.conversation_repo = conversation_repo
        self.message_repo = message_repo
        self.user_repo = user_repo
        self.storage = storage
        self.broadcaster = broadcaster

    async def submit_text(
        self,
        conversation_id: str,
        sender_id: str,
        content: Optional[str],
        reply_to_id: Optional[str] = None,
        client_ref: Optional[str] = None,
    ) -> Message:
        """Persist a text message and return the canonical record."""
        if content is None or not content.strip():
            raise InvalidArgumentError("Message content is required")
        if len(content) > settings.MAX_MESSAGE_LENGTH:
            raise InvalidArgumentError(
                f"Message exceeds {settings.MAX_MESSAGE_LENGTH} characters"
            )

        conversation = await self._conversation_for_sender(conversation_id, sender_id)
        existing = await self._previous_send(conversation, sender_id, client_ref)
        if existing is not None:
            return existing
        reply = await self._reply_ref(conversation, reply_to_id)

        draft = MessageDraft(
            conversation_id=conversation.id,
            sender_id=str(sender_id),
            content_type=ContentType.TEXT,
            content=content,
            reply_to=reply,
            expires_at=self._expiry_for(conversation),
            client_ref=client_ref,
        )
        return await self._persist_and_fan_out(conversation, draft)

    async def submit_binary(
        self,
        conversation_id: str,
        sender_id: str,
        data: Optional[bytes],
        mime_hint: Optional[str],
        filename: Optional[str] = None,
        duration_seconds: Optional[float] = None,
        reply_to_id: Optional[str] = None,
        client_ref: Optional[str] = None,
        caption: Optional[str] = None,
    ) -> Message:
        """Upload an image or voice note and persist the message pointing at it."""
        if not data:
            raise InvalidArgumentError("Attachment is required")
        if len(data) > settings.MAX_ATTACHMENT_BYTES:
            raise InvalidArgumentError(
                f"Attachment exceeds {settings.MAX_ATTACHMENT_BYTES} bytes"
            )
        if duration_seconds is not None and duration_seconds < 0:
            raise InvalidArgumentError("Duration must not be negative")

        kind = classify_attachment(mime_hint, filename)

        # Membership is checked before anything is written, including the blob
        conversation = await self._conversation_for_sender(conversation_id, sender_id)
        existing = await self._previous_send(conversation, sender_id, client_ref)
        if existing is not None:
            return existing
        reply = await self._reply_ref(conversation, reply_to_id)

        file_url = await self.storage.upload(
            conversation.id, data, mime_hint or "application/octet-stream", kind.extension
        )

        draft = MessageDraft(
            conversation_id=conversation.id,
            sender_id=str(sender_id),
            content_type=kind.content_type,
            content=caption or None,
            file_url=file_url,
            duration_seconds=duration_seconds if kind.content_type == ContentType.AUDIO else None,
            reply_to=reply,
            expires_at=self._expiry_for(conversation),
            client_ref=client_ref,
        )
        return await self._persist_and_fan_out(conversation, draft)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _conversation_for_sender(self, conversation_id: str, sender_id: str) -> Conversation:
        if not conversation_id:
            raise InvalidArgumentError("conversation_id is required")
        conversation = await self.conversation_repo.get_by_id(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        if not conversation.has_participant(sender_id):
            raise InvalidArgumentError("Sender is not a participant of this conversation")
        return conversation

    async def _previous_send(
        self, conversation: Conversation, sender_id: str, client_ref: Optional[str]
    ) -> Optional[Message]:
        """A retried send carries the same client_ref; hand back the stored copy."""
        if not client_ref:
            return None
        existing = await self.message_repo.find_by_client_ref(
            conversation.id, str(sender_id), client_ref
        )
        if existing is not None:
            logger.info(f"Duplicate send {client_ref} resolved to message {existing.id}")
        return existing

    async def _reply_ref(
        self, conversation: Conversation, reply_to_id: Optional[str]
    ) -> Optional[ReplyRef]:
        if not reply_to_id:
            return None
        original = await self.message_repo.get_by_id(reply_to_id)
        if original is None or original.conversation_id != conversation.id:
            raise InvalidArgumentError("Replied-to message not found in this conversation")
        sender_name = await self.user_repo.get_display_name(original.sender_id)
        return ReplyRef(
            message_id=original.id,
            snippet=original.snippet(settings.REPLY_SNIPPET_LENGTH),
            sender_name=sender_name,
        )

    @staticmethod
    def _expiry_for(conversation: Conversation) -> Optional[datetime]:
        if not conversation.is_ephemeral:
            return None
        return datetime.now(timezone.utc) + timedelta(hours=settings.EPHEMERAL_RETENTION_HOURS)

    async def _persist_and_fan_out(self, conversation: Conversation, draft: MessageDraft) -> Message:
        try:
            message = await self.message_repo.create_message(draft)
        except DuplicateSendError:
            # A concurrent retry of the same send won the insert and fans out itself
            existing = await self._previous_send(conversation, draft.sender_id, draft.client_ref)
            if existing is None:
                raise
            return existing
        logger.info(
            f"Message {message.id} ({message.content_type.value}) stored "
            f"in conversation {conversation.id}"
        )

        try:
            await self.conversation_repo.update_last_message(conversation.id, message.id)
        except PersistenceError as e:
            # The message is durable; the pointer is only a list-ordering cache
            logger.error(f"Pointer not moved to {message.id}: {e}")

        try:
            await self.broadcaster.broadcast(message, conversation.participant_ids)
        except Exception as e:
            logger.error(f"Fan-out of {message.id} failed: {e}", exc_info=True)

        return message
