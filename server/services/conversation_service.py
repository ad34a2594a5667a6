"""Conversation operations: listing, creation, history fetch and message deletion."""
import logging
from typing import List, Optional

from pydantic import BaseModel

from core.broadcaster import FanoutBroadcaster
from core.errors import InvalidArgumentError, NotFoundError, PersistenceError
from database.repositories.conversation_repo import ConversationRepository
from database.repositories.message_repo import MessageRepository
from models.conversation import Conversation, ConversationSummary
from models.events import EventType, MessageDeleted
from models.message import Message

logger = logging.getLogger(__name__)


class DeleteOutcome(BaseModel):
    """Result of one id in a multi-delete request."""
    message_id: str
    status: str  # 'deleted' | 'not_found' | 'forbidden' | 'failed'
    detail: Optional[str] = None


class ConversationService:
    """Everything a client does with conversations besides sending messages."""

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        message_repo: MessageRepository,
        broadcaster: FanoutBroadcaster,
    ):
        self.conversation_repo = conversation_repo
        self.message_repo = message_repo
        self.broadcaster = broadcaster

    async def require_participant(self, conversation_id: str, user_id: str) -> Conversation:
        conversation = await self.conversation_repo.get_by_id(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        if not conversation.has_participant(user_id):
            raise InvalidArgumentError("Not a participant of this conversation")
        return conversation

    async def list_for_user(self, user_id: str) -> List[ConversationSummary]:
        """Conversations with their latest message, most recent first."""
        conversations = await self.conversation_repo.list_for_user(user_id)
        pointers = [c.last_message_id for c in conversations if c.last_message_id]
        latest = {m.id: m for m in await self.message_repo.get_many(pointers)}

        summaries = [
            ConversationSummary(conversation=c, last_message=latest.get(c.last_message_id))
            for c in conversations
        ]
        summaries.sort(
            key=lambda s: (
                s.last_message.created_at.timestamp() if s.last_message
                else (s.conversation.updated_at.timestamp() if s.conversation.updated_at else 0)
            ),
            reverse=True,
        )
        return summaries

    async def get_or_create_direct(
        self, user_id: str, recipient_id: str, is_ephemeral: bool = False
    ) -> tuple[Conversation, bool]:
        """Find the 1:1 conversation or create it. Returns (conversation, created)."""
        user_id, recipient_id = str(user_id), str(recipient_id)
        if not recipient_id:
            raise InvalidArgumentError("Recipient ID is required")
        if recipient_id == user_id:
            raise InvalidArgumentError("Cannot start a conversation with yourself")

        existing = await self.conversation_repo.find_direct(user_id, recipient_id)
        if existing is not None:
            return existing, False

        conversation = await self.conversation_repo.create(
            [user_id, recipient_id], is_group=False, is_ephemeral=is_ephemeral
        )
        logger.info(f"Direct conversation {conversation.id} created")
        await self.broadcaster.broadcast_event(
            EventType.CONVERSATION_CREATED, conversation, conversation.participant_ids
        )
        return conversation, True

    async def create_group(
        self,
        creator_id: str,
        name: str,
        participant_ids: List[str],
        group_icon: Optional[str] = None,
        is_ephemeral: bool = False,
    ) -> Conversation:
        """Create a group with the creator plus at least two other members."""
        others = [p for p in dict.fromkeys(str(p) for p in participant_ids) if p != str(creator_id)]
        if not name or not name.strip():
            raise InvalidArgumentError("Group name is required")
        if len(others) < 2:
            raise InvalidArgumentError("Group name and at least 2 participants are required")

        conversation = await self.conversation_repo.create(
            others + [str(creator_id)],
            is_group=True,
            group_name=name.strip(),
            group_icon=group_icon,
            is_ephemeral=is_ephemeral,
        )
        logger.info(f"Group conversation {conversation.id} created with {len(others) + 1} members")
        await self.broadcaster.broadcast_event(
            EventType.CONVERSATION_CREATED, conversation, conversation.participant_ids
        )
        return conversation

    async def fetch_history(self, conversation_id: str, user_id: str) -> List[Message]:
        """Durable message history, oldest first. The recovery path for missed events."""
        await self.require_participant(conversation_id, user_id)
        return await self.message_repo.list_by_conversation(conversation_id)

    async def delete_messages(self, message_ids: List[str], user_id: str) -> List[DeleteOutcome]:
        """Delete each id independently and report its own outcome.

        Only the sender may delete a message. Participants are told through a
        ``message-deleted`` event; the conversation pointer is moved back when
        its latest message goes away.
        """
        outcomes: List[DeleteOutcome] = []
        for message_id in dict.fromkeys(str(m) for m in message_ids):
            outcomes.append(await self._delete_one(message_id, str(user_id)))
        return outcomes

    async def _delete_one(self, message_id: str, user_id: str) -> DeleteOutcome:
        try:
            message = await self.message_repo.get_by_id(message_id)
            if message is None:
                return DeleteOutcome(message_id=message_id, status="not_found")
            if message.sender_id != user_id:
                return DeleteOutcome(
                    message_id=message_id,
                    status="forbidden",
                    detail="Only the sender can delete a message",
                )
            if not await self.message_repo.delete(message_id):
                return DeleteOutcome(message_id=message_id, status="not_found")
        except PersistenceError as e:
            return DeleteOutcome(message_id=message_id, status="failed", detail=str(e))

        logger.info(f"Message {message_id} deleted by {user_id}")
        await self._after_delete(message)
        return DeleteOutcome(message_id=message_id, status="deleted")

    async def _after_delete(self, message: Message) -> None:
        try:
            conversation = await self.conversation_repo.get_by_id(message.conversation_id)
            if conversation is None:
                return
            if conversation.last_message_id == message.id:
                remaining = await self.message_repo.list_by_conversation(
                    conversation.id, limit=1, newest_first=True
                )
                await self.conversation_repo.update_last_message(
                    conversation.id, remaining[0].id if remaining else None
                )
            await self.broadcaster.broadcast_event(
                EventType.MESSAGE_DELETED,
                MessageDeleted(message_id=message.id, conversation_id=message.conversation_id),
                conversation.participant_ids,
            )
        except PersistenceError as e:
            logger.error(f"Follow-up of deleting {message.id} failed: {e}")
