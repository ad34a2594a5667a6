"""Conversation repository for database operations."""
from asyncio import to_thread
from typing import Optional, List
from datetime import datetime, timezone
from supabase import Client
import logging

from core.errors import PersistenceError
from models.conversation import Conversation

logger = logging.getLogger(__name__)


class ConversationRepository:
    """Handle conversation database operations."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    async def get_by_id(self, conversation_id: str) -> Optional[Conversation]:
        """Get conversation by ID.

        Returns None if not found. Raises PersistenceError on database errors.
        """
        try:
            response = await to_thread(
                lambda: self.supabase.table("conversations")
                .select("*")
                .eq("id", str(conversation_id))
                .execute()
            )
        except Exception as e:
            logger.error(f"Error getting conversation {conversation_id}: {e}")
            raise PersistenceError("Could not load conversation") from e
        return Conversation(**response.data[0]) if response.data else None

    async def get_participants(self, conversation_id: str) -> List[str]:
        """Participant ids of a conversation (empty when it does not exist)."""
        conversation = await self.get_by_id(conversation_id)
        return conversation.participant_ids if conversation else []

    async def list_for_user(self, user_id: str) -> List[Conversation]:
        """All conversations the user participates in, most recently active first."""
        try:
            response = await to_thread(
                lambda: self.supabase.table("conversations")
                .select("*")
                .contains("participant_ids", [str(user_id)])
                .order("updated_at", desc=True)
                .execute()
            )
        except Exception as e:
            logger.error(f"Error listing conversations for {user_id}: {e}")
            raise PersistenceError("Could not list conversations") from e
        return [Conversation(**row) for row in (response.data or [])]

    async def find_direct(self, user_a: str, user_b: str) -> Optional[Conversation]:
        """Find the 1:1 conversation between two users, if any."""
        try:
            response = await to_thread(
                lambda: self.supabase.table("conversations")
                .select("*")
                .eq("is_group", False)
                .contains("participant_ids", [str(user_a), str(user_b)])
                .execute()
            )
        except Exception as e:
            logger.error(f"Error finding direct conversation: {e}")
            raise PersistenceError("Could not look up conversation") from e

        for row in response.data or []:
            conversation = Conversation(**row)
            if len(set(conversation.participant_ids)) == 2:
                return conversation
        return None

    async def create(
        self,
        participant_ids: List[str],
        is_group: bool = False,
        group_name: Optional[str] = None,
        group_icon: Optional[str] = None,
        is_ephemeral: bool = False,
    ) -> Conversation:
        """Create a conversation."""
        data = {
            "participant_ids": [str(p) for p in participant_ids],
            "is_group": is_group,
            "group_name": group_name,
            "group_icon": group_icon,
            "is_ephemeral": is_ephemeral,
        }
        try:
            response = await to_thread(
                lambda: self.supabase.table("conversations").insert(data).execute()
            )
        except Exception as e:
            logger.error(f"Error creating conversation: {e}", exc_info=True)
            raise PersistenceError("Could not create conversation") from e
        if not response.data:
            raise PersistenceError("Conversation insert returned no row")
        return Conversation(**response.data[0])

    async def update_last_message(
        self, conversation_id: str, message_id: Optional[str]
    ) -> None:
        """Move the latest-message pointer and bump updated_at."""
        data = {
            "last_message_id": str(message_id) if message_id else None,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await to_thread(
                lambda: self.supabase.table("conversations")
                .update(data)
                .eq("id", str(conversation_id))
                .execute()
            )
        except Exception as e:
            logger.error(f"Error updating pointer of conversation {conversation_id}: {e}")
            raise PersistenceError("Could not update conversation") from e
