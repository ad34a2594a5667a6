"""Message repository for database operations."""
from asyncio import to_thread
from typing import Optional, List
from datetime import datetime, timezone
from postgrest.exceptions import APIError
from supabase import Client
import logging

from core.errors import DuplicateSendError, PersistenceError
from models.message import Message, MessageDraft, ReceiptField

logger = logging.getLogger(__name__)

# Postgres unique_violation
UNIQUE_VIOLATION = "23505"


class MessageRepository:
    """Handle message database operations."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    async def create_message(self, draft: MessageDraft) -> Message:
        """Insert a message; the store assigns id and created_at."""
        data = draft.to_row()
        try:
            response = await to_thread(
                lambda: self.supabase.table("messages").insert(data).execute()
            )
        except Exception as e:
            if isinstance(e, APIError) and e.code == UNIQUE_VIOLATION and draft.client_ref:
                raise DuplicateSendError(f"client_ref {draft.client_ref} already stored") from e
            logger.error(f"Error inserting message: {e}", exc_info=True)
            raise PersistenceError("Could not store message") from e
        if not response.data:
            raise PersistenceError("Message insert returned no row")
        return Message(**response.data[0])

    async def get_by_id(self, message_id: str) -> Optional[Message]:
        """Get a message by ID. Returns None if not found."""
        try:
            response = await to_thread(
                lambda: self.supabase.table("messages")
                .select("*")
                .eq("id", str(message_id))
                .execute()
            )
        except Exception as e:
            logger.error(f"Error getting message {message_id}: {e}")
            raise PersistenceError("Could not load message") from e
        return Message(**response.data[0]) if response.data else None

    async def find_by_client_ref(
        self, conversation_id: str, sender_id: str, client_ref: str
    ) -> Optional[Message]:
        """The message a client already sent under this correlation token, if any."""
        try:
            response = await to_thread(
                lambda: self.supabase.table("messages")
                .select("*")
                .eq("conversation_id", str(conversation_id))
                .eq("sender_id", str(sender_id))
                .eq("client_ref", client_ref)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.error(f"Error looking up client_ref {client_ref}: {e}")
            raise PersistenceError("Could not check for duplicate send") from e
        return Message(**response.data[0]) if response.data else None

    async def get_many(self, message_ids: List[str]) -> List[Message]:
        if not message_ids:
            return []
        try:
            response = await to_thread(
                lambda: self.supabase.table("messages")
                .select("*")
                .in_("id", [str(m) for m in message_ids])
                .execute()
            )
        except Exception as e:
            logger.error(f"Error getting messages: {e}")
            raise PersistenceError("Could not load messages") from e
        return [Message(**row) for row in (response.data or [])]

    async def list_by_conversation(
        self,
        conversation_id: str,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> List[Message]:
        """Messages of a conversation sorted by creation time, expired ones excluded.

        Raises on database errors so callers can distinguish 'no messages'
        from 'database is down'.
        """
        now = datetime.now(timezone.utc).isoformat()

        def _query():
            query = (
                self.supabase.table("messages")
                .select("*")
                .eq("conversation_id", str(conversation_id))
                .or_(f"expires_at.is.null,expires_at.gt.{now}")
                .order("created_at", desc=newest_first)
            )
            if limit:
                query = query.limit(limit)
            return query.execute()

        try:
            response = await to_thread(_query)
        except Exception as e:
            logger.error(f"Error getting messages for {conversation_id}: {e}")
            raise PersistenceError("Could not load message history") from e
        return [Message(**row) for row in (response.data or [])]

    async def append_to_set(
        self, message_id: str, field: ReceiptField, user_id: str
    ) -> Optional[Message]:
        """Atomically add ``user_id`` to a receipt set (append-if-absent).

        Returns the updated message, or None when the message does not exist.
        """
        params = {
            "p_message_id": str(message_id),
            "p_field": ReceiptField(field).value,
            "p_user_id": str(user_id),
        }
        try:
            response = await to_thread(
                lambda: self.supabase.rpc("append_message_receipt", params).execute()
            )
        except Exception as e:
            logger.error(f"Error appending {user_id} to {field} of {message_id}: {e}")
            raise PersistenceError("Could not record receipt") from e
        return Message(**response.data[0]) if response.data else None

    async def delete(self, message_id: str) -> bool:
        """Delete one message. Returns False when nothing was deleted."""
        try:
            response = await to_thread(
                lambda: self.supabase.table("messages")
                .delete()
                .eq("id", str(message_id))
                .execute()
            )
        except Exception as e:
            logger.error(f"Error deleting message {message_id}: {e}")
            raise PersistenceError("Could not delete message") from e
        return bool(response.data)

    async def delete_expired(self) -> int:
        """Delete messages whose expiry time has passed. Returns the count."""
        now = datetime.now(timezone.utc).isoformat()
        try:
            response = await to_thread(
                lambda: self.supabase.table("messages")
                .delete()
                .lt("expires_at", now)
                .execute()
            )
        except Exception as e:
            logger.error(f"Error deleting expired messages: {e}")
            raise PersistenceError("Could not delete expired messages") from e
        return len(response.data or [])
