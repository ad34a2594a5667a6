"""User repository for database operations.

Users are owned by the identity service; this service only reads profiles
and stamps ``last_seen`` when a connection closes.
"""
from asyncio import to_thread
from typing import Optional
from uuid import UUID
from datetime import datetime, timezone
from supabase import Client
import logging

logger = logging.getLogger(__name__)


class UserRepository:
    """Handle user database operations."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    async def get_by_id(self, user_id: UUID) -> Optional[dict]:
        """Get user by ID."""
        try:
            response = await to_thread(
                lambda: self.supabase.table("users")
                .select("id, full_name, avatar_url, is_active, last_seen")
                .eq("id", str(user_id))
                .execute()
            )
            return response.data[0] if response.data else None
        except Exception as e:
            logger.error(f"Error getting user by ID: {e}")
            return None

    async def get_display_name(self, user_id: str) -> Optional[str]:
        user = await self.get_by_id(user_id)
        return user.get("full_name") if user else None

    async def update_last_seen(self, user_id: str) -> None:
        """Stamp the user's last_seen with the current time."""
        try:
            await to_thread(
                lambda: self.supabase.table("users")
                .update({"last_seen": datetime.now(timezone.utc).isoformat()})
                .eq("id", str(user_id))
                .execute()
            )
        except Exception as e:
            logger.error(f"Error updating last_seen for {user_id}: {e}")
