"""Client session: wires server events and user actions into the reconciliation engine."""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from pydantic import TypeAdapter

from chat_client.connection import ChatConnection, RequestFailed
from chat_client.models import ChatEntry, ContentType
from chat_client.reconciliation import DEFAULT_PENDING_TIMEOUT_SECONDS, ReconciliationEngine

logger = logging.getLogger(__name__)

_DATETIME = TypeAdapter(datetime)
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _content_type_for(mime_type: str) -> ContentType:
    return ContentType.IMAGE if (mime_type or "").startswith("image/") else ContentType.AUDIO


class ChatSession:
    """State of one signed-in identity: conversations, presence, message lists."""

    def __init__(
        self,
        user_id: str,
        connection: Optional[Any] = None,
        pending_timeout_seconds: float = DEFAULT_PENDING_TIMEOUT_SECONDS,
    ):
        self.user_id = str(user_id)
        self.connection = connection
        self.engine = ReconciliationEngine(self.user_id, pending_timeout_seconds)
        self.online: Set[str] = set()
        self.conversations: Dict[str, dict] = {}
        self.typing: Dict[str, Set[str]] = {}
        self.active_conversation_id: Optional[str] = None
        # Attachment payloads kept for retry, keyed by temp id
        self._attachments: Dict[str, dict] = {}
        self._handlers = {
            "message-added": self._on_message_added,
            "conversation-updated": self._on_conversation_updated,
            "presence-snapshot": self._on_presence,
            "delivery-receipt": self._on_delivery_receipt,
            "read-receipt": self._on_read_receipt,
            "message-deleted": self._on_message_deleted,
            "conversation-created": self._on_conversation_created,
            "typing": self._on_typing,
        }

    @classmethod
    async def start(
        cls,
        server_url: str,
        access_token: str,
        user_id: str,
        pending_timeout_seconds: float = DEFAULT_PENDING_TIMEOUT_SECONDS,
    ) -> "ChatSession":
        """Connect, then load the conversation list."""
        session = cls(user_id, pending_timeout_seconds=pending_timeout_seconds)
        session.connection = ChatConnection(
            server_url,
            access_token,
            on_event=session.handle_event,
            on_reconnect=session.resync,
        )
        await session.connection.connect()
        await session.refresh_conversations()
        return session

    async def close(self) -> None:
        if self.connection is not None:
            await self.connection.close()

    async def resync(self) -> None:
        """Catch up after a reconnect: events missed while offline are not replayed."""
        await self.refresh_conversations()
        if self.active_conversation_id is not None:
            await self.open_conversation(self.active_conversation_id)

    # ------------------------------------------------------------------
    # Server events
    # ------------------------------------------------------------------

    async def handle_event(self, event: str, data: Any) -> None:
        handler = self._handlers.get(event)
        if handler is None:
            logger.debug(f"Ignoring event {event}")
            return
        await handler(data)

    async def _on_message_added(self, data: dict) -> None:
        entry = self.engine.apply_message_added(data)
        if entry is None:
            return
        if entry.sender_id != self.user_id and entry.conversation_id == self.active_conversation_id:
            await self._mark_read(entry)

    async def _on_conversation_updated(self, data: dict) -> None:
        conversation_id = str(data["conversation_id"])
        summary = self.conversations.setdefault(
            conversation_id, {"conversation": {"id": conversation_id}, "last_message": None}
        )
        current = summary.get("last_message")
        if current is None or (
            _timestamp(data.get("created_at")) >= _timestamp(current.get("created_at"))
        ):
            summary["last_message"] = data

    async def _on_presence(self, data: dict) -> None:
        self.online = {str(u) for u in data.get("user_ids", [])}

    async def _on_delivery_receipt(self, data: dict) -> None:
        self.engine.apply_delivery_receipt(data)

    async def _on_read_receipt(self, data: dict) -> None:
        self.engine.apply_read_receipt(data)

    async def _on_message_deleted(self, data: dict) -> None:
        self.engine.apply_message_deleted(data["conversation_id"], data["message_id"])

    async def _on_conversation_created(self, data: dict) -> None:
        conversation_id = str(data["id"])
        if conversation_id not in self.conversations:
            self.conversations[conversation_id] = {"conversation": data, "last_message": None}

    async def _on_typing(self, data: dict) -> None:
        typing = self.typing.setdefault(str(data["conversation_id"]), set())
        if data.get("is_typing"):
            typing.add(str(data["user_id"]))
        else:
            typing.discard(str(data["user_id"]))

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def refresh_conversations(self) -> None:
        summaries = await self.connection.list_conversations()
        self.conversations = {str(s["conversation"]["id"]): s for s in summaries}

    def ordered_conversations(self) -> List[dict]:
        """Summaries, most recent activity first."""
        def key(summary: dict) -> datetime:
            last = summary.get("last_message")
            if last:
                return _timestamp(last.get("created_at"))
            return _timestamp(summary["conversation"].get("updated_at"))

        return sorted(self.conversations.values(), key=key, reverse=True)

    def is_online(self, user_id: str) -> bool:
        return str(user_id) in self.online

    async def open_conversation(self, conversation_id: str) -> List[ChatEntry]:
        """Join the room, pull history and mark what others sent as read."""
        conversation_id = str(conversation_id)
        self.active_conversation_id = conversation_id
        await self.connection.request("joinConversationRoom", {"conversation_id": conversation_id})
        history = await self.connection.request("fetchHistory", {"conversation_id": conversation_id})
        self.engine.apply_history(conversation_id, history or [])

        for entry in self.engine.messages(conversation_id):
            if not entry.is_temp and entry.sender_id != self.user_id and self.user_id not in entry.read_by:
                await self._mark_read(entry)
        return self.engine.messages(conversation_id)

    async def close_conversation(self) -> None:
        if self.active_conversation_id is None:
            return
        conversation_id, self.active_conversation_id = self.active_conversation_id, None
        await self.connection.request("leaveConversationRoom", {"conversation_id": conversation_id})

    async def _mark_read(self, entry: ChatEntry) -> None:
        try:
            updated = await self.connection.request(
                "markRead", {"message_id": entry.id, "conversation_id": entry.conversation_id}
            )
        except RequestFailed as e:
            logger.warning(f"Marking {entry.id} read failed: {e}")
            return
        if updated:
            self.engine.apply_message_update(updated)

    async def set_typing(self, conversation_id: str, is_typing: bool = True) -> None:
        await self.connection.notify(
            "typing", {"conversation_id": str(conversation_id), "is_typing": is_typing}
        )

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_text(
        self, conversation_id: str, content: str, reply_to_id: Optional[str] = None
    ) -> ChatEntry:
        """Show the message immediately, then persist it.

        Returns the temp entry; it is replaced in place once the server
        confirms, or marked failed when the request is rejected.
        """
        if not content or not content.strip():
            raise ValueError("Message content is required")
        entry = self.engine.add_local(
            conversation_id, content, reply_to=self._local_reply(reply_to_id)
        )
        await self._submit_text(entry)
        return entry

    async def retry(self, temp_id: str) -> ChatEntry:
        entry = self.engine.retry(temp_id)
        if temp_id in self._attachments:
            await self._upload(entry, self._attachments[temp_id])
        else:
            await self._submit_text(entry)
        return entry

    async def send_attachment(
        self,
        conversation_id: str,
        data: bytes,
        filename: str,
        mime_type: str,
        duration_seconds: Optional[float] = None,
        caption: Optional[str] = None,
        reply_to_id: Optional[str] = None,
    ) -> ChatEntry:
        entry = self.engine.add_local(
            conversation_id,
            caption,
            reply_to=self._local_reply(reply_to_id),
            content_type=_content_type_for(mime_type),
        )
        payload = {
            "data": data,
            "filename": filename,
            "mime_type": mime_type,
            "duration_seconds": duration_seconds,
            "caption": caption,
        }
        self._attachments[entry.id] = payload
        await self._upload(entry, payload)
        return entry

    async def forward(self, message_ids: List[str], conversation_ids: List[str]) -> List[ChatEntry]:
        """Re-send existing messages as new text messages into other conversations."""
        sent = []
        for message_id in message_ids:
            entry = self.engine.find(message_id)
            if entry is None:
                continue
            content = entry.content or entry.file_url
            if not content:
                continue
            for conversation_id in conversation_ids:
                sent.append(await self.send_text(conversation_id, content))
        return sent

    async def delete_selected(self) -> List[dict]:
        """Delete the current selection. Returns the per-id outcomes."""
        message_ids = self.engine.take_selection_for_delete()
        if not message_ids:
            return []
        outcomes = await self.connection.request("deleteMessages", {"message_ids": message_ids})
        for outcome in outcomes or []:
            if outcome.get("status") in ("deleted", "not_found"):
                self.engine.remove(outcome["message_id"])
        return outcomes or []

    def check_pending(self, now: Optional[datetime] = None) -> List[ChatEntry]:
        return self.engine.expire_pending(now)

    async def watch_pending(self, interval_seconds: float = 1.0) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            self.check_pending()

    async def _submit_text(self, entry: ChatEntry) -> None:
        reply_to_id = entry.reply_to.get("message_id") if entry.reply_to else None
        try:
            message = await self.connection.request(
                "submitText",
                {
                    "conversation_id": entry.conversation_id,
                    "content": entry.content,
                    "reply_to_id": reply_to_id,
                    "client_ref": entry.client_ref,
                },
            )
        except RequestFailed as e:
            logger.warning(f"Sending {entry.id} failed: {e}")
            self.engine.mark_failed(entry.id)
            return
        self.engine.apply_message_added(message)

    async def _upload(self, entry: ChatEntry, payload: dict) -> None:
        reply_to_id = entry.reply_to.get("message_id") if entry.reply_to else None
        try:
            message = await self.connection.upload_attachment(
                entry.conversation_id,
                payload["data"],
                payload["filename"],
                payload["mime_type"],
                duration_seconds=payload["duration_seconds"],
                reply_to_id=reply_to_id,
                client_ref=entry.client_ref,
                caption=payload["caption"],
            )
        except RequestFailed as e:
            logger.warning(f"Uploading {entry.id} failed: {e}")
            self.engine.mark_failed(entry.id)
            return
        self._attachments.pop(entry.id, None)
        self.engine.apply_message_added(message)

    def _local_reply(self, reply_to_id: Optional[str]) -> Optional[dict]:
        if not reply_to_id:
            return None
        quoted = self.engine.find(reply_to_id)
        snippet = (quoted.content or quoted.content_type.value) if quoted else ""
        return {"message_id": reply_to_id, "snippet": snippet, "sender_name": None}


def _timestamp(value: Any) -> datetime:
    """Server timestamps arrive as ISO strings in more than one offset format."""
    if not value:
        return _EPOCH
    parsed = _DATETIME.validate_python(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
