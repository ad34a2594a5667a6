"""Client Reconciliation Engine: optimistic message lists merged with server state.

Each conversation is an ordered list of entries in insertion order, temp and
canonical intermixed. A temp entry is replaced in place by its canonical
counterpart when the server echoes it back: by correlation token
(``client_ref``) when the server carries one, otherwise by the first
unreconciled temp entry with equal content. Canonical ids are unique within
a list; everything that arrives twice is merged, never appended twice.

All methods are synchronous and meant to run inside event-loop callbacks.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from chat_client.models import TEMP_PREFIX, ChatEntry, ContentType, LocalStatus

logger = logging.getLogger(__name__)

DEFAULT_PENDING_TIMEOUT_SECONDS = 30.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _union(current: List[str], incoming: Iterable[str]) -> List[str]:
    return list(dict.fromkeys([*current, *(str(i) for i in incoming)]))


class ReconciliationEngine:
    """Per-conversation message state for the signed-in identity."""

    def __init__(
        self,
        user_id: str,
        pending_timeout_seconds: float = DEFAULT_PENDING_TIMEOUT_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.user_id = str(user_id)
        self.pending_timeout = timedelta(seconds=pending_timeout_seconds)
        self._clock = clock or _utcnow
        self._conversations: Dict[str, List[ChatEntry]] = {}
        self._selected: Dict[str, None] = {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def messages(self, conversation_id: str) -> List[ChatEntry]:
        return list(self._conversations.get(str(conversation_id), []))

    def conversation_ids(self) -> List[str]:
        return list(self._conversations)

    def find(self, entry_id: str, conversation_id: Optional[str] = None) -> Optional[ChatEntry]:
        located = self._locate(entry_id, conversation_id)
        if located is None:
            return None
        conv, index = located
        return self._conversations[conv][index]

    def _locate(
        self, entry_id: str, conversation_id: Optional[str] = None
    ) -> Optional[Tuple[str, int]]:
        candidates = (
            [str(conversation_id)] if conversation_id is not None else list(self._conversations)
        )
        for conv in candidates:
            for index, entry in enumerate(self._conversations.get(conv, [])):
                if entry.id == entry_id:
                    return conv, index
        # Receipts may name a conversation we filed differently; fall back to a full scan
        if conversation_id is not None:
            return self._locate(entry_id)
        return None

    def tick_state(self, entry: ChatEntry) -> str:
        """sending | failed | sent | delivered | read."""
        if entry.status == LocalStatus.SENDING:
            return "sending"
        if entry.status == LocalStatus.FAILED:
            return "failed"
        if entry.read_by:
            return "read"
        if entry.delivered_to:
            return "delivered"
        return "sent"

    # ------------------------------------------------------------------
    # Optimistic sends
    # ------------------------------------------------------------------

    def add_local(
        self,
        conversation_id: str,
        content: str,
        reply_to: Optional[dict] = None,
        content_type: ContentType = ContentType.TEXT,
    ) -> ChatEntry:
        """Append a temp entry for instant feedback and return it."""
        entry = ChatEntry(
            id=f"{TEMP_PREFIX}{uuid4().hex}",
            conversation_id=str(conversation_id),
            sender_id=self.user_id,
            content_type=content_type,
            content=content,
            reply_to=reply_to,
            created_at=self._clock(),
            client_ref=uuid4().hex,
            status=LocalStatus.SENDING,
        )
        self._conversations.setdefault(entry.conversation_id, []).append(entry)
        return entry

    def mark_failed(self, temp_id: str) -> Optional[ChatEntry]:
        entry = self.find(temp_id)
        if entry is None or not entry.is_temp:
            return None
        entry.status = LocalStatus.FAILED
        return entry

    def expire_pending(self, now: Optional[datetime] = None) -> List[ChatEntry]:
        """Mark temp entries unconfirmed for longer than the timeout as failed."""
        now = now or self._clock()
        expired = []
        for entries in self._conversations.values():
            for entry in entries:
                if (
                    entry.status == LocalStatus.SENDING
                    and now - entry.created_at >= self.pending_timeout
                ):
                    entry.status = LocalStatus.FAILED
                    expired.append(entry)
        if expired:
            logger.info(f"{len(expired)} pending message(s) marked failed")
        return expired

    def retry(self, temp_id: str) -> ChatEntry:
        """Put a failed temp entry back to sending. Keeps its correlation token."""
        entry = self.find(temp_id)
        if entry is None or entry.status != LocalStatus.FAILED:
            raise ValueError(f"{temp_id} is not a failed local message")
        entry.status = LocalStatus.SENDING
        entry.created_at = self._clock()
        return entry

    # ------------------------------------------------------------------
    # Server state
    # ------------------------------------------------------------------

    def apply_message_added(self, data) -> Optional[ChatEntry]:
        """Merge one canonical message (socket event or direct ack).

        Returns the entry now in the list, or None when the message was
        already present (its receipt sets are still unioned).
        """
        incoming = data if isinstance(data, ChatEntry) else ChatEntry.from_server(data)
        entries = self._conversations.setdefault(incoming.conversation_id, [])

        for existing in entries:
            if existing.id == incoming.id:
                existing.delivered_to = _union(existing.delivered_to, incoming.delivered_to)
                existing.read_by = _union(existing.read_by, incoming.read_by)
                return None

        if incoming.sender_id == self.user_id:
            index = self._match_temp(entries, incoming)
            if index is not None:
                replaced = entries[index]
                entries[index] = incoming
                self._rename_selection(replaced.id, incoming.id)
                return incoming

        entries.append(incoming)
        return incoming

    @staticmethod
    def _match_temp(entries: List[ChatEntry], incoming: ChatEntry) -> Optional[int]:
        if incoming.client_ref:
            for index, entry in enumerate(entries):
                if entry.is_temp and entry.client_ref == incoming.client_ref:
                    return index
            return None
        # No token: first unreconciled temp with the same content wins
        for index, entry in enumerate(entries):
            if entry.is_temp and entry.same_payload(incoming):
                return index
        return None

    def apply_history(self, conversation_id: str, messages: Iterable[dict]) -> List[ChatEntry]:
        """Replace a conversation's canonical state with a history fetch.

        Receipt sets never shrink. Temp entries whose token shows up in the
        history are reconciled; the rest stay at the tail. Canonical entries
        newer than anything in the history (events that raced the fetch) are
        kept; with an empty history every local canonical entry counts as raced.
        """
        conversation_id = str(conversation_id)
        existing = self._conversations.get(conversation_id, [])
        local_canonical = {e.id: e for e in existing if not e.is_temp}

        canonical: Dict[str, ChatEntry] = {}
        for raw in messages:
            entry = raw if isinstance(raw, ChatEntry) else ChatEntry.from_server(raw)
            local = local_canonical.get(entry.id)
            if local is not None:
                entry.delivered_to = _union(local.delivered_to, entry.delivered_to)
                entry.read_by = _union(local.read_by, entry.read_by)
            canonical[entry.id] = entry
        ordered = sorted(canonical.values(), key=lambda e: e.created_at)

        newest = ordered[-1].created_at if ordered else None
        raced = [
            e for e in existing
            if not e.is_temp and e.id not in canonical
            and (newest is None or e.created_at > newest)
        ]

        confirmed_refs = {
            e.client_ref: e.id for e in ordered if e.client_ref and e.sender_id == self.user_id
        }
        pending = []
        for entry in existing:
            if not entry.is_temp:
                continue
            if entry.client_ref in confirmed_refs:
                self._rename_selection(entry.id, confirmed_refs[entry.client_ref])
            else:
                pending.append(entry)

        merged = ordered + raced + pending
        self._conversations[conversation_id] = merged
        kept = {e.id for e in merged}
        for entry_id in list(self._selected):
            if entry_id not in kept and self._locate(entry_id) is None:
                self._selected.pop(entry_id, None)
        return list(merged)

    def apply_message_update(self, data: dict) -> Optional[ChatEntry]:
        """Union the receipt sets of a message we already hold."""
        incoming = ChatEntry.from_server(data)
        entry = self.find(incoming.id, incoming.conversation_id)
        if entry is None:
            return None
        entry.delivered_to = _union(entry.delivered_to, incoming.delivered_to)
        entry.read_by = _union(entry.read_by, incoming.read_by)
        return entry

    def apply_delivery_receipt(self, data: dict) -> bool:
        return self._add_receipt(
            data["message_id"], data.get("conversation_id"), "delivered_to", data["recipient_id"]
        )

    def apply_read_receipt(self, data: dict) -> bool:
        return self._add_receipt(
            data["message_id"], data.get("conversation_id"), "read_by", data["reader_id"]
        )

    def _add_receipt(
        self, message_id: str, conversation_id: Optional[str], field: str, user_id: str
    ) -> bool:
        entry = self.find(str(message_id), conversation_id)
        if entry is None or entry.is_temp:
            return False
        user_id = str(user_id)
        if user_id == entry.sender_id:
            return False
        current = getattr(entry, field)
        if user_id in current:
            return False
        setattr(entry, field, current + [user_id])
        return True

    def apply_message_deleted(self, conversation_id: str, message_id: str) -> bool:
        return self.remove(message_id, conversation_id)

    def remove(self, entry_id: str, conversation_id: Optional[str] = None) -> bool:
        located = self._locate(entry_id, conversation_id)
        if located is None:
            return False
        conv, index = located
        del self._conversations[conv][index]
        self._selected.pop(entry_id, None)
        return True

    # ------------------------------------------------------------------
    # Multi-select
    # ------------------------------------------------------------------

    def toggle_selection(self, entry_id: str) -> bool:
        """Flip selection of an entry (temp or canonical). Returns the new state."""
        if entry_id in self._selected:
            del self._selected[entry_id]
            return False
        if self.find(entry_id) is None:
            return False
        self._selected[entry_id] = None
        return True

    def select(self, entry_ids: Iterable[str]) -> None:
        for entry_id in entry_ids:
            if entry_id not in self._selected and self.find(entry_id) is not None:
                self._selected[entry_id] = None

    def clear_selection(self) -> None:
        self._selected.clear()

    def selected_ids(self) -> List[str]:
        return list(self._selected)

    def selected_entries(self) -> List[ChatEntry]:
        return [e for e in (self.find(i) for i in self._selected) if e is not None]

    def take_selection_for_delete(self) -> List[str]:
        """Drop selected temp entries locally; return the canonical ids to delete remotely."""
        canonical_ids = []
        for entry in self.selected_entries():
            if entry.is_temp:
                self.remove(entry.id)
            else:
                canonical_ids.append(entry.id)
        self.clear_selection()
        return canonical_ids

    def _rename_selection(self, old_id: str, new_id: str) -> None:
        if old_id not in self._selected:
            return
        self._selected = {(new_id if k == old_id else k): None for k in self._selected}
