"""Delivery/Read Tracker: grows per-recipient acknowledgement sets and notifies senders."""
import asyncio
import logging
from typing import List, Optional

from core.connection_registry import ConnectionRegistry
from core.errors import InvalidArgumentError, NotFoundError, PersistenceError
from database.repositories.conversation_repo import ConversationRepository
from database.repositories.message_repo import MessageRepository
from models.events import DeliveryReceipt, EventType, ReadReceipt, envelope
from models.message import Message, ReceiptField

logger = logging.getLogger(__name__)


def message_status(message: Message) -> str:
    """UI tick state of a confirmed message: sent, delivered or read.

    Delivered and read are independent monotonic flags; read wins for display.
    """
    if message.is_read:
        return "read"
    if message.is_delivered:
        return "delivered"
    return "sent"


class ReceiptTracker:
    """Append-if-absent updates of ``delivered_to`` / ``read_by`` plus sender notification."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
    ):
        self.registry = registry
        self.message_repo = message_repo
        self.conversation_repo = conversation_repo

    async def on_delivered(
        self,
        message_id: str,
        conversation_id: str,
        sender_id: str,
        participant_ids: List[str],
    ) -> List[str]:
        """Mark the message delivered to every connected non-sender participant.

        Each append runs independently; the receipt for a recipient is pushed
        only once its append is durable. Returns recipients recorded.
        """
        sender_id = str(sender_id)
        recipients = [
            pid for pid in dict.fromkeys(str(p) for p in participant_ids)
            if pid != sender_id and self.registry.lookup(pid) is not None
        ]
        if not recipients:
            return []

        results = await asyncio.gather(
            *(
                self._record_delivery(message_id, conversation_id, sender_id, pid)
                for pid in recipients
            )
        )
        return [pid for pid, ok in zip(recipients, results) if ok]

    async def _record_delivery(
        self, message_id: str, conversation_id: str, sender_id: str, recipient_id: str
    ) -> bool:
        try:
            updated = await self.message_repo.append_to_set(
                message_id, ReceiptField.DELIVERED_TO, recipient_id
            )
        except PersistenceError as e:
            logger.warning(f"Delivery of {message_id} to {recipient_id} not recorded: {e}")
            return False
        if updated is None:
            # Deleted (or expired) between broadcast and append
            logger.info(f"Message {message_id} gone before delivery to {recipient_id}")
            return False

        receipt = DeliveryReceipt(
            message_id=str(message_id),
            conversation_id=str(conversation_id),
            recipient_id=recipient_id,
        )
        await self.registry.push(sender_id, envelope(EventType.DELIVERY_RECEIPT, receipt))
        return True

    async def on_read(
        self, message_id: str, conversation_id: str, reader_id: str
    ) -> Message:
        """Record that ``reader_id`` has seen the message and tell the sender."""
        reader_id = str(reader_id)
        message = await self.message_repo.get_by_id(message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")
        if message.conversation_id != str(conversation_id):
            raise InvalidArgumentError("Message does not belong to this conversation")

        participants = await self.conversation_repo.get_participants(conversation_id)
        if reader_id not in participants:
            raise InvalidArgumentError("Reader is not a participant of this conversation")

        if reader_id == message.sender_id:
            return message

        updated: Optional[Message] = await self.message_repo.append_to_set(
            message_id, ReceiptField.READ_BY, reader_id
        )
        if updated is None:
            raise NotFoundError(f"Message {message_id} not found")

        receipt = ReadReceipt(
            message_id=updated.id,
            conversation_id=updated.conversation_id,
            reader_id=reader_id,
        )
        await self.registry.push(updated.sender_id, envelope(EventType.READ_RECEIPT, receipt))
        return updated
