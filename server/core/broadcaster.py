"""Fan-out Broadcaster: pushes persisted messages to every connected participant."""
import logging
from typing import Any, List, Optional

from core.connection_registry import ConnectionRegistry
from core.receipt_tracker import ReceiptTracker
from models.events import EventType, envelope
from models.message import Message

logger = logging.getLogger(__name__)


class FanoutBroadcaster:
    """Best-effort delivery of change events; offline participants are skipped.

    Missed events are recovered by the client through a history fetch, so
    nothing is queued or retried here.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        receipt_tracker: Optional[ReceiptTracker] = None,
    ):
        self.registry = registry
        self.receipt_tracker = receipt_tracker

    async def broadcast(self, message: Message, participant_ids: List[str]) -> List[str]:
        """Push ``message-added`` and ``conversation-updated`` to each participant.

        The sender is included: its echo drives client reconciliation.
        Returns the non-sender participants that received the message.
        """
        added = envelope(EventType.MESSAGE_ADDED, message)
        updated = envelope(EventType.CONVERSATION_UPDATED, message)

        reached: List[str] = []
        for participant_id in dict.fromkeys(str(p) for p in participant_ids):
            if not await self.registry.push(participant_id, added):
                continue
            await self.registry.push(participant_id, updated)
            if participant_id != message.sender_id:
                reached.append(participant_id)

        logger.info(
            f"Message {message.id} fanned out to {len(reached)} recipient(s) "
            f"in conversation {message.conversation_id}"
        )

        if self.receipt_tracker is not None and reached:
            await self.receipt_tracker.on_delivered(
                message.id, message.conversation_id, message.sender_id, reached
            )
        return reached

    async def broadcast_event(
        self, event: EventType, data: Any, participant_ids: List[str]
    ) -> List[str]:
        """Push an arbitrary event to each connected participant."""
        frame = envelope(event, data)
        delivered = []
        for participant_id in dict.fromkeys(str(p) for p in participant_ids):
            if await self.registry.push(participant_id, frame):
                delivered.append(participant_id)
        return delivered
