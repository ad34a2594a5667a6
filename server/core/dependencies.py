"""
Shared singleton dependencies for the application.

The connection registry, the broadcaster and the receipt tracker hold the
process-wide realtime state and are created once at startup. Services and
repositories are thin wrappers around the Supabase client and are built per
request from those singletons.
"""
import logging
from typing import Optional

from config.settings import settings
from database.client import get_supabase
from database.repositories.conversation_repo import ConversationRepository
from database.repositories.message_repo import MessageRepository
from database.repositories.user_repo import UserRepository
from integrations.supabase_storage.client import AttachmentStorage
from core.connection_registry import ConnectionRegistry
from core.broadcaster import FanoutBroadcaster
from core.receipt_tracker import ReceiptTracker
from services.conversation_service import ConversationService
from services.expiry_sweeper import ExpirySweeper
from services.message_ingress import MessageIngress

logger = logging.getLogger(__name__)

# Module-level singletons: initialized once via init_dependencies()
_registry: Optional[ConnectionRegistry] = None
_receipt_tracker: Optional[ReceiptTracker] = None
_broadcaster: Optional[FanoutBroadcaster] = None
_expiry_sweeper: Optional[ExpirySweeper] = None


def init_dependencies() -> None:
    """
    Initialize all shared singletons. Called once at application startup.
    """
    global _registry, _receipt_tracker, _broadcaster, _expiry_sweeper

    logger.info("Initializing shared dependencies...")

    supabase = get_supabase()
    user_repo = UserRepository(supabase)
    message_repo = MessageRepository(supabase)

    _registry = ConnectionRegistry(last_seen_recorder=user_repo.update_last_seen)
    _receipt_tracker = ReceiptTracker(
        _registry, message_repo, ConversationRepository(supabase)
    )
    _broadcaster = FanoutBroadcaster(_registry, _receipt_tracker)

    _expiry_sweeper = ExpirySweeper(message_repo, settings.EXPIRY_SWEEP_INTERVAL_SECONDS)
    _expiry_sweeper.start()

    logger.info("Dependencies initialized")


async def shutdown_dependencies() -> None:
    """Clean up resources on shutdown."""
    if _expiry_sweeper is not None:
        await _expiry_sweeper.stop()


def get_registry() -> ConnectionRegistry:
    if _registry is None:
        raise RuntimeError("Dependencies not initialized. Call init_dependencies() first.")
    return _registry


def get_broadcaster() -> FanoutBroadcaster:
    if _broadcaster is None:
        raise RuntimeError("Dependencies not initialized. Call init_dependencies() first.")
    return _broadcaster


def get_receipt_tracker() -> ReceiptTracker:
    if _receipt_tracker is None:
        raise RuntimeError("Dependencies not initialized. Call init_dependencies() first.")
    return _receipt_tracker


def get_ingress() -> MessageIngress:
    """
    Build a MessageIngress around the shared broadcaster.

    WARNING: repositories and services are created per-request and MUST
    remain stateless. Realtime state belongs in the registry only.
    """
    supabase = get_supabase()
    return MessageIngress(
        conversation_repo=ConversationRepository(supabase),
        message_repo=MessageRepository(supabase),
        user_repo=UserRepository(supabase),
        storage=AttachmentStorage(supabase),
        broadcaster=get_broadcaster(),
    )


def get_conversation_service() -> ConversationService:
    supabase = get_supabase()
    return ConversationService(
        conversation_repo=ConversationRepository(supabase),
        message_repo=MessageRepository(supabase),
        broadcaster=get_broadcaster(),
    )
