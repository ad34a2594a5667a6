"""Connection Registry: identity ↔ active socket, presence and conversation rooms.

One active connection per identity. Registering a second handle for the same
identity replaces the first; the old handle stays open but stops receiving
events. Every state change re-broadcasts the presence snapshot.

Handles are any object exposing ``async send_json(dict)`` (a FastAPI
``WebSocket`` in production, a stub in tests).
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from core.errors import TransientDeliveryError
from models.events import EventType, PresenceSnapshot, envelope

logger = logging.getLogger(__name__)

LastSeenRecorder = Callable[[str], Awaitable[None]]


class ConnectionRegistry:
    """Concurrency-safe map between identities and transport handles."""

    def __init__(self, last_seen_recorder: Optional[LastSeenRecorder] = None):
        self._last_seen_recorder = last_seen_recorder
        self._by_identity: Dict[str, Any] = {}
        self._by_handle: Dict[int, str] = {}
        self._rooms: Dict[str, Set[int]] = {}
        self._handles: Dict[int, Any] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register(self, identity: str, handle: Any) -> Optional[Any]:
        """Bind ``identity`` to ``handle`` and broadcast presence.

        Returns the evicted handle, if the identity was already connected.
        """
        identity = str(identity)
        async with self._lock:
            previous = self._by_identity.get(identity)
            if previous is not None and previous is not handle:
                self._by_handle.pop(id(previous), None)
                self._handles.pop(id(previous), None)
                self._drop_from_rooms(id(previous))
            self._by_identity[identity] = handle
            self._by_handle[id(handle)] = identity
            self._handles[id(handle)] = handle

        if previous is not None and previous is not handle:
            logger.info(f"Identity {identity} reconnected; previous connection evicted")
        else:
            logger.info(f"Identity {identity} connected")

        await self.broadcast_presence()
        return previous if previous is not handle else None

    async def unregister(self, handle: Any) -> Optional[str]:
        """Remove ``handle``; stamp last seen and broadcast presence.

        Returns the identity that went offline, or None if the handle was
        unknown or had already been replaced by a newer connection.
        """
        async with self._lock:
            identity = self._by_handle.pop(id(handle), None)
            self._handles.pop(id(handle), None)
            self._drop_from_rooms(id(handle))
            if identity is None or self._by_identity.get(identity) is not handle:
                return None
            del self._by_identity[identity]

        logger.info(f"Identity {identity} disconnected")

        if self._last_seen_recorder is not None:
            try:
                await self._last_seen_recorder(identity)
            except Exception as e:
                logger.error(f"Error stamping last seen for {identity}: {e}")

        await self.broadcast_presence()
        return identity

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def lookup(self, identity: str) -> Optional[Any]:
        return self._by_identity.get(str(identity))

    def identity_of(self, handle: Any) -> Optional[str]:
        return self._by_handle.get(id(handle))

    def is_online(self, identity: str) -> bool:
        return self.lookup(identity) is not None

    def online_identities(self) -> List[str]:
        """Current presence set."""
        return sorted(self._by_identity)

    # ------------------------------------------------------------------
    # Rooms (typing indicators)
    # ------------------------------------------------------------------

    async def join_room(self, handle: Any, conversation_id: str) -> None:
        async with self._lock:
            if id(handle) not in self._handles:
                return
            self._rooms.setdefault(str(conversation_id), set()).add(id(handle))

    async def leave_room(self, handle: Any, conversation_id: str) -> None:
        async with self._lock:
            members = self._rooms.get(str(conversation_id))
            if not members:
                return
            members.discard(id(handle))
            if not members:
                del self._rooms[str(conversation_id)]

    def room_handles(self, conversation_id: str) -> List[Any]:
        return [
            self._handles[key]
            for key in self._rooms.get(str(conversation_id), set())
            if key in self._handles
        ]

    def _drop_from_rooms(self, key: int) -> None:
        for conversation_id in list(self._rooms):
            members = self._rooms[conversation_id]
            members.discard(key)
            if not members:
                del self._rooms[conversation_id]

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def deliver(self, identity: str, event: dict) -> None:
        """Send one frame to ``identity``. Raises TransientDeliveryError."""
        handle = self.lookup(identity)
        if handle is None:
            raise TransientDeliveryError(f"{identity} is offline")
        await self.send_to_handle(handle, event)

    async def send_to_handle(self, handle: Any, event: dict) -> None:
        try:
            await handle.send_json(event)
        except Exception as e:
            raise TransientDeliveryError(f"push failed: {e}") from e

    async def push(self, identity: str, event: dict) -> bool:
        """Best-effort send. Drops (and logs) the event when it cannot be delivered."""
        try:
            await self.deliver(identity, event)
            return True
        except TransientDeliveryError as e:
            logger.debug(f"Dropped {event.get('event')} for {identity}: {e}")
            return False

    async def broadcast_presence(self) -> None:
        """Push the full presence snapshot to every connection."""
        snapshot = envelope(
            EventType.PRESENCE_SNAPSHOT,
            PresenceSnapshot(user_ids=self.online_identities()),
        )
        for identity in self.online_identities():
            await self.push(identity, snapshot)
