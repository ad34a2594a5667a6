"""Periodic removal of messages from ephemeral conversations once they expire.

Postgres has no TTL index, so expiry is a background sweep. Reads already
filter out expired rows; the sweep only reclaims storage.
"""
import asyncio
import logging
from typing import Optional

from core.errors import PersistenceError
from database.repositories.message_repo import MessageRepository

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Runs ``delete_expired`` every ``interval_seconds`` until stopped."""

    def __init__(self, message_repo: MessageRepository, interval_seconds: int):
        self.message_repo = message_repo
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()

    async def sweep_once(self) -> int:
        try:
            deleted = await self.message_repo.delete_expired()
        except PersistenceError as e:
            logger.error(f"Expiry sweep failed: {e}")
            return 0
        if deleted:
            logger.info(f"Expired {deleted} message(s)")
        return deleted

    async def _run(self) -> None:
        while not self._stop.is_set():
            await self.sweep_once()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    def start(self) -> None:
        if self._task is None:
            self._stop.clear()
            self._task = asyncio.create_task(self._run())
            logger.info(f"Expiry sweeper started (every {self.interval_seconds}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop.set()
        await self._task
        self._task = None
        logger.info("Expiry sweeper stopped")
