"""
Expiry Sweeper

Background loop that periodically persists the expired status of chat
sessions past their 24h window. Runs on the application event loop and is
started/stopped from the FastAPI lifespan. The same sweep can also be
triggered externally through the internal jobs endpoint.
"""
import asyncio
import logging
from typing import Optional

from printchat.services.chat_service import ChatService

logger = logging.getLogger(__name__)


class ExpirySweeper:

    def __init__(self, chat_service: ChatService, interval_seconds: float = 300):
        self.chat_service = chat_service
        self.interval_seconds = interval_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            logger.warning("⚠️ Expiry sweeper already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._loop(), name="chat-expiry-sweeper")
        logger.info(f"🚀 Chat expiry sweeper started (every {self.interval_seconds}s)")

    async def stop(self) -> None:
        self._running = False
        if self._task is None:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("🛑 Chat expiry sweeper stopped")

    async def run_once(self) -> int:
        """One sweep; failures are logged and the loop keeps going"""
        try:
            expired = await self.chat_service.sweep_expired()
            return len(expired)
        except Exception as e:
            logger.error(f"❌ Chat expiry sweep failed: {e}")
            return 0

    async def _loop(self) -> None:
        while self._running:
            await self.run_once()
            await asyncio.sleep(self.interval_seconds)
