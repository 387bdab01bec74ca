"""
Per-session mutual exclusion.

Sends, read-marks and completions on one session are serialised so counter
recomputation never interleaves. Within a process an asyncio.Lock per session
is enough; with REDIS_LOCKS_ENABLED a Redis lock is additionally held so
several processes sharing one store serialise too.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import redis.asyncio as redis
from redis import exceptions as redis_exceptions

from printchat.services.exceptions import ChatServiceError

logger = logging.getLogger(__name__)


class SessionLockManager:
    """Process-local locks keyed by chat session id"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, session_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._holders[session_id] = self._holders.get(session_id, 0) + 1
        try:
            async with lock:
                async with self._hold_shared(session_id):
                    yield
        finally:
            self._holders[session_id] -= 1
            if self._holders[session_id] == 0:
                # Nobody waiting; drop the lock so the map does not grow forever
                del self._holders[session_id]
                self._locks.pop(session_id, None)

    @asynccontextmanager
    async def _hold_shared(self, session_id: str) -> AsyncIterator[None]:
        yield

    def active_locks(self) -> int:
        return len(self._locks)

    async def close(self) -> None:
        return None


class RedisSessionLockManager(SessionLockManager):
    """Local locks plus a Redis lock shared by every process using the same store"""

    def __init__(
        self,
        host: str,
        port: int,
        db: int = 0,
        password: Optional[str] = None,
        expire: int = 10,
        wait_time: int = 5,
        client: Optional[redis.Redis] = None,
    ):
        super().__init__()
        self.expire = expire
        self.wait_time = wait_time
        if client is not None:
            self._client = client
        else:
            self._pool = redis.ConnectionPool(
                host=host,
                port=port,
                db=db,
                password=password,
                decode_responses=True,
                max_connections=100,
            )
            self._client = redis.Redis(connection_pool=self._pool)

    @asynccontextmanager
    async def _hold_shared(self, session_id: str) -> AsyncIterator[None]:
        lock = self._client.lock(
            f"lock:chat_session:{session_id}",
            timeout=self.expire,
            blocking_timeout=self.wait_time,
        )
        try:
            acquired = await lock.acquire()
        except redis_exceptions.RedisError as e:
            logger.error(f"Redis lock error for session {session_id}: {e}")
            raise ChatServiceError("Chat session is temporarily unavailable") from e

        if not acquired:
            logger.warning(f"Timed out waiting for lock on session {session_id}")
            raise ChatServiceError("Chat session is busy, try again")

        try:
            yield
        finally:
            try:
                await lock.release()
            except redis_exceptions.LockError:
                # Lock expired while held; the store's own row lock still protected the write
                logger.warning(f"Redis lock for session {session_id} expired before release")

    async def close(self) -> None:
        await self._client.aclose()
