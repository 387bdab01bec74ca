"""
Chat runtime wiring.

Builds every process-scoped collaborator once and tears them down together.
The FastAPI lifespan owns the runtime and exposes it on ``app.state.chat``.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from printchat.config import Settings, settings as default_settings
from printchat.services.chat_gateway import ChatGateway
from printchat.services.chat_service import ChatService
from printchat.services.expiry_scheduler import ExpirySweeper
from printchat.services.lock_service import RedisSessionLockManager, SessionLockManager
from printchat.services.notification_service import ExpoPushProvider, NotificationDispatcher
from printchat.services.presence import PresenceRegistry
from printchat.services.websocket_service import ConnectionManager
from printchat.storage.base import ChatStore

logger = logging.getLogger(__name__)


@dataclass
class ChatRuntime:
    settings: Settings
    store: ChatStore
    locks: SessionLockManager
    presence: PresenceRegistry
    connections: ConnectionManager
    dispatcher: NotificationDispatcher
    chat_service: ChatService
    gateway: ChatGateway
    sweeper: ExpirySweeper

    async def start(self) -> None:
        if self.settings.CHAT_SWEEP_ENABLED:
            self.sweeper.start()

    async def shutdown(self) -> None:
        await self.sweeper.stop()
        await self.chat_service.wait_for_notifications()
        self.presence.clear()
        await self.locks.close()
        await self.store.close()
        logger.info("Chat runtime shut down")


def build_store(config: Settings) -> ChatStore:
    backend = config.CHAT_STORE_BACKEND
    if backend == "memory":
        from printchat.storage.memory import InMemoryChatStore
        logger.warning("Using in-memory chat store; data is lost on restart")
        return InMemoryChatStore()
    if backend == "supabase":
        from printchat.storage.supabase_store import SupabaseChatStore
        return SupabaseChatStore()
    raise ValueError(f"Unknown CHAT_STORE_BACKEND: {backend}")


def build_locks(config: Settings) -> SessionLockManager:
    if config.REDIS_LOCKS_ENABLED:
        logger.info(f"Using Redis session locks at {config.REDIS_HOST}:{config.REDIS_PORT}")
        return RedisSessionLockManager(
            host=config.REDIS_HOST,
            port=config.REDIS_PORT,
            db=config.REDIS_DB,
            password=config.REDIS_PASSWORD,
            expire=config.CHAT_LOCK_TIMEOUT_SECONDS,
            wait_time=config.CHAT_LOCK_WAIT_SECONDS,
        )
    return SessionLockManager()


def build_runtime(
    config: Optional[Settings] = None,
    store: Optional[ChatStore] = None,
    locks: Optional[SessionLockManager] = None,
    push_provider: Optional[ExpoPushProvider] = None,
    clock=None,
) -> ChatRuntime:
    config = config or default_settings
    store = store or build_store(config)
    locks = locks or build_locks(config)

    presence = PresenceRegistry()
    connections = ConnectionManager()

    if push_provider is None and config.PUSH_NOTIFICATIONS_ENABLED:
        push_provider = ExpoPushProvider(config.EXPO_PUSH_URL, timeout=config.PUSH_TIMEOUT_SECONDS)
    dispatcher = NotificationDispatcher(
        store, presence, push_provider, enabled=config.PUSH_NOTIFICATIONS_ENABLED
    )

    chat_service = ChatService(
        store,
        locks=locks,
        broadcaster=connections,
        dispatcher=dispatcher,
        session_ttl_hours=config.CHAT_SESSION_TTL_HOURS,
        max_message_length=config.CHAT_MAX_MESSAGE_LENGTH,
        default_page_size=config.CHAT_HISTORY_PAGE_SIZE,
        max_page_size=config.CHAT_HISTORY_MAX_PAGE_SIZE,
        statistics_window_days=config.CHAT_STATISTICS_WINDOW_DAYS,
        clock=clock,
    )
    gateway = ChatGateway(chat_service, connections, presence, store, jwt_secret=config.JWT_SECRET or None)
    sweeper = ExpirySweeper(chat_service, interval_seconds=config.CHAT_SWEEP_INTERVAL_SECONDS)

    return ChatRuntime(
        settings=config,
        store=store,
        locks=locks,
        presence=presence,
        connections=connections,
        dispatcher=dispatcher,
        chat_service=chat_service,
        gateway=gateway,
        sweeper=sweeper,
    )
