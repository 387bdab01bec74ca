"""
Application Configuration
Centralized configuration management using environment variables
"""
import os
from typing import Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Application settings loaded from environment variables"""

    # Store backend: "supabase" for production, "memory" for local runs
    CHAT_STORE_BACKEND: str = os.getenv("CHAT_STORE_BACKEND", "supabase").lower()

    # Supabase Configuration
    SUPABASE_URL: str = os.getenv("SUPABASE_URL", "")
    SUPABASE_SERVICE_KEY: str = os.getenv("SUPABASE_SERVICE_KEY") or os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")

    # JWT Configuration (REST and WebSocket authentication)
    JWT_SECRET: str = os.getenv("JWT_SECRET", "")
    JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")

    # Chat session rules
    CHAT_SESSION_TTL_HOURS: int = int(os.getenv("CHAT_SESSION_TTL_HOURS", "24"))
    CHAT_MAX_MESSAGE_LENGTH: int = int(os.getenv("CHAT_MAX_MESSAGE_LENGTH", "2000"))
    CHAT_HISTORY_PAGE_SIZE: int = int(os.getenv("CHAT_HISTORY_PAGE_SIZE", "50"))
    CHAT_HISTORY_MAX_PAGE_SIZE: int = int(os.getenv("CHAT_HISTORY_MAX_PAGE_SIZE", "200"))
    CHAT_STATISTICS_WINDOW_DAYS: int = int(os.getenv("CHAT_STATISTICS_WINDOW_DAYS", "30"))

    # Expiry sweep
    CHAT_SWEEP_ENABLED: bool = _env_bool("CHAT_SWEEP_ENABLED", "true")
    CHAT_SWEEP_INTERVAL_SECONDS: int = int(os.getenv("CHAT_SWEEP_INTERVAL_SECONDS", "300"))

    # Redis Configuration (cross-process session locks)
    REDIS_LOCKS_ENABLED: bool = _env_bool("REDIS_LOCKS_ENABLED", "false")
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))
    REDIS_PASSWORD: Optional[str] = os.getenv("REDIS_PASSWORD") or None
    CHAT_LOCK_TIMEOUT_SECONDS: int = int(os.getenv("CHAT_LOCK_TIMEOUT_SECONDS", "10"))
    CHAT_LOCK_WAIT_SECONDS: int = int(os.getenv("CHAT_LOCK_WAIT_SECONDS", "5"))

    # Push notifications (Expo)
    PUSH_NOTIFICATIONS_ENABLED: bool = _env_bool("PUSH_NOTIFICATIONS_ENABLED", "true")
    EXPO_PUSH_URL: str = os.getenv("EXPO_PUSH_URL", "https://exp.host/--/api/v2/push/send")
    PUSH_TIMEOUT_SECONDS: float = float(os.getenv("PUSH_TIMEOUT_SECONDS", "10"))

    # Internal job endpoints (payment handler, job workflow, cron)
    JOBS_SECRET_KEY: str = os.getenv("JOBS_SECRET_KEY", "")

    # WebSocket Configuration
    WS_RECEIVE_TIMEOUT_SECONDS: float = float(os.getenv("WS_RECEIVE_TIMEOUT_SECONDS", "30"))

    # CORS Configuration
    CORS_ORIGINS = [
        "http://localhost:8080",
        "http://127.0.0.1:8080",
        "http://localhost:3000",
        "http://localhost:19006",  # Expo web
    ]

    @property
    def is_supabase_configured(self) -> bool:
        """Check if Supabase configuration is present"""
        return bool(self.SUPABASE_URL and self.SUPABASE_SERVICE_KEY)

    @property
    def is_jwt_configured(self) -> bool:
        """Check if JWT verification is possible"""
        return bool(self.JWT_SECRET)


# Global settings instance
settings = Settings()
