"""
Application configuration using pydantic-settings.

WHAT: Centralized config from environment variables
WHY: Type-safe, validated config with sensible defaults
HOW: Pydantic BaseSettings reads from .env and environment
"""

from pydantic_settings import BaseSettings
from pydantic import field_validator
from pathlib import Path


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # App metadata
    APP_NAME: str = "Marketplace Chat Sync"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # Chat microservice (REST)
    CHAT_API_BASE_URL: str = "http://localhost:8001"
    CHAT_API_TIMEOUT: float = 10.0  # seconds
    CHAT_MAX_RETRIES: int = 3
    CHAT_RETRY_DELAY: float = 1.0  # seconds, base for exponential backoff
    HISTORY_MAX_RETRIES: int = 2

    # Session collaborator (token + current user)
    CHAT_ACCESS_TOKEN: str = ""
    CHAT_USER_ID: str = ""

    # Push channel
    PUSH_ENABLED: bool = True
    CHAT_WS_BASE_URL: str = ""  # derived from CHAT_API_BASE_URL when blank
    PUSH_HEARTBEAT_INTERVAL: float = 20.0  # seconds

    # Transaction list polling
    TRANSACTIONS_POLL_INTERVAL: float = 30.0  # seconds
    TRANSACTIONS_STALE_AFTER: float = 10.0  # must stay below the poll interval
    TRANSACTIONS_MAX_RETRIES: int = 3

    # Unread counters
    UNREAD_REFRESH_INTERVAL: float = 30.0  # fallback poll when push is quiet
    UNREAD_DEDUP_WINDOW: int = 1000  # recent message ids remembered per process

    # CORS - comma-separated string
    CORS_ORIGINS: str = "http://localhost:3000"

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS_ORIGINS from comma-separated string or list."""
        if isinstance(v, list):
            return ",".join(v)
        return v

    def get_cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    def get_ws_base_url(self) -> str:
        """WebSocket base URL, derived from the REST URL unless set explicitly."""
        if self.CHAT_WS_BASE_URL:
            return self.CHAT_WS_BASE_URL.rstrip("/")
        base = self.CHAT_API_BASE_URL.rstrip("/")
        if base.startswith("https://"):
            return "wss://" + base[len("https://"):]
        if base.startswith("http://"):
            return "ws://" + base[len("http://"):]
        return base

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "./data/logs/chatsync.log"

    # Streaming / SSE
    SSE_HEARTBEAT_INTERVAL: int = 15  # seconds between ping events
    SSE_MAX_BACKLOG: int = 16  # queued updates per stream reader before the oldest is dropped

    class Config:
        env_file = [
            str(Path(__file__).parent.parent.parent.parent / ".env"),  # repo root
            str(Path(__file__).parent.parent.parent / ".env"),  # backend/.env (fallback)
        ]
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


# Singleton instance
settings = Settings()
