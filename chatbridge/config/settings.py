"""
Application Configuration
Centralized configuration management using environment variables
"""
import os
from typing import List, Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() == "true"


def _env_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


class Settings:
    """Application settings loaded from environment variables"""

    def __init__(self):
        # Facebook Messenger (Graph API)
        self.FACEBOOK_GRAPH_API_URL: str = os.getenv("FACEBOOK_GRAPH_API_URL", "https://graph.facebook.com")
        self.FACEBOOK_API_VERSION: str = os.getenv("FACEBOOK_API_VERSION", "v23.0")
        self.FACEBOOK_APP_ID: Optional[str] = os.getenv("FACEBOOK_APP_ID")
        self.FACEBOOK_APP_SECRET: Optional[str] = os.getenv("FACEBOOK_APP_SECRET")
        self.FACEBOOK_WEBHOOK_VERIFY_TOKEN: Optional[str] = os.getenv("FACEBOOK_WEBHOOK_VERIFY_TOKEN")

        # WhatsApp Business (Cloud API)
        self.WHATSAPP_API_URL: str = os.getenv("WHATSAPP_API_URL", "https://graph.facebook.com")
        self.WHATSAPP_API_VERSION: str = os.getenv("WHATSAPP_API_VERSION", "v23.0")
        self.WHATSAPP_APP_SECRET: Optional[str] = os.getenv("WHATSAPP_APP_SECRET")
        self.WHATSAPP_WEBHOOK_VERIFY_TOKEN: Optional[str] = os.getenv("WHATSAPP_WEBHOOK_VERIFY_TOKEN")

        # Webhook Configuration
        self.WEBHOOK_VERIFY_SIGNATURES: bool = _env_bool("WEBHOOK_VERIFY_SIGNATURES", "true")

        # Outbound rate limiting and retry
        self.RATE_LIMIT_REQUESTS_PER_MINUTE: int = int(os.getenv("RATE_LIMIT_REQUESTS_PER_MINUTE", "60"))
        self.RATE_LIMIT_MAX_WAIT_SECONDS: float = float(os.getenv("RATE_LIMIT_MAX_WAIT_SECONDS", "10"))
        self.MAX_RETRY_ATTEMPTS: int = int(os.getenv("MAX_RETRY_ATTEMPTS", "3"))
        self.RETRY_DELAY_SECONDS: float = float(os.getenv("RETRY_DELAY_SECONDS", "5"))
        self.RETRY_BACKOFF: str = os.getenv("RETRY_BACKOFF", "fixed").lower()  # fixed | exponential

        # Webhook processing pool
        self.PROCESSING_ASYNC_ENABLED: bool = _env_bool("PROCESSING_ASYNC_ENABLED", "true")
        self.PROCESSING_WORKERS: int = int(os.getenv("PROCESSING_WORKERS", "10"))
        self.PROCESSING_QUEUE_CAPACITY: int = int(os.getenv("PROCESSING_QUEUE_CAPACITY", "100"))
        self.PROCESSING_ENQUEUE_TIMEOUT_SECONDS: float = float(os.getenv("PROCESSING_ENQUEUE_TIMEOUT_SECONDS", "2"))
        self.REPLAY_ON_STARTUP: bool = _env_bool("REPLAY_ON_STARTUP", "true")
        self.REPLAY_BATCH_SIZE: int = int(os.getenv("REPLAY_BATCH_SIZE", "500"))

        # Customer profile enrichment
        self.PROFILE_REFETCH_HOURS: int = int(os.getenv("PROFILE_REFETCH_HOURS", "24"))

        # Real-time events (SSE / WebSocket)
        self.SSE_HEARTBEAT_SECONDS: float = float(os.getenv("SSE_HEARTBEAT_SECONDS", "30"))
        self.SUBSCRIBER_QUEUE_SIZE: int = int(os.getenv("SUBSCRIBER_QUEUE_SIZE", "100"))

        # Redis (shared locks across workers)
        self.REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
        self.REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
        self.REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))
        self.REDIS_PASSWORD: Optional[str] = os.getenv("REDIS_PASSWORD") or None
        self.REDIS_MAX_CONNECTIONS: int = int(os.getenv("REDIS_MAX_CONNECTIONS", "100"))
        self.LOCK_EXPIRE_SECONDS: float = float(os.getenv("LOCK_EXPIRE_SECONDS", "30"))
        self.LOCK_WAIT_SECONDS: float = float(os.getenv("LOCK_WAIT_SECONDS", "10"))
        self.LOCK_POLL_SECONDS: float = float(os.getenv("LOCK_POLL_SECONDS", "0.05"))

        # Database
        self.SQLITE_DB_PATH: str = os.getenv("SQLITE_DB_PATH", "./data/chatbridge.db")

        # JWT Configuration (staff authentication)
        self.JWT_SECRET_KEY: str = os.getenv("JWT_SECRET_KEY", "")
        self.JWT_AUDIENCE: str = os.getenv("JWT_AUDIENCE", "authenticated")

        # HTTP client
        self.HTTP_TIMEOUT_SECONDS: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))

        # CORS Configuration
        self.CORS_ORIGINS: List[str] = _env_list("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")

        # Server
        self.HOST: str = os.getenv("HOST", "0.0.0.0")
        self.PORT: int = int(os.getenv("PORT", "8000"))

    @property
    def facebook_base_url(self) -> str:
        """Versioned Graph API base URL for Messenger calls"""
        return f"{self.FACEBOOK_GRAPH_API_URL.rstrip('/')}/{self.FACEBOOK_API_VERSION}"

    @property
    def whatsapp_base_url(self) -> str:
        """Versioned Graph API base URL for WhatsApp Cloud calls"""
        return f"{self.WHATSAPP_API_URL.rstrip('/')}/{self.WHATSAPP_API_VERSION}"

    @property
    def is_auth_configured(self) -> bool:
        """Check if JWT authentication is configured"""
        return bool(self.JWT_SECRET_KEY)

    @property
    def is_facebook_configured(self) -> bool:
        """Check if the Facebook app secret is present"""
        return bool(self.FACEBOOK_APP_SECRET)

    @property
    def is_whatsapp_configured(self) -> bool:
        """Check if the WhatsApp app secret is present"""
        return bool(self.WHATSAPP_APP_SECRET)

    def app_secret_for(self, platform: str) -> Optional[str]:
        """Platform-wide app secret used when an account has none of its own"""
        if platform == "FACEBOOK":
            return self.FACEBOOK_APP_SECRET
        if platform == "WHATSAPP":
            return self.WHATSAPP_APP_SECRET
        return None

    def verify_token_for(self, platform: str) -> Optional[str]:
        """Platform-wide webhook verify token"""
        if platform == "FACEBOOK":
            return self.FACEBOOK_WEBHOOK_VERIFY_TOKEN
        if platform == "WHATSAPP":
            return self.WHATSAPP_WEBHOOK_VERIFY_TOKEN
        return None


settings = Settings()
