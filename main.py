"""
ChatBridge API - Main Entry Point
Facebook Messenger and WhatsApp Business webhooks, staff inbox and live events
"""
from contextlib import asynccontextmanager
from typing import Dict, Optional
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatbridge import __version__
from chatbridge.config import Settings, settings as default_settings
from chatbridge.database import Database
from chatbridge.models.messaging import MessagingPlatform

# Import API routers
from chatbridge.api import accounts, conversations, customers, events, webhook
from chatbridge.services.account_audience import UserDirectory
from chatbridge.services.container import MessagingServices

# Initialize logger
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_app(
    app_settings: Optional[Settings] = None,
    clients: Optional[Dict[MessagingPlatform, object]] = None,
    user_directory: Optional[UserDirectory] = None,
    redis_client=None,
) -> FastAPI:
    """
    Build the application.

    Args:
        app_settings: Settings to use (defaults to the environment)
        clients: Platform clients by platform, replaced in tests
        user_directory: Resolves which users besides the owner see an account
        redis_client: Redis client for shared locks (defaults to one built from settings)
    """
    app_settings = app_settings or default_settings

    # Lifespan context manager for startup/shutdown
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifespan (startup/shutdown)"""
        logger.info("🚀 Starting ChatBridge API...")

        db = Database(app_settings.SQLITE_DB_PATH)
        await db.connect()

        services = MessagingServices(
            app_settings, db, clients=clients, user_directory=user_directory, redis_client=redis_client
        )
        app.state.settings = app_settings
        app.state.services = services
        await services.start()

        logger.info("Application startup complete")
        yield

        # Shutdown
        await services.stop()
        await db.close()
        logger.info("Application shutdown")

    app = FastAPI(
        title="ChatBridge API",
        description="Unified Facebook Messenger and WhatsApp Business conversations for staff inboxes",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = app_settings

    # CORS Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(webhook.router)  # Platform webhooks and audit (/webhooks/*)
    app.include_router(accounts.router)  # Connected accounts (/messaging/accounts/*)
    app.include_router(conversations.router)  # Inbox (/messaging/conversations/*, /messaging/messages/*)
    app.include_router(customers.router)  # Customer directory (/messaging/customers/*)
    app.include_router(events.router)  # Live events (/messaging/sse/*, /ws/messaging)

    @app.get("/health", tags=["health"])
    async def health():
        """Health check with queue depth and live connection counts"""
        services: Optional[MessagingServices] = getattr(app.state, "services", None)
        queue = services.queue if services else None
        return {
            "status": "healthy",
            "version": __version__,
            "processing": {
                "async": queue is not None,
                "queue_depth": queue.depth if queue else 0,
                "processed": queue.processed_count if queue else 0,
                "failed": queue.failed_count if queue else 0,
            },
            "connections": services.broadcaster.get_stats() if services else {},
            "platforms": {
                "facebook": app_settings.is_facebook_configured,
                "whatsapp": app_settings.is_whatsapp_configured,
            },
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host=default_settings.HOST,
        port=default_settings.PORT,
        ws_ping_interval=20.0,
        ws_ping_timeout=60.0,
    )
