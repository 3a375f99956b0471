"""
Service Container
Builds the pipeline's services around one database and one settings object
"""
import asyncio
import logging
from typing import Dict, List, Optional

from chatbridge.config.settings import Settings
from chatbridge.database import Database
from chatbridge.middleware.webhook_auth import SignatureVerifier
from chatbridge.models.messaging import MessagingPlatform
from chatbridge.services.account_audience import AccountAudience, UserDirectory
from chatbridge.services.account_service import AccountService
from chatbridge.services.conversation_service import ConversationService
from chatbridge.services.customer_service import CustomerService
from chatbridge.services.event_broadcaster import EventBroadcaster
from chatbridge.services.event_processor import EventProcessor
from chatbridge.services.facebook_service import FacebookService
from chatbridge.services.messaging_event_service import MessagingEventService
from chatbridge.services.notification_service import NotificationService
from chatbridge.services.outbound_gateway import OutboundGateway
from chatbridge.services.processing_queue import ProcessingQueue
from chatbridge.services.profile_service import ProfileEnrichmentService
from chatbridge.services.rate_limiter import RateLimiterRegistry
from chatbridge.services.redis_service import RedisLockManager, create_redis
from chatbridge.services.stats_service import MessagingStatsService
from chatbridge.services.webhook_ingestion import WebhookIngestionService
from chatbridge.services.webhook_store import WebhookStore
from chatbridge.services.whatsapp_service import WhatsAppService

logger = logging.getLogger(__name__)


def default_clients(settings: Settings) -> Dict[MessagingPlatform, object]:
    return {
        MessagingPlatform.FACEBOOK: FacebookService(settings.facebook_base_url, timeout=settings.HTTP_TIMEOUT_SECONDS),
        MessagingPlatform.WHATSAPP: WhatsAppService(settings.whatsapp_base_url, timeout=settings.HTTP_TIMEOUT_SECONDS),
    }


class MessagingServices:
    """All pipeline services, wired together. One instance per application."""

    def __init__(
        self,
        settings: Settings,
        db: Database,
        clients: Optional[Dict[MessagingPlatform, object]] = None,
        user_directory: Optional[UserDirectory] = None,
        redis_client=None,
    ):
        self.settings = settings
        self.db = db
        self.clients = clients if clients is not None else default_clients(settings)
        self._owns_redis = redis_client is None
        self.redis = redis_client if redis_client is not None else create_redis(settings)
        self.locks = RedisLockManager(
            self.redis,
            expire=settings.LOCK_EXPIRE_SECONDS,
            wait_time=settings.LOCK_WAIT_SECONDS,
            poll_interval=settings.LOCK_POLL_SECONDS,
        )

        self.audience = AccountAudience(user_directory)
        self.broadcaster = EventBroadcaster(max_queue_size=settings.SUBSCRIBER_QUEUE_SIZE)
        self.events = MessagingEventService(self.broadcaster, self.audience)
        self.store = WebhookStore(db)
        self.verifier = SignatureVerifier(settings, db)
        self.notifications = NotificationService(
            db, self.audience, self.events, self.locks, clients=self.clients
        )
        self.profiles = ProfileEnrichmentService(
            db, self.clients, self.locks, refetch_hours=settings.PROFILE_REFETCH_HOURS
        )
        self.processor = EventProcessor(
            db, self.store, self.events, self.notifications, self.profiles, self.locks
        )
        self.queue: Optional[ProcessingQueue] = None
        if settings.PROCESSING_ASYNC_ENABLED:
            self.queue = ProcessingQueue(
                self.processor.process,
                workers=settings.PROCESSING_WORKERS,
                capacity=settings.PROCESSING_QUEUE_CAPACITY,
                enqueue_timeout=settings.PROCESSING_ENQUEUE_TIMEOUT_SECONDS,
            )
        self.ingestion = WebhookIngestionService(self.verifier, self.store, self.processor, self.queue)
        self.rate_limiter = RateLimiterRegistry(
            settings.RATE_LIMIT_REQUESTS_PER_MINUTE, settings.RATE_LIMIT_MAX_WAIT_SECONDS
        )
        self.gateway = OutboundGateway(
            db,
            self.clients,
            self.rate_limiter,
            self.events,
            self.locks,
            max_retry_attempts=settings.MAX_RETRY_ATTEMPTS,
            retry_delay_seconds=settings.RETRY_DELAY_SECONDS,
            backoff=settings.RETRY_BACKOFF,
        )
        self.accounts = AccountService(db, self.audience, self.events, clients=self.clients)
        self.conversations = ConversationService(db, self.accounts, self.notifications, self.events)
        self.customers = CustomerService(db, self.accounts, self.profiles)
        self.stats = MessagingStatsService(db, self.accounts)
        self._background: List[asyncio.Task] = []

    async def start(self) -> None:
        """Start workers, replay unfinished deliveries and the heartbeat loop"""
        if self.queue is not None:
            await self.queue.start()
        if self.settings.REPLAY_ON_STARTUP:
            await self.ingestion.replay_pending(limit=self.settings.REPLAY_BATCH_SIZE)
        if self.settings.SSE_HEARTBEAT_SECONDS > 0:
            self._background.append(
                asyncio.create_task(self.broadcaster.run_heartbeat(self.settings.SSE_HEARTBEAT_SECONDS))
            )
        logger.info("✅ Messaging services started")

    async def stop(self) -> None:
        for task in self._background:
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        self._background = []
        if self.queue is not None:
            await self.queue.stop(drain=True)
        await self.profiles.drain()
        await self.notifications.drain()
        self.broadcaster.close_all()
        if self._owns_redis:
            await self.redis.aclose()
        logger.info("🛑 Messaging services stopped")
