"""
Webhook Store
Durable audit log of every webhook delivery, recorded before processing starts
"""
import logging
from typing import List, Optional

from chatbridge.models.messaging import MessagingPlatform, WebhookEvent

logger = logging.getLogger(__name__)

# Keep stored error text bounded; joined per-event errors can grow with batch size
MAX_ERROR_LENGTH = 4000


class WebhookStore:
    """Records raw webhook payloads and their processing outcome"""

    def __init__(self, db):
        self.db = db

    async def record(self, platform: MessagingPlatform, event_type: str, raw_payload: str) -> WebhookEvent:
        """Persist the raw payload verbatim. Durable once this returns."""
        event_id = await self.db.insert_webhook_event(platform, event_type, raw_payload)
        logger.info(f"📥 Recorded {platform.value} webhook event {event_id} ({event_type})")
        return await self.db.get_webhook_event(event_id)

    async def get(self, event_id: int) -> Optional[WebhookEvent]:
        return await self.db.get_webhook_event(event_id)

    async def mark_processed(self, event_id: int) -> None:
        if await self.db.mark_webhook_event_processed(event_id):
            logger.info(f"✅ Webhook event {event_id} processed")

    async def mark_failed(self, event_id: int, error_message: str) -> None:
        if len(error_message) > MAX_ERROR_LENGTH:
            error_message = error_message[:MAX_ERROR_LENGTH - 3] + "..."
        if await self.db.mark_webhook_event_failed(event_id, error_message):
            logger.warning(f"⚠️ Webhook event {event_id} failed: {error_message}")

    async def link_account(self, event_id: int, account_id: int) -> None:
        await self.db.link_webhook_event_account(event_id, account_id)

    async def list_unprocessed(self, limit: int = 500, include_failed: bool = False) -> List[WebhookEvent]:
        """Events not yet processed, oldest first. Failed events only when include_failed."""
        return await self.db.list_webhook_events(
            processed=False,
            failed=None if include_failed else False,
            limit=limit,
            oldest_first=True,
        )

    async def list_events(
        self,
        processed: Optional[bool] = None,
        failed: Optional[bool] = None,
        platform: Optional[MessagingPlatform] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[WebhookEvent]:
        return await self.db.list_webhook_events(
            processed=processed, failed=failed, platform=platform, limit=limit, offset=offset
        )
