"""
Profile Enrichment Service
Fills in customer names and pictures from the platform in the background.
Never blocks or fails message ingestion.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Dict, Optional, Set

from chatbridge.models.messaging import MessagingAccount, MessagingCustomer, MessagingPlatform
from chatbridge.services.redis_service import RedisLockManager
from chatbridge.utils.time import utc_now

logger = logging.getLogger(__name__)


class ProfileEnrichmentService:
    def __init__(self, db, clients: Dict[MessagingPlatform, object], locks: RedisLockManager,
                 refetch_hours: int = 24):
        self.db = db
        self.clients = clients
        self.locks = locks
        self.refetch_after = timedelta(hours=refetch_hours)
        self._tasks: Set[asyncio.Task] = set()

    async def maybe_refresh(self, customer: MessagingCustomer, account: MessagingAccount,
                            force: bool = False) -> bool:
        """
        Fetch the customer's profile if it is due, or regardless when force is set.

        A successful fetch stores names, picture and the recomputed display
        name and marks the profile fetched. A failed fetch only records the
        attempt time, which holds off the next try for the refetch window.

        Returns:
            True if the profile was updated
        """
        async with self.locks.acquire("profile:" + ":".join(customer.identity_key())):
            # Re-read under the lock so concurrent schedules fetch once
            current = await self.db.get_customer(customer.id) or customer
            now = utc_now()
            if not force and not current.should_retry_profile_fetch(now=now, refetch_after=self.refetch_after):
                return False

            client = self.clients.get(current.platform)
            try:
                if client is None:
                    raise LookupError(f"No client for platform {current.platform.value}")
                profile = await client.fetch_profile(account, current.platform_customer_id)
            except Exception as e:
                logger.warning(
                    f"⚠️ Profile fetch failed for customer {current.id} "
                    f"({current.platform.value}:{current.platform_customer_id}): {e}"
                )
                await self.db.mark_profile_fetch_attempted(current.id, now)
                return False

            enriched = current.model_copy(update={
                "first_name": profile.get("first_name") or current.first_name,
                "last_name": profile.get("last_name") or current.last_name,
                "profile_picture_url": profile.get("profile_picture_url") or current.profile_picture_url,
                "display_name": None,
            })
            display_name = enriched.best_display_name()
            await self.db.update_customer_profile(
                current.id,
                first_name=enriched.first_name,
                last_name=enriched.last_name,
                profile_picture_url=enriched.profile_picture_url,
                display_name=display_name,
                attempted_at=now,
            )
            logger.info(f"👤 Profile enriched for customer {current.id}: {display_name}")
            return True

    def schedule(self, customer: MessagingCustomer, account: MessagingAccount) -> Optional[asyncio.Task]:
        """Run maybe_refresh in the background if the customer qualifies"""
        if not customer.should_retry_profile_fetch(refetch_after=self.refetch_after):
            return None
        task = asyncio.create_task(self._run(customer, account))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, customer: MessagingCustomer, account: MessagingAccount) -> None:
        try:
            await self.maybe_refresh(customer, account)
        except Exception as e:
            logger.error(f"❌ Profile enrichment crashed for customer {customer.id}: {e}", exc_info=True)

    async def drain(self) -> None:
        """Wait for outstanding background fetches"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
