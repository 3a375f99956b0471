"""
Customer Service
Staff-facing customer directory: search, contact edits and profile refreshes.
Customers are visible through the conversations of the user's accounts.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from chatbridge.exceptions import AccountConfigurationError, ResourceNotFoundError
from chatbridge.models.messaging import CustomerUpdateRequest, MessagingAccount, MessagingCustomer, MessagingPlatform
from chatbridge.services.account_service import AccountService
from chatbridge.services.profile_service import ProfileEnrichmentService

logger = logging.getLogger(__name__)

BULK_PAGE_SIZE = 200


def customer_payload(customer: MessagingCustomer) -> Dict[str, Any]:
    data = customer.model_dump(mode="json")
    data["name"] = customer.best_display_name()
    data["has_complete_profile"] = customer.has_complete_profile()
    return data


def _rate(part: int, total: int) -> float:
    return round(part * 100.0 / total, 2) if total else 0.0


class CustomerService:
    def __init__(self, db, accounts: AccountService, profiles: ProfileEnrichmentService):
        self.db = db
        self.accounts = accounts
        self.profiles = profiles

    async def _visible_account_ids(self, user_id: str) -> List[int]:
        return [account.id for account in await self.accounts.list_accounts_for_user(user_id)]

    async def get_customer_for_user(self, user_id: str, customer_id: int) -> MessagingCustomer:
        """
        Raises:
            ResourceNotFoundError: Unknown customer, or no conversation with the user's accounts
        """
        customer = await self.db.get_customer(customer_id)
        if customer is None:
            raise ResourceNotFoundError(f"Customer {customer_id} not found")
        visible = set(await self._visible_account_ids(user_id))
        if not visible.intersection(await self.db.list_customer_account_ids(customer.id)):
            raise ResourceNotFoundError(f"Customer {customer_id} not found")
        return customer

    async def list_customers(
        self,
        user_id: str,
        platform: Optional[MessagingPlatform] = None,
        search: Optional[str] = None,
        profile_fetched: Optional[bool] = None,
        complete: Optional[bool] = None,
        page: int = 0,
        size: int = 20,
    ) -> Tuple[List[Dict[str, Any]], int]:
        customers, total = await self.db.list_customers(
            await self._visible_account_ids(user_id),
            platform=platform,
            search=search.strip() if search else None,
            profile_fetched=profile_fetched,
            complete=complete,
            limit=size,
            offset=page * size,
        )
        return [customer_payload(customer) for customer in customers], total

    async def update_customer(self, user_id: str, customer_id: int,
                              request: CustomerUpdateRequest) -> MessagingCustomer:
        """Apply the fields present in the request; omitted fields keep their values"""
        customer = await self.get_customer_for_user(user_id, customer_id)
        fields = request.model_dump(exclude_none=True)
        if await self.db.update_customer(customer.id, fields):
            logger.info(f"✏️ Customer {customer.id} updated by {user_id}: {sorted(fields)}")
        return await self.db.get_customer(customer.id)

    async def _profile_account(self, customer: MessagingCustomer) -> Optional[MessagingAccount]:
        """Active account the customer last talked to. Page-scoped ids only resolve through it."""
        for account_id in await self.db.list_customer_account_ids(customer.id):
            account = await self.db.get_account(account_id)
            if account is not None and account.is_active:
                return account
        return None

    async def refresh_profile(self, user_id: str, customer_id: int) -> Dict[str, Any]:
        """
        Fetch the profile now, ignoring the refetch window.

        Raises:
            ResourceNotFoundError: Customer not visible to the user
            ValueError: WhatsApp has no profile lookup
            AccountConfigurationError: No active account to fetch through
        """
        customer = await self.get_customer_for_user(user_id, customer_id)
        if customer.platform == MessagingPlatform.WHATSAPP:
            raise ValueError("WhatsApp does not provide customer profiles")
        account = await self._profile_account(customer)
        if account is None:
            raise AccountConfigurationError(f"No active account to fetch customer {customer.id} through")

        refreshed = await self.profiles.maybe_refresh(customer, account, force=True)
        logger.info(f"🔄 Profile refresh for customer {customer.id} by {user_id}: {'ok' if refreshed else 'failed'}")
        return {"customer": customer_payload(await self.db.get_customer(customer.id)), "refreshed": refreshed}

    async def bulk_refresh(self, platform: Optional[MessagingPlatform] = None,
                           incomplete_only: bool = True) -> Dict[str, Any]:
        """
        Refresh profiles of every customer (admin operation). WhatsApp
        customers are skipped. One failing customer does not stop the run.
        """
        summary = {
            "total_processed": 0,
            "success_count": 0,
            "failure_count": 0,
            "platform": platform.value if platform else None,
            "incomplete_only": incomplete_only,
        }
        if platform == MessagingPlatform.WHATSAPP:
            logger.info("⏭️ Bulk profile refresh skipped: WhatsApp has no profile lookup")
            return summary

        # Collect first; refreshing changes which rows the filter matches
        customers: List[MessagingCustomer] = []
        offset = 0
        while True:
            batch, total = await self.db.list_customers(
                None,
                platform=platform or MessagingPlatform.FACEBOOK,
                complete=False if incomplete_only else None,
                limit=BULK_PAGE_SIZE,
                offset=offset,
            )
            customers.extend(batch)
            offset += len(batch)
            if not batch or offset >= total:
                break

        logger.info(f"🔄 Bulk profile refresh of {len(customers)} customers (incomplete_only={incomplete_only})")
        for customer in customers:
            summary["total_processed"] += 1
            try:
                account = await self._profile_account(customer)
                if account is None:
                    raise AccountConfigurationError("no active account")
                refreshed = await self.profiles.maybe_refresh(customer, account, force=True)
            except Exception as e:
                logger.warning(f"⚠️ Bulk refresh skipped customer {customer.id}: {e}")
                refreshed = False
            summary["success_count" if refreshed else "failure_count"] += 1

        logger.info(
            f"✅ Bulk profile refresh done: {summary['success_count']} ok, {summary['failure_count']} failed"
        )
        return summary

    async def get_stats(self, user_id: str, platform: Optional[MessagingPlatform] = None) -> Dict[str, Any]:
        stats = await self.db.get_customer_stats(await self._visible_account_ids(user_id), platform)
        total = stats["total"]
        return {
            "total_customers": total,
            "profiles_fetched": stats["fetched"],
            "profiles_not_fetched": total - stats["fetched"],
            "complete_profiles": stats["complete"],
            "profile_fetch_rate": _rate(stats["fetched"], total),
            "profile_complete_rate": _rate(stats["complete"], total),
            "platform": platform.value if platform else None,
            "platform_breakdown": stats["by_platform"],
        }
