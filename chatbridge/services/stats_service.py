"""
Messaging Stats Service
Dashboard counters across a user's accounts, or for one account
"""
from collections import Counter
from datetime import timedelta
from typing import Any, Dict

from chatbridge.services.account_service import AccountService
from chatbridge.utils.time import utc_now

RECENT_WINDOW = timedelta(hours=24)


class MessagingStatsService:
    def __init__(self, db, accounts: AccountService):
        self.db = db
        self.accounts = accounts

    async def get_overall_stats(self, user_id: str) -> Dict[str, Any]:
        """Totals over every account visible to the user"""
        accounts = await self.accounts.list_accounts_for_user(user_id)
        activity = await self.db.get_account_activity_stats(
            [account.id for account in accounts], since=utc_now() - RECENT_WINDOW
        )
        return {
            "total_accounts": len(accounts),
            "active_accounts": sum(1 for account in accounts if account.is_active),
            "total_conversations": activity["conversations"],
            "unread_conversations": activity["unread_conversations"],
            "total_messages": activity["messages"],
            "unread_messages": activity["unread_messages"],
            "failed_messages": activity["failed"],
            "messages_last_24h": activity["recent"],
            "platform_breakdown": dict(Counter(account.platform.value for account in accounts)),
        }

    async def get_account_stats(self, user_id: str, account_id: int) -> Dict[str, Any]:
        """
        Raises:
            ResourceNotFoundError: Unknown account or not visible to the user
        """
        account = await self.accounts.get_account_for_user(user_id, account_id)
        activity = await self.db.get_account_activity_stats([account.id], since=utc_now() - RECENT_WINDOW)
        return {
            "account_id": account.id,
            "platform": account.platform.value,
            "is_active": account.is_active,
            "total_conversations": activity["conversations"],
            "unread_conversations": activity["unread_conversations"],
            "total_messages": activity["messages"],
            "inbound_messages": activity["inbound"],
            "outbound_messages": activity["outbound"],
            "unread_messages": activity["unread_messages"],
            "failed_messages": activity["failed"],
            "messages_last_24h": activity["recent"],
        }
