"""
Conversation Service
Staff-facing queries over conversations and messages, plus read/archive actions
"""
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from chatbridge.exceptions import ResourceNotFoundError
from chatbridge.models.messaging import Conversation, Message, MessagingAccount, MessagingPlatform
from chatbridge.services.account_service import AccountService
from chatbridge.services.messaging_event_service import MessagingEventService, conversation_payload
from chatbridge.services.notification_service import NotificationService
from chatbridge.utils.time import utc_now

logger = logging.getLogger(__name__)

RECENT_MESSAGES_LIMIT = 10


class ConversationService:
    def __init__(self, db, accounts: AccountService, notifications: NotificationService,
                 events: MessagingEventService):
        self.db = db
        self.accounts = accounts
        self.notifications = notifications
        self.events = events

    async def get_conversation_for_user(self, user_id: str, conversation_id: int) -> Tuple[MessagingAccount, Conversation]:
        """
        Raises:
            ResourceNotFoundError: Unknown conversation or account not visible to the user
        """
        conversation = await self.db.get_conversation(conversation_id)
        if conversation is None:
            raise ResourceNotFoundError(f"Conversation {conversation_id} not found")
        try:
            account = await self.accounts.get_account_for_user(user_id, conversation.account_id)
        except ResourceNotFoundError:
            raise ResourceNotFoundError(f"Conversation {conversation_id} not found")
        return account, conversation

    async def get_message_for_user(self, user_id: str, message_id: int) -> Tuple[MessagingAccount, Message]:
        message = await self.db.get_message(message_id)
        if message is None:
            raise ResourceNotFoundError(f"Message {message_id} not found")
        try:
            account = await self.accounts.get_account_for_user(user_id, message.account_id)
        except ResourceNotFoundError:
            raise ResourceNotFoundError(f"Message {message_id} not found")
        return account, message

    async def list_conversations(
        self,
        user_id: str,
        account_id: Optional[int] = None,
        platform: Optional[MessagingPlatform] = None,
        has_unread: Optional[bool] = None,
        is_active: Optional[bool] = None,
        search: Optional[str] = None,
        page: int = 0,
        size: int = 20,
    ) -> Tuple[List[Dict[str, Any]], int]:
        accounts = await self.accounts.list_accounts_for_user(user_id)
        if account_id is not None:
            accounts = [account for account in accounts if account.id == account_id]
        if platform is not None:
            accounts = [account for account in accounts if account.platform == platform]

        rows, total = await self.db.list_conversations(
            [account.id for account in accounts],
            has_unread=has_unread,
            is_active=is_active,
            search=search,
            limit=size,
            offset=page * size,
        )
        platforms = {account.id: account.platform.value for account in accounts}
        items = []
        for row in rows:
            first = (row.get("customer_first_name") or "").strip()
            last = (row.get("customer_last_name") or "").strip()
            fallback = f"{MessagingPlatform(row['customer_platform']).display_name} User"
            items.append({
                "id": row["id"],
                "account_id": row["account_id"],
                "platform": platforms.get(row["account_id"]),
                "customer_id": row["customer_id"],
                "customer_name": row.get("customer_display_name") or " ".join(p for p in (first, last) if p) or fallback,
                "customer_profile_picture_url": row.get("customer_profile_picture_url"),
                "conversation_name": row["conversation_name"],
                "last_message_at": row["last_message_at"],
                "unread_count": row["unread_count"],
                "is_active": bool(row["is_active"]),
            })
        return items, total

    async def get_conversation_detail(self, user_id: str, conversation_id: int) -> Dict[str, Any]:
        account, conversation = await self.get_conversation_for_user(user_id, conversation_id)
        customer = await self.db.get_customer(conversation.customer_id)
        messages, total = await self.db.list_messages(conversation.id, limit=RECENT_MESSAGES_LIMIT)
        detail = conversation_payload(conversation, customer)
        detail["platform"] = account.platform.value
        detail["total_messages"] = total
        detail["recent_messages"] = [message.model_dump(mode="json") for message in messages]
        return detail

    async def list_messages(self, user_id: str, conversation_id: int,
                            page: int = 0, size: int = 50) -> Tuple[List[Message], int]:
        _, conversation = await self.get_conversation_for_user(user_id, conversation_id)
        return await self.db.list_messages(conversation.id, limit=size, offset=page * size)

    async def mark_conversation_read(self, user_id: str, conversation_id: int) -> int:
        account, conversation = await self.get_conversation_for_user(user_id, conversation_id)
        return await self.notifications.mark_conversation_read(user_id, account, conversation)

    async def mark_message_read(self, user_id: str, message_id: int) -> bool:
        account, message = await self.get_message_for_user(user_id, message_id)
        return await self.notifications.mark_message_read(user_id, account, message)

    async def mark_message_unread(self, user_id: str, message_id: int) -> bool:
        _, message = await self.get_message_for_user(user_id, message_id)
        return await self.notifications.mark_message_unread(user_id, message)

    async def toggle_archive(self, user_id: str, conversation_id: int) -> Conversation:
        account, conversation = await self.get_conversation_for_user(user_id, conversation_id)
        await self.db.set_conversation_active(conversation.id, not conversation.is_active)
        conversation = await self.db.get_conversation(conversation.id)
        logger.info(f"🗂️ Conversation {conversation.id} {'restored' if conversation.is_active else 'archived'}")
        await self.events.publish_conversation_update(account, conversation)
        return conversation

    async def get_stats(self, user_id: str, conversation_id: int) -> Dict[str, Any]:
        _, conversation = await self.get_conversation_for_user(user_id, conversation_id)
        stats = await self.db.get_conversation_message_stats(conversation.id, since=utc_now() - timedelta(hours=24))
        return {
            "conversation_id": conversation.id,
            "total_messages": stats["total"],
            "inbound_messages": stats["inbound"],
            "outbound_messages": stats["outbound"],
            "failed_messages": stats["failed"],
            "messages_last_24h": stats["recent"],
            "unread_count": conversation.unread_count,
            "user_unread_notifications": await self.notifications.unread_total(user_id, conversation.id),
        }
