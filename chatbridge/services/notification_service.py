"""
Notification Service
Per-user read markers for inbound messages and the conversation unread counter
"""
import asyncio
import logging
from typing import Dict, Optional, Set

from chatbridge.models.messaging import (
    Conversation,
    Message,
    MessageStatus,
    MessagingAccount,
    MessagingPlatform,
    conversation_lock_key,
)
from chatbridge.services.account_audience import AccountAudience
from chatbridge.services.messaging_event_service import MessagingEventService
from chatbridge.services.redis_service import RedisLockManager

logger = logging.getLogger(__name__)


class NotificationService:
    """
    Ledger of which users have read which inbound messages.

    unread counter mutations for a conversation run under the same shared
    lock the event processor uses when it persists messages, so a
    mark-read racing with new arrivals never leaves a stale count.
    """

    def __init__(self, db, audience: AccountAudience, events: MessagingEventService,
                 conversation_locks: RedisLockManager, clients: Optional[Dict[MessagingPlatform, object]] = None):
        self.db = db
        self.audience = audience
        self.events = events
        self.conversation_locks = conversation_locks
        self.clients = clients or {}
        self._tasks: Set[asyncio.Task] = set()

    async def record_inbound(self, account: MessagingAccount, conversation: Conversation, message: Message) -> int:
        """
        Create unread markers for everyone who can see the account and bump
        the conversation's unread count. Caller holds the conversation lock.

        Returns:
            The conversation's new unread count
        """
        users = await self.audience.users_for(account)
        for user_id in users:
            await self.db.insert_notification(user_id, message.id, conversation.id)
        unread = await self.db.increment_unread(conversation.id)
        logger.debug(
            f"🔔 Notified {len(users)} user(s) of message {message.id} in conversation {conversation.id} "
            f"(unread={unread})"
        )
        return unread

    async def mark_conversation_read(self, user_id: str, account: MessagingAccount,
                                     conversation: Conversation) -> int:
        """
        Mark every inbound message in the conversation read for user_id and
        reset the unread counter. Tells the platform the thread was seen.

        Returns:
            Number of read markers flipped for this user
        """
        async with self.conversation_locks.acquire(conversation_lock_key(account.id, conversation.customer_id)):
            flipped = await self.db.mark_conversation_notifications_read(user_id, conversation.id)
            await self.db.mark_inbound_messages_read(conversation.id)
            await self.db.reset_unread(conversation.id)

        logger.info(f"👁️ Conversation {conversation.id} marked read by {user_id} ({flipped} notifications)")
        await self.events.publish_unread_count(account, conversation.id, 0)
        self._mark_seen_in_background(account, conversation)
        return flipped

    async def mark_message_read(self, user_id: str, account: MessagingAccount, message: Message) -> bool:
        """
        Mark one message read for user_id. The first read of an inbound
        message also moves it to READ and decrements the conversation count
        (never below zero).
        """
        lock_key = conversation_lock_key(account.id, message.customer_id)
        async with self.conversation_locks.acquire(lock_key):
            changed = await self.db.set_notification_read(user_id, message.id, True)
            first_read = False
            if message.is_inbound:
                first_read = await self.db.compare_and_set_status(
                    message.id, MessageStatus.READ, [MessageStatus.SENT, MessageStatus.DELIVERED]
                )
            unread = None
            if first_read:
                unread = await self.db.decrement_unread(message.conversation_id)

        if unread is not None:
            await self.events.publish_unread_count(account, message.conversation_id, unread)
        return changed

    async def mark_message_unread(self, user_id: str, message: Message) -> bool:
        """Flip the user's marker back to unread. Message status is monotonic and stays READ."""
        return await self.db.set_notification_read(user_id, message.id, False)

    async def unread_total(self, user_id: str, conversation_id: Optional[int] = None) -> int:
        return await self.db.count_unread_notifications(user_id, conversation_id)

    def _mark_seen_in_background(self, account: MessagingAccount, conversation: Conversation) -> None:
        client = self.clients.get(account.platform)
        if client is None:
            return
        task = asyncio.create_task(self._mark_seen(client, account, conversation))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _mark_seen(self, client, account: MessagingAccount, conversation: Conversation) -> None:
        try:
            customer = await self.db.get_customer(conversation.customer_id)
            if customer is None:
                return
            messages, _ = await self.db.list_messages(conversation.id, limit=20)
            last_inbound = next((m for m in messages if m.is_inbound and m.platform_message_id), None)
            await client.mark_seen(
                account,
                customer.platform_customer_id,
                last_message_id=last_inbound.platform_message_id if last_inbound else None,
            )
        except Exception as e:
            logger.warning(f"⚠️ Failed to mark conversation {conversation.id} seen on {account.platform.value}: {e}")

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
