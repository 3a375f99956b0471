"""
Messaging Event Service
Turns pipeline outcomes into MessagingEvents for every user who can see the account
"""
import logging
from typing import Any, Dict, Optional

from chatbridge.models.events import MessagingEvent, MessagingEventType
from chatbridge.models.messaging import Conversation, Message, MessagingAccount, MessagingCustomer
from chatbridge.services.account_audience import AccountAudience
from chatbridge.services.event_broadcaster import EventBroadcaster

logger = logging.getLogger(__name__)


def conversation_payload(conversation: Conversation, customer: Optional[MessagingCustomer] = None) -> Dict[str, Any]:
    data = conversation.model_dump(mode="json")
    if customer is not None:
        data["customer"] = {
            "id": customer.id,
            "platform": customer.platform.value,
            "platform_customer_id": customer.platform_customer_id,
            "display_name": customer.best_display_name(),
            "profile_picture_url": customer.profile_picture_url,
        }
    return data


class MessagingEventService:
    def __init__(self, broadcaster: EventBroadcaster, audience: AccountAudience):
        self.broadcaster = broadcaster
        self.audience = audience

    async def _publish(self, account: MessagingAccount, event: MessagingEvent) -> int:
        users = await self.audience.users_for(account)
        delivered = self.broadcaster.send_to_users(users, event)
        logger.debug(
            f"📢 {event.type.value} account={account.id} conversation={event.conversation_id} "
            f"message={event.message_id} users={len(users)} delivered={delivered}"
        )
        return delivered

    async def publish_new_message(self, account: MessagingAccount, conversation: Conversation,
                                  message: Message, customer: Optional[MessagingCustomer] = None) -> int:
        data = message.model_dump(mode="json")
        if customer is not None:
            data["customer_name"] = customer.best_display_name()
        return await self._publish(account, MessagingEvent(
            type=MessagingEventType.NEW_MESSAGE,
            account_id=account.id,
            conversation_id=conversation.id,
            message_id=message.id,
            data=data,
            message="New inbound message" if message.is_inbound else "New outbound message",
        ))

    async def publish_conversation_update(self, account: MessagingAccount, conversation: Conversation,
                                          customer: Optional[MessagingCustomer] = None) -> int:
        return await self._publish(account, MessagingEvent(
            type=MessagingEventType.CONVERSATION_UPDATE,
            account_id=account.id,
            conversation_id=conversation.id,
            data=conversation_payload(conversation, customer),
        ))

    async def publish_unread_count(self, account: MessagingAccount, conversation_id: int, unread_count: int) -> int:
        return await self._publish(account, MessagingEvent(
            type=MessagingEventType.UNREAD_COUNT_UPDATE,
            account_id=account.id,
            conversation_id=conversation_id,
            data={"unread_count": unread_count},
        ))

    async def publish_message_status(self, account: MessagingAccount, message: Message,
                                     error_message: Optional[str] = None) -> int:
        data = {
            "status": message.status.value,
            "platform_message_id": message.platform_message_id,
        }
        if error_message:
            data["error_message"] = error_message
        return await self._publish(account, MessagingEvent(
            type=MessagingEventType.MESSAGE_STATUS_UPDATE,
            account_id=account.id,
            conversation_id=message.conversation_id,
            message_id=message.id,
            data=data,
        ))

    async def publish_account_status(self, account: MessagingAccount) -> int:
        return await self._publish(account, MessagingEvent(
            type=MessagingEventType.ACCOUNT_STATUS_UPDATE,
            account_id=account.id,
            data={"is_active": account.is_active, "platform": account.platform.value},
            message="Account activated" if account.is_active else "Account deactivated",
        ))
