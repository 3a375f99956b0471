"""
Outbound Gateway
Sends staff replies through the platform APIs with per-account rate limiting
and bounded retry of transient failures.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

from chatbridge.exceptions import AccountConfigurationError, InvalidStatusTransitionError, MessagingApiError
from chatbridge.models.messaging import (
    Conversation,
    Message,
    MessageStatus,
    MessageType,
    MessagingAccount,
    MessagingCustomer,
    MessagingPlatform,
    allowed_previous_statuses,
    conversation_lock_key,
)
from chatbridge.services.messaging_event_service import MessagingEventService
from chatbridge.services.rate_limiter import RateLimiterRegistry
from chatbridge.services.redis_service import RedisLockManager
from chatbridge.utils.time import utc_now

logger = logging.getLogger(__name__)

STATUS_ORDER = {MessageStatus.SENT: 0, MessageStatus.DELIVERED: 1, MessageStatus.READ: 2}


class OutboundGateway:
    def __init__(
        self,
        db,
        clients: Dict[MessagingPlatform, object],
        rate_limiter: RateLimiterRegistry,
        events: MessagingEventService,
        conversation_locks: RedisLockManager,
        max_retry_attempts: int = 3,
        retry_delay_seconds: float = 5.0,
        backoff: str = "fixed",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db
        self.clients = clients
        self.rate_limiter = rate_limiter
        self.events = events
        self.conversation_locks = conversation_locks
        self.max_retry_attempts = max(0, max_retry_attempts)
        self.retry_delay_seconds = retry_delay_seconds
        self.backoff = backoff
        self._sleep = sleep

    def retry_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)"""
        if self.backoff == "exponential":
            return self.retry_delay_seconds * (2 ** (attempt - 1))
        return self.retry_delay_seconds

    async def send(
        self,
        account: MessagingAccount,
        conversation: Conversation,
        content: str,
        sender_user_id: Optional[str] = None,
        timeout: Optional[float] = None,
        template_name: Optional[str] = None,
        language_code: str = "en_US",
    ) -> Message:
        """
        Send a reply in a conversation.

        The message is stored (status SENT, no platform id) and broadcast
        before the platform call. On success the platform id is recorded;
        on rejection or exhausted retries it is marked FAILED.

        Raises:
            AccountConfigurationError: Account inactive or customer missing
            RateLimitExceededError: No send permit within the allowed wait
            MessagingApiError: Platform rejected the message or retries ran out
        """
        if not account.is_active:
            raise AccountConfigurationError(f"Account {account.id} is inactive")
        if template_name and account.platform != MessagingPlatform.WHATSAPP:
            raise ValueError("Template messages are only supported on WhatsApp")
        customer = await self.db.get_customer(conversation.customer_id)
        if customer is None:
            raise AccountConfigurationError(f"Customer {conversation.customer_id} not found")

        now = utc_now()
        lock_key = conversation_lock_key(account.id, customer.id)
        async with self.conversation_locks.acquire(lock_key):
            message_id = await self.db.insert_message(
                conversation_id=conversation.id,
                account_id=account.id,
                customer_id=customer.id,
                is_inbound=False,
                timestamp=now,
                content=template_name or content,
                message_type=MessageType.TEMPLATE if template_name else MessageType.TEXT,
                sender_id=account.external_id,
                recipient_id=customer.platform_customer_id,
                status=MessageStatus.SENT,
                sent_by_user_id=sender_user_id,
            )
            await self.db.touch_conversation(conversation.id, now)

        message = await self.db.get_message(message_id)
        conversation = await self.db.get_conversation(conversation.id)
        await self.events.publish_new_message(account, conversation, message, customer)
        await self.events.publish_conversation_update(account, conversation, customer)

        try:
            platform_message_id = await self._deliver(
                account, customer, content, timeout, template_name, language_code, message.id
            )
        except MessagingApiError as e:
            await self._mark_failed(account, message, str(e))
            raise
        except Exception as e:
            logger.error(f"❌ Unexpected error delivering message {message.id}: {e}", exc_info=True)
            await self._mark_failed(account, message, f"Delivery error: {e}")
            raise MessagingApiError(f"Delivery error: {e}") from e

        await self._record_platform_id(account, message, platform_message_id)
        return await self.db.get_message(message.id)

    async def _deliver(
        self,
        account: MessagingAccount,
        customer: MessagingCustomer,
        content: str,
        timeout: Optional[float],
        template_name: Optional[str],
        language_code: str,
        message_id: int,
    ) -> str:
        client = self.clients.get(account.platform)
        if client is None:
            raise MessagingApiError(f"No client configured for {account.platform.value}")

        total_attempts = 1 + self.max_retry_attempts
        for attempt in range(1, total_attempts + 1):
            await self.rate_limiter.acquire(account.id, timeout)
            try:
                if template_name:
                    return await client.send_template(account, customer.platform_customer_id,
                                                      template_name, language_code)
                return await client.send_text(account, customer.platform_customer_id, content)
            except MessagingApiError as e:
                if not e.transient:
                    logger.error(f"❌ Message {message_id} rejected by {account.platform.value}: {e}")
                    raise
                if attempt == total_attempts:
                    logger.error(f"❌ Message {message_id} failed after {total_attempts} attempts: {e}")
                    raise
                delay = self.retry_delay(attempt)
                logger.warning(
                    f"🔄 Message {message_id} attempt {attempt}/{total_attempts} failed ({e}); retrying in {delay}s"
                )
                await self._sleep(delay)

    async def _record_platform_id(self, account: MessagingAccount, message: Message, platform_message_id: str) -> None:
        """
        Attach the platform id. A Messenger echo of this very message may
        have been ingested first under the same id; that row is folded into
        this one.
        """
        lock_key = conversation_lock_key(account.id, message.customer_id)
        async with self.conversation_locks.acquire(lock_key):
            echo = await self.db.find_message_by_platform_id(platform_message_id)
            if echo is None or echo.id == message.id:
                await self.db.set_platform_message_id(message.id, platform_message_id)
                return

            logger.info(f"🪞 Folding echo message {echo.id} into outbound message {message.id}")
            later_status = echo.status if STATUS_ORDER.get(echo.status, 0) > STATUS_ORDER[MessageStatus.SENT] else None
            await self.db.fold_echo_into(
                message.id,
                echo.id,
                platform_message_id,
                status=later_status,
                allowed_from=allowed_previous_statuses(later_status) if later_status else (),
            )

    async def _mark_failed(self, account: MessagingAccount, message: Message, error: str) -> None:
        if await self.db.compare_and_set_status(
            message.id, MessageStatus.FAILED, allowed_previous_statuses(MessageStatus.FAILED)
        ):
            failed = message.model_copy(update={"status": MessageStatus.FAILED})
            await self.events.publish_message_status(account, failed, error)

    async def resend(self, account: MessagingAccount, message: Message,
                     sender_user_id: Optional[str] = None, timeout: Optional[float] = None) -> Message:
        """
        Operator-initiated retry of a FAILED outbound message. FAILED stays
        terminal; the retry goes out as a new message.
        """
        if message.is_inbound or message.status != MessageStatus.FAILED:
            raise InvalidStatusTransitionError("Only failed outbound messages can be resent")
        conversation = await self.db.get_conversation(message.conversation_id)
        template_name = message.content if message.message_type == MessageType.TEMPLATE else None
        return await self.send(
            account, conversation, message.content or "",
            sender_user_id=sender_user_id, timeout=timeout, template_name=template_name,
        )
