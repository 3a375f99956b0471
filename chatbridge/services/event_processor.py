"""
Event Processor
Turns recorded webhook deliveries into canonical customers, conversations and
messages. Each event in a delivery is handled on its own: one failure is
recorded against the delivery and never stops its siblings.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from chatbridge.exceptions import AccountConfigurationError, UnsupportedEventError
from chatbridge.models.messaging import (
    Conversation,
    Message,
    MessageAttachment,
    MessageStatus,
    MessagingAccount,
    MessagingCustomer,
    MessagingPlatform,
    WebhookEvent,
    allowed_previous_statuses,
    conversation_lock_key,
)
from chatbridge.models.webhook import AccountRef, ParsedMessageEvent, ParsedStatusEvent, RawEventUnit
from chatbridge.services.messaging_event_service import MessagingEventService
from chatbridge.services.notification_service import NotificationService
from chatbridge.services.profile_service import ProfileEnrichmentService
from chatbridge.services.redis_service import RedisLockManager
from chatbridge.services.webhook_parsers import get_parser
from chatbridge.services.webhook_store import WebhookStore

logger = logging.getLogger(__name__)


@dataclass
class WebhookJob:
    """Unit of work handed to the processing queue"""
    webhook_event_id: int
    platform: MessagingPlatform
    payload: Dict[str, Any]


@dataclass
class ProcessingResult:
    webhook_event_id: int
    events: int = 0
    created: int = 0
    duplicates: int = 0
    status_updates: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class EventProcessor:
    def __init__(
        self,
        db,
        store: WebhookStore,
        events: MessagingEventService,
        notifications: NotificationService,
        profiles: ProfileEnrichmentService,
        conversation_locks: RedisLockManager,
    ):
        self.db = db
        self.store = store
        self.events = events
        self.notifications = notifications
        self.profiles = profiles
        self.conversation_locks = conversation_locks

    # ============================================
    # DELIVERY LEVEL
    # ============================================

    async def process(self, job: WebhookJob) -> ProcessingResult:
        """
        Process one recorded webhook delivery and mark it processed or failed.
        """
        result = ProcessingResult(webhook_event_id=job.webhook_event_id)
        parser = get_parser(job.platform)

        try:
            units = parser.split(job.payload)
        except UnsupportedEventError as e:
            result.errors.append(str(e))
            await self.store.mark_failed(job.webhook_event_id, str(e))
            return result
        except Exception as e:
            logger.error(f"❌ Webhook event {job.webhook_event_id} could not be split: {e}", exc_info=True)
            result.errors.append(f"Malformed payload: {e}")
            await self.store.mark_failed(job.webhook_event_id, f"Malformed payload: {e}")
            return result

        for unit in units:
            result.events += 1
            try:
                await self._process_unit(job, unit, result)
            except Exception as e:
                if not isinstance(e, (AccountConfigurationError, UnsupportedEventError)):
                    logger.error(f"❌ Webhook event {job.webhook_event_id} {unit.label()} failed: {e}", exc_info=True)
                else:
                    logger.warning(f"⚠️ Webhook event {job.webhook_event_id} {unit.label()}: {e}")
                result.errors.append(f"{unit.label()}: {e}")

        if result.errors:
            await self.store.mark_failed(job.webhook_event_id, "; ".join(result.errors))
        else:
            await self.store.mark_processed(job.webhook_event_id)

        logger.info(
            f"🧾 Webhook event {job.webhook_event_id} ({job.platform.value}): events={result.events}, "
            f"created={result.created}, duplicates={result.duplicates}, "
            f"status_updates={result.status_updates}, errors={len(result.errors)}"
        )
        return result

    @staticmethod
    def job_for(event: WebhookEvent) -> Optional[WebhookJob]:
        try:
            payload = json.loads(event.raw_payload)
        except ValueError:
            return None
        if not isinstance(payload, dict):
            return None
        return WebhookJob(webhook_event_id=event.id, platform=event.platform, payload=payload)

    # ============================================
    # EVENT LEVEL
    # ============================================

    async def _process_unit(self, job: WebhookJob, unit: RawEventUnit, result: ProcessingResult) -> None:
        parsed = get_parser(unit.platform).parse(unit)
        account = await self._resolve_account(parsed.account)
        await self.store.link_account(job.webhook_event_id, account.id)

        if isinstance(parsed, ParsedMessageEvent):
            created = await self.handle_message(account, parsed)
            if created is None:
                result.duplicates += 1
            else:
                result.created += 1
        elif isinstance(parsed, ParsedStatusEvent):
            result.status_updates += await self.handle_status(account, parsed)

    async def _resolve_account(self, ref: AccountRef) -> MessagingAccount:
        account = await self.db.find_account(
            ref.platform,
            page_id=ref.page_id,
            phone_number_id=ref.phone_number_id,
            business_account_id=ref.business_account_id,
        )
        if account is None:
            raise AccountConfigurationError(f"No {ref.platform.value} account for {ref.describe()}")
        if not account.is_active:
            raise AccountConfigurationError(f"{ref.platform.value} account {account.id} is inactive")
        return account

    async def _resolve_customer(self, account: MessagingAccount, parsed: ParsedMessageEvent) -> MessagingCustomer:
        hint = parsed.profile_hint
        customer, created = await self.db.get_or_create_customer(
            account.platform,
            parsed.customer_external_id,
            display_name=hint.display_name if hint else None,
            phone_number=hint.phone_number if hint else None,
        )
        if created:
            logger.info(f"👤 New {account.platform.value} customer {customer.id} ({parsed.customer_external_id})")
        elif hint and await self.db.fill_customer_contact(customer.id, hint.display_name, hint.phone_number):
            customer = await self.db.get_customer(customer.id)
        return customer

    async def handle_message(self, account: MessagingAccount, parsed: ParsedMessageEvent) -> Optional[Message]:
        """
        Persist a message event.

        Returns:
            The stored message, or None when it was a re-delivery
        """
        customer = await self._resolve_customer(account, parsed)

        async with self.conversation_locks.acquire(conversation_lock_key(account.id, customer.id)):
            conversation, conversation_created = await self.db.get_or_create_conversation(
                account.id, customer.id, conversation_name=customer.best_display_name()
            )

            message_id = await self.db.insert_message(
                conversation_id=conversation.id,
                account_id=account.id,
                customer_id=customer.id,
                is_inbound=parsed.is_inbound,
                timestamp=parsed.timestamp,
                content=parsed.content,
                message_type=parsed.message_type,
                platform_message_id=parsed.platform_message_id,
                sender_id=parsed.sender_id,
                recipient_id=parsed.recipient_id,
                status=MessageStatus.SENT,
            )
            if message_id is None:
                logger.info(f"🔁 Duplicate {account.platform.value} message {parsed.platform_message_id} ignored")
                return None

            for attachment in parsed.attachments:
                await self.db.insert_attachment(message_id, MessageAttachment(**attachment.model_dump()))

            await self.db.touch_conversation(conversation.id, parsed.timestamp)
            message = await self.db.get_message(message_id)

            unread = None
            if parsed.is_inbound:
                unread = await self.notifications.record_inbound(account, conversation, message)
            conversation = await self.db.get_conversation(conversation.id)

        logger.info(
            f"💬 {'Inbound' if parsed.is_inbound else 'Outbound echo'} {account.platform.value} message "
            f"{message.id} stored in conversation {conversation.id}"
            f"{' (new conversation)' if conversation_created else ''}"
        )

        await self.events.publish_new_message(account, conversation, message, customer)
        await self.events.publish_conversation_update(account, conversation, customer)
        if unread is not None:
            await self.events.publish_unread_count(account, conversation.id, unread)

        self.profiles.schedule(customer, account)
        return message

    async def handle_status(self, account: MessagingAccount, parsed: ParsedStatusEvent) -> int:
        """
        Apply a delivery/read/failure update. Transitions are monotonic:
        stale or out-of-order updates leave the message unchanged.

        Returns:
            Number of messages whose status changed
        """
        allowed_from = allowed_previous_statuses(parsed.status)
        candidates: List[Message] = []

        if parsed.platform_message_ids:
            candidates = [
                message for message in await self.db.find_messages_by_platform_ids(parsed.platform_message_ids)
                if message.account_id == account.id
            ]
            if not candidates:
                logger.debug(f"Status {parsed.status.value} for unknown message(s) {parsed.platform_message_ids}")
        elif parsed.watermark is not None and parsed.customer_external_id:
            conversation = await self._conversation_for(account, parsed.customer_external_id)
            if conversation is not None:
                candidates = await self.db.find_outbound_messages_until(
                    conversation.id, parsed.watermark, allowed_from
                )

        changed = 0
        for message in candidates:
            if message.status not in allowed_from:
                continue
            if not await self.db.compare_and_set_status(message.id, parsed.status, allowed_from):
                continue
            changed += 1
            updated = message.model_copy(update={"status": parsed.status})
            logger.info(f"📬 Message {message.id} status {message.status.value} -> {parsed.status.value}")
            await self.events.publish_message_status(account, updated, parsed.error_message)
        return changed

    async def _conversation_for(self, account: MessagingAccount, customer_external_id: str) -> Optional[Conversation]:
        customer = await self.db.find_customer(account.platform, customer_external_id)
        if customer is None:
            return None
        return await self.db.find_conversation(account.id, customer.id)
