import asyncio
import json

import pytest

from chatbridge.exceptions import ResourceNotFoundError
from chatbridge.models.events import MessagingEventType
from chatbridge.models.messaging import MessageStatus, MessagingPlatform
from chatbridge.services.event_processor import WebhookJob

from helpers import fb_envelope, fb_message, wa_contact, wa_envelope, wa_text

FB = MessagingPlatform.FACEBOOK
WA = MessagingPlatform.WHATSAPP


async def deliver(services, platform, payload):
    event = await services.store.record(platform, "test", json.dumps(payload))
    await services.processor.process(WebhookJob(webhook_event_id=event.id, platform=platform, payload=payload))


async def inbound_conversation(services, db, account, count=3, external_id="PSID1"):
    for i in range(count):
        payload = fb_envelope("PAGE1", fb_message("PAGE1", external_id, f"m_{external_id}_{i}", f"msg {i}",
                                                  1700000000000 + i))
        await deliver(services, FB, payload)
    customer = await db.find_customer(FB, external_id)
    return await db.find_conversation(account.id, customer.id)


async def test_mark_conversation_read_resets_everything(services, db, facebook_account, fb_client):
    conversation = await inbound_conversation(services, db, facebook_account, count=4)
    assert conversation.unread_count == 4
    assert await services.notifications.unread_total("user-1", conversation.id) == 4

    flipped = await services.conversations.mark_conversation_read("user-1", conversation.id)
    await services.notifications.drain()

    assert flipped == 4
    assert await db.get_unread_count(conversation.id) == 0
    assert await services.notifications.unread_total("user-1") == 0
    messages, _ = await db.list_messages(conversation.id)
    assert {m.status for m in messages} == {MessageStatus.READ}
    assert fb_client.seen == [{"to": "PSID1", "last_message_id": "m_PSID1_3"}]


async def test_mark_conversation_read_publishes_zero_unread(services, db, facebook_account):
    conversation = await inbound_conversation(services, db, facebook_account, count=1)
    subscription = services.broadcaster.subscribe("user-1")
    await subscription.next_event(timeout=1)

    await services.conversations.mark_conversation_read("user-1", conversation.id)

    event = await subscription.next_event(timeout=1)
    assert event.type == MessagingEventType.UNREAD_COUNT_UPDATE
    assert event.conversation_id == conversation.id
    assert event.data["unread_count"] == 0


async def test_mark_message_read_decrements_once(services, db, facebook_account):
    conversation = await inbound_conversation(services, db, facebook_account, count=2)
    messages, _ = await db.list_messages(conversation.id)

    assert await services.conversations.mark_message_read("user-1", messages[0].id)
    assert not await services.conversations.mark_message_read("user-1", messages[0].id)

    assert await db.get_unread_count(conversation.id) == 1
    assert (await db.get_message(messages[0].id)).status == MessageStatus.READ
    assert await services.notifications.unread_total("user-1", conversation.id) == 1


async def test_unread_count_never_goes_negative(services, db, facebook_account):
    conversation = await inbound_conversation(services, db, facebook_account, count=1)
    await db.reset_unread(conversation.id)
    messages, _ = await db.list_messages(conversation.id)

    await services.conversations.mark_message_read("user-1", messages[0].id)

    assert await db.get_unread_count(conversation.id) == 0


async def test_mark_read_racing_inbound_deliveries(services, db, facebook_account):
    conversation = await inbound_conversation(services, db, facebook_account, count=1)
    observed = []

    async def inbound(i):
        payload = fb_envelope("PAGE1", fb_message("PAGE1", "PSID1", f"m_race_{i}", f"race {i}", 1700000001000 + i))
        await deliver(services, FB, payload)
        observed.append(await db.get_unread_count(conversation.id))

    async def mark_read():
        await services.conversations.mark_conversation_read("user-1", conversation.id)
        observed.append(await db.get_unread_count(conversation.id))

    await asyncio.gather(*(inbound(i) for i in range(6)), mark_read(), mark_read())

    assert min(observed) >= 0
    assert await db.get_unread_count(conversation.id) >= 0
    await services.conversations.mark_conversation_read("user-1", conversation.id)
    await services.notifications.drain()
    assert await db.get_unread_count(conversation.id) == 0
    assert await services.notifications.unread_total("user-1", conversation.id) == 0
    _, total = await db.list_messages(conversation.id)
    assert total == 7


async def test_mark_message_unread_only_flips_marker(services, db, facebook_account):
    conversation = await inbound_conversation(services, db, facebook_account, count=1)
    messages, _ = await db.list_messages(conversation.id)
    await services.conversations.mark_message_read("user-1", messages[0].id)

    assert await services.conversations.mark_message_unread("user-1", messages[0].id)

    assert await services.notifications.unread_total("user-1") == 1
    assert (await db.get_message(messages[0].id)).status == MessageStatus.READ


async def test_other_users_cannot_see_the_conversation(services, db, facebook_account):
    conversation = await inbound_conversation(services, db, facebook_account, count=1)

    with pytest.raises(ResourceNotFoundError):
        await services.conversations.get_conversation_detail("user-2", conversation.id)
    with pytest.raises(ResourceNotFoundError):
        await services.conversations.mark_conversation_read("user-2", conversation.id)
    items, total = await services.conversations.list_conversations("user-2")
    assert (items, total) == ([], 0)


async def test_list_filters_and_search(services, db, facebook_account, whatsapp_account):
    await inbound_conversation(services, db, facebook_account, count=1)
    for wa_id, name in (("15550000001", "Ana Silva"), ("15550000002", "Bruno Costa")):
        await deliver(services, WA, wa_envelope(
            "PHONE1", messages=[wa_text(wa_id, f"wamid.{wa_id}")], contacts=[wa_contact(wa_id, name)]
        ))

    _, total = await services.conversations.list_conversations("user-1")
    assert total == 3

    items, total = await services.conversations.list_conversations("user-1", platform=WA)
    assert total == 2
    assert {item["platform"] for item in items} == {"WHATSAPP"}

    items, total = await services.conversations.list_conversations("user-1", search="bruno")
    assert total == 1
    assert items[0]["customer_name"] == "Bruno Costa"

    items, _ = await services.conversations.list_conversations("user-1", account_id=facebook_account.id)
    assert items[0]["customer_name"] == "Facebook User"

    page, total = await services.conversations.list_conversations("user-1", page=1, size=2)
    assert total == 3 and len(page) == 1


async def test_archive_toggles_and_filters(services, db, facebook_account):
    conversation = await inbound_conversation(services, db, facebook_account, count=1)

    archived = await services.conversations.toggle_archive("user-1", conversation.id)

    assert not archived.is_active
    _, active_total = await services.conversations.list_conversations("user-1", is_active=True)
    assert active_total == 0
    restored = await services.conversations.toggle_archive("user-1", conversation.id)
    assert restored.is_active


async def test_detail_and_stats(services, db, facebook_account):
    conversation = await inbound_conversation(services, db, facebook_account, count=3)
    await services.gateway.send(facebook_account, conversation, "reply", sender_user_id="user-1")

    detail = await services.conversations.get_conversation_detail("user-1", conversation.id)
    stats = await services.conversations.get_stats("user-1", conversation.id)

    assert detail["platform"] == "FACEBOOK"
    assert detail["total_messages"] == 4
    assert detail["recent_messages"][0]["content"] == "reply"
    assert stats["inbound_messages"] == 3
    assert stats["outbound_messages"] == 1
    assert stats["failed_messages"] == 0
    assert stats["messages_last_24h"] == 4
    assert stats["unread_count"] == 3
    assert stats["user_unread_notifications"] == 3
