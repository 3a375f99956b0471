import json

import pytest

from chatbridge.exceptions import AccountConfigurationError, MessagingApiError, ResourceNotFoundError
from chatbridge.models.messaging import CustomerUpdateRequest, MessagingPlatform
from chatbridge.services.event_processor import WebhookJob

from helpers import fb_envelope, fb_message, wa_contact, wa_envelope, wa_text

FB = MessagingPlatform.FACEBOOK
WA = MessagingPlatform.WHATSAPP


async def deliver(services, platform, payload):
    event = await services.store.record(platform, "test", json.dumps(payload))
    await services.processor.process(WebhookJob(webhook_event_id=event.id, platform=platform, payload=payload))


async def inbound_customer(services, db, external_id="PSID1"):
    await deliver(services, FB, fb_envelope("PAGE1", fb_message("PAGE1", external_id, f"m_{external_id}")))
    await services.profiles.drain()
    return await db.find_customer(FB, external_id)


# ============================================
# DIRECTORY
# ============================================

async def test_list_is_scoped_to_the_users_accounts(services, db, facebook_account, fb_client):
    fb_client.profiles["PSID1"] = {"first_name": "Ana", "last_name": "Silva"}
    await inbound_customer(services, db, "PSID1")
    await inbound_customer(services, db, "PSID2")

    items, total = await services.customers.list_customers("user-1")
    assert total == 2
    assert {item["platform_customer_id"] for item in items} == {"PSID1", "PSID2"}

    _, other_total = await services.customers.list_customers("user-2")
    assert other_total == 0

    items, total = await services.customers.list_customers("user-1", search="ana")
    assert total == 1
    assert items[0]["name"] == "Ana Silva"
    assert items[0]["has_complete_profile"] is True

    _, incomplete = await services.customers.list_customers("user-1", complete=False)
    assert incomplete == 1
    _, not_fetched = await services.customers.list_customers("user-1", profile_fetched=False)
    assert not_fetched == 1


async def test_other_users_cannot_see_the_customer(services, db, facebook_account):
    customer = await inbound_customer(services, db)

    with pytest.raises(ResourceNotFoundError):
        await services.customers.get_customer_for_user("user-2", customer.id)
    with pytest.raises(ResourceNotFoundError):
        await services.customers.get_customer_for_user("user-1", 9999)


async def test_update_keeps_omitted_fields(services, db, facebook_account):
    customer = await inbound_customer(services, db)

    await services.customers.update_customer(
        "user-1", customer.id, CustomerUpdateRequest(phone_number="+8801712345678", email="ana@example.com")
    )
    updated = await services.customers.update_customer(
        "user-1", customer.id, CustomerUpdateRequest(address="Road 5, Dhanmondi")
    )

    assert updated.phone_number == "+8801712345678"
    assert updated.email == "ana@example.com"
    assert updated.address == "Road 5, Dhanmondi"
    assert updated.platform_customer_id == "PSID1"


# ============================================
# PROFILE REFRESH
# ============================================

async def test_refresh_ignores_the_refetch_window(services, db, facebook_account, fb_client):
    customer = await inbound_customer(services, db)
    assert fb_client.profile_calls == ["PSID1"]
    fb_client.profiles["PSID1"] = {"first_name": "Ana", "last_name": "Silva"}

    result = await services.customers.refresh_profile("user-1", customer.id)

    assert result["refreshed"] is True
    assert result["customer"]["display_name"] == "Ana Silva"
    assert fb_client.profile_calls == ["PSID1", "PSID1"]


async def test_refresh_rejects_whatsapp(services, db, whatsapp_account):
    await deliver(services, WA, wa_envelope(
        "PHONE1", messages=[wa_text("15550000001", "wamid.1")], contacts=[wa_contact("15550000001", "Ana")]
    ))
    customer = await db.find_customer(WA, "15550000001")

    with pytest.raises(ValueError):
        await services.customers.refresh_profile("user-1", customer.id)


async def test_refresh_needs_an_active_account(services, db, facebook_account):
    customer = await inbound_customer(services, db)
    await db.set_account_active(facebook_account.id, False)

    with pytest.raises(AccountConfigurationError):
        await services.customers.refresh_profile("user-1", customer.id)


async def test_bulk_refresh_counts_each_customer(services, db, facebook_account, fb_client):
    await inbound_customer(services, db, "PSID1")
    await inbound_customer(services, db, "PSID2")
    fb_client.profiles["PSID1"] = {"first_name": "Ana", "last_name": "Silva"}

    first = await services.customers.bulk_refresh()
    assert first == {"total_processed": 2, "success_count": 1, "failure_count": 1,
                     "platform": None, "incomplete_only": True}

    second = await services.customers.bulk_refresh()
    assert (second["total_processed"], second["failure_count"]) == (1, 1)

    everyone = await services.customers.bulk_refresh(platform=FB, incomplete_only=False)
    assert everyone["total_processed"] == 2
    assert everyone["platform"] == "FACEBOOK"


async def test_bulk_refresh_skips_whatsapp(services, db, whatsapp_account, wa_client):
    await deliver(services, WA, wa_envelope("PHONE1", messages=[wa_text("15550000001", "wamid.1")]))
    await services.profiles.drain()
    calls = list(wa_client.profile_calls)

    summary = await services.customers.bulk_refresh(platform=WA)

    assert summary["total_processed"] == 0
    assert wa_client.profile_calls == calls


async def test_customer_stats(services, db, facebook_account, fb_client):
    fb_client.profiles["PSID1"] = {"first_name": "Ana", "last_name": "Silva"}
    await inbound_customer(services, db, "PSID1")
    await inbound_customer(services, db, "PSID2")

    stats = await services.customers.get_stats("user-1")

    assert stats["total_customers"] == 2
    assert stats["profiles_fetched"] == 1
    assert stats["profiles_not_fetched"] == 1
    assert stats["complete_profiles"] == 1
    assert stats["profile_fetch_rate"] == 50.0
    assert stats["platform_breakdown"] == {"FACEBOOK": 2}
    assert (await services.customers.get_stats("user-2"))["total_customers"] == 0


# ============================================
# MESSAGING STATS
# ============================================

async def test_overall_and_account_stats(services, db, facebook_account, whatsapp_account, fb_client):
    customer = await inbound_customer(services, db, "PSID1")
    conversation = await db.find_conversation(facebook_account.id, customer.id)
    await services.gateway.send(facebook_account, conversation, "reply", sender_user_id="user-1")
    fb_client.failures = [ValueError("boom")]
    with pytest.raises(MessagingApiError):
        await services.gateway.send(facebook_account, conversation, "lost", sender_user_id="user-1")

    overall = await services.stats.get_overall_stats("user-1")
    account = await services.stats.get_account_stats("user-1", facebook_account.id)

    assert overall["total_accounts"] == 2
    assert overall["platform_breakdown"] == {"FACEBOOK": 1, "WHATSAPP": 1}
    assert overall["total_conversations"] == 1
    assert overall["unread_messages"] == 1
    assert account["total_messages"] == 3
    assert account["inbound_messages"] == 1
    assert account["outbound_messages"] == 2
    assert account["failed_messages"] == 1
    assert account["unread_conversations"] == 1
    assert account["messages_last_24h"] == 3
    with pytest.raises(ResourceNotFoundError):
        await services.stats.get_account_stats("user-2", facebook_account.id)
