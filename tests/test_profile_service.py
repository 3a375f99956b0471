import asyncio
from datetime import timedelta

from chatbridge.models.messaging import MessagingPlatform
from chatbridge.services.profile_service import ProfileEnrichmentService
from chatbridge.utils.time import utc_now


async def new_customer(db, external_id="PSID1"):
    customer, _ = await db.get_or_create_customer(MessagingPlatform.FACEBOOK, external_id)
    return customer


async def test_successful_fetch_fills_names(db, facebook_account, fb_client, locks):
    fb_client.profiles["PSID1"] = {"first_name": "Ana", "last_name": "Silva", "profile_picture_url": "https://pic"}
    service = ProfileEnrichmentService(db, {MessagingPlatform.FACEBOOK: fb_client}, locks)
    customer = await new_customer(db)

    assert await service.maybe_refresh(customer, facebook_account)

    updated = await db.get_customer(customer.id)
    assert updated.display_name == "Ana Silva"
    assert updated.profile_picture_url == "https://pic"
    assert updated.profile_fetched
    assert updated.profile_fetch_attempted_at is not None


async def test_failed_fetch_only_stamps_attempt(db, facebook_account, fb_client, locks):
    service = ProfileEnrichmentService(db, {MessagingPlatform.FACEBOOK: fb_client}, locks)
    customer = await new_customer(db)

    assert not await service.maybe_refresh(customer, facebook_account)

    updated = await db.get_customer(customer.id)
    assert not updated.profile_fetched
    assert updated.profile_fetch_attempted_at is not None
    assert updated.display_name is None
    assert updated.best_display_name() == "Facebook User"


async def test_recent_failure_holds_off_refetch(db, facebook_account, fb_client, locks):
    service = ProfileEnrichmentService(db, {MessagingPlatform.FACEBOOK: fb_client}, locks, refetch_hours=24)
    customer = await new_customer(db)
    await service.maybe_refresh(customer, facebook_account)
    fb_client.profiles["PSID1"] = {"first_name": "Ana"}

    assert not await service.maybe_refresh(customer, facebook_account)
    assert fb_client.profile_calls == ["PSID1"]


async def test_failure_older_than_window_is_retried(db, facebook_account, fb_client, locks):
    service = ProfileEnrichmentService(db, {MessagingPlatform.FACEBOOK: fb_client}, locks, refetch_hours=24)
    customer = await new_customer(db)
    await db.mark_profile_fetch_attempted(customer.id, utc_now() - timedelta(hours=25))
    fb_client.profiles["PSID1"] = {"first_name": "Ana"}

    assert await service.maybe_refresh(customer, facebook_account)
    assert (await db.get_customer(customer.id)).display_name == "Ana"


async def test_concurrent_refreshes_fetch_once(db, facebook_account, fb_client, locks):
    fb_client.profiles["PSID1"] = {"first_name": "Ana", "last_name": "Silva"}
    service = ProfileEnrichmentService(db, {MessagingPlatform.FACEBOOK: fb_client}, locks)
    customer = await new_customer(db)

    results = await asyncio.gather(*(service.maybe_refresh(customer, facebook_account) for _ in range(5)))

    assert results.count(True) == 1
    assert fb_client.profile_calls == ["PSID1"]


async def test_schedule_skips_fetched_customers(db, facebook_account, fb_client, locks):
    fb_client.profiles["PSID1"] = {"first_name": "Ana"}
    service = ProfileEnrichmentService(db, {MessagingPlatform.FACEBOOK: fb_client}, locks)
    customer = await new_customer(db)

    task = service.schedule(customer, facebook_account)
    assert task is not None
    await service.drain()

    fetched = await db.get_customer(customer.id)
    assert service.schedule(fetched, facebook_account) is None
