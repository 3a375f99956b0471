import json

import pytest

from chatbridge.exceptions import WebhookVerificationError
from chatbridge.models.messaging import MessagingPlatform
from chatbridge.services.container import MessagingServices

from helpers import FACEBOOK_APP_SECRET, encode, fb_envelope, fb_message, sign

FB = MessagingPlatform.FACEBOOK


async def test_signed_delivery_is_recorded_and_processed(services, db, facebook_account):
    body = encode(fb_envelope("PAGE1", fb_message("PAGE1", "PSID1", "m_1", "Hi")))

    event = await services.ingestion.ingest(FB, body, sign(body, FACEBOOK_APP_SECRET))

    stored = await services.store.get(event.id)
    assert stored.processed
    assert stored.event_type == "message"
    assert stored.raw_payload == body.decode("utf-8")
    assert await db.find_customer(FB, "PSID1") is not None


async def test_rejected_signature_records_nothing(services, facebook_account):
    body = encode(fb_envelope("PAGE1", fb_message("PAGE1", "PSID1", "m_1")))

    with pytest.raises(WebhookVerificationError):
        await services.ingestion.ingest(FB, body, sign(body, "wrong-secret"))

    assert await services.store.list_events() == []


async def test_malformed_body_records_nothing(services, facebook_account):
    body = b"{not json"

    with pytest.raises(ValueError):
        await services.ingestion.ingest(FB, body, sign(body, FACEBOOK_APP_SECRET))

    assert await services.store.list_events() == []


async def test_replay_finishes_unprocessed_events(services, db, facebook_account):
    payload = fb_envelope("PAGE1", fb_message("PAGE1", "PSID5", "m_replay", "left behind"))
    pending = await services.store.record(FB, "message", json.dumps(payload))

    replayed = await services.ingestion.replay_pending()

    assert replayed == [pending.id]
    assert (await services.store.get(pending.id)).processed
    assert await db.find_customer(FB, "PSID5") is not None
    assert await services.ingestion.replay_pending() == []


async def test_replay_skips_failed_unless_asked(services, facebook_account):
    failed = await services.store.record(FB, "message", json.dumps(fb_envelope("NOPE", fb_message("NOPE", "P", "m_z"))))
    await services.store.mark_failed(failed.id, "No FACEBOOK account for page NOPE")

    assert await services.ingestion.replay_pending() == []
    assert await services.ingestion.replay_pending(include_failed=True) == [failed.id]


async def test_unparseable_stored_payload_is_marked_failed(services):
    broken = await services.store.record(FB, "message", "{broken")

    assert await services.ingestion.replay_pending() == []

    event = await services.store.get(broken.id)
    assert not event.processed
    assert "not valid JSON" in event.error_message


async def test_processed_event_is_never_marked_failed(services, facebook_account):
    body = encode(fb_envelope("PAGE1", fb_message("PAGE1", "PSID1", "m_ok")))
    event = await services.ingestion.ingest(FB, body, sign(body, FACEBOOK_APP_SECRET))

    await services.store.mark_failed(event.id, "late failure")

    stored = await services.store.get(event.id)
    assert stored.processed and stored.error_message is None


async def test_async_mode_processes_through_the_queue(settings, db, fb_client, wa_client, redis_client,
                                                      facebook_account):
    settings.PROCESSING_ASYNC_ENABLED = True
    settings.PROCESSING_WORKERS = 2
    container = MessagingServices(
        settings, db, clients={FB: fb_client, MessagingPlatform.WHATSAPP: wa_client}, redis_client=redis_client
    )
    await container.start()
    try:
        body = encode(fb_envelope("PAGE1", fb_message("PAGE1", "PSID9", "m_async", "queued")))
        event = await container.ingestion.ingest(FB, body, sign(body, FACEBOOK_APP_SECRET))
        await container.queue.join()

        assert (await container.store.get(event.id)).processed
        assert container.queue.processed_count == 1
    finally:
        await container.stop()


async def test_non_object_entries_are_recorded_and_failed(services, facebook_account):
    body = encode({"object": "page", "entry": [None]})

    event = await services.ingestion.ingest(FB, body, sign(body, FACEBOOK_APP_SECRET))

    stored = await services.store.get(event.id)
    assert stored.event_type == "malformed"
    assert not stored.processed
    assert "expected object" in stored.error_message
    assert len(await services.store.list_events()) == 1


async def test_malformed_item_does_not_block_its_siblings(services, db, facebook_account):
    payload = fb_envelope("PAGE1", fb_message("PAGE1", "PSID1", "m_good", "still here"))
    payload["entry"][0]["messaging"].append("garbage")
    body = encode(payload)

    event = await services.ingestion.ingest(FB, body, sign(body, FACEBOOK_APP_SECRET))

    stored = await services.store.get(event.id)
    assert not stored.processed
    assert "messaging item is str" in stored.error_message
    assert await db.find_message_by_platform_id("m_good") is not None


async def test_stored_non_object_payload_is_marked_failed(services):
    stored = await services.store.record(FB, "unknown", json.dumps(["not", "an", "object"]))

    assert await services.ingestion.replay_pending() == []
    assert "not valid JSON" in (await services.store.get(stored.id)).error_message
