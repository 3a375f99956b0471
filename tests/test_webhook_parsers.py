from datetime import datetime, timezone

import pytest

from chatbridge.exceptions import UnsupportedEventError
from chatbridge.models.messaging import AttachmentType, MessageStatus, MessageType, MessagingPlatform
from chatbridge.models.webhook import ParsedMessageEvent, ParsedStatusEvent
from chatbridge.services.webhook_parsers import FacebookWebhookParser, WhatsAppWebhookParser, get_parser

from helpers import fb_delivery, fb_envelope, fb_message, fb_read, wa_contact, wa_envelope, wa_status, wa_text


@pytest.fixture
def fb():
    return FacebookWebhookParser()


@pytest.fixture
def wa():
    return WhatsAppWebhookParser()


def test_get_parser_by_platform():
    assert isinstance(get_parser(MessagingPlatform.FACEBOOK), FacebookWebhookParser)
    assert isinstance(get_parser(MessagingPlatform.WHATSAPP), WhatsAppWebhookParser)


# ============================================
# FACEBOOK MESSENGER
# ============================================

def test_facebook_inbound_text(fb):
    payload = fb_envelope("PAGE1", fb_message("PAGE1", "PSID1", "m_1", "Hello there", 1700000000123))

    units = fb.split(payload)
    assert len(units) == 1
    assert units[0].account.page_id == "PAGE1"

    event = fb.parse(units[0])
    assert isinstance(event, ParsedMessageEvent)
    assert event.is_inbound
    assert event.customer_external_id == "PSID1"
    assert event.platform_message_id == "m_1"
    assert event.content == "Hello there"
    assert event.message_type == MessageType.TEXT
    assert event.timestamp == datetime.fromtimestamp(1700000000.123, tz=timezone.utc)


def test_facebook_echo_belongs_to_recipient(fb):
    payload = fb_envelope("PAGE1", fb_message("PAGE1", "PSID1", "m_2", "Reply", is_echo=True))

    event = fb.parse(fb.split(payload)[0])

    assert not event.is_inbound
    assert event.customer_external_id == "PSID1"
    assert event.sender_id == "PAGE1"


def test_facebook_attachment_without_text(fb):
    attachments = [{"type": "image", "payload": {"url": "https://cdn.example.com/a.jpg"}}]
    payload = fb_envelope("PAGE1", fb_message("PAGE1", "PSID1", "m_3", None, attachments=attachments))

    event = fb.parse(fb.split(payload)[0])

    assert event.message_type == MessageType.IMAGE
    assert event.content is None
    assert event.attachments[0].attachment_type == AttachmentType.IMAGE
    assert event.attachments[0].file_url == "https://cdn.example.com/a.jpg"


def test_facebook_location_attachment(fb):
    attachments = [{"type": "location", "payload": {"coordinates": {"lat": 1.5, "long": 103.8}}}]
    payload = fb_envelope("PAGE1", fb_message("PAGE1", "PSID1", "m_4", None, attachments=attachments))

    event = fb.parse(fb.split(payload)[0])

    assert event.message_type == MessageType.LOCATION
    assert event.content == "1.5,103.8"


def test_facebook_delivery_with_mids(fb):
    payload = fb_envelope("PAGE1", fb_delivery("PAGE1", "PSID1", mids=["m_a", "m_b"], watermark=1700000000000))

    event = fb.parse(fb.split(payload)[0])

    assert isinstance(event, ParsedStatusEvent)
    assert event.status == MessageStatus.DELIVERED
    assert event.platform_message_ids == ["m_a", "m_b"]


def test_facebook_read_uses_watermark(fb):
    payload = fb_envelope("PAGE1", fb_read("PAGE1", "PSID1", 1700000005000))

    event = fb.parse(fb.split(payload)[0])

    assert event.status == MessageStatus.READ
    assert event.customer_external_id == "PSID1"
    assert event.platform_message_ids == []
    assert event.watermark == datetime.fromtimestamp(1700000005, tz=timezone.utc)


def test_facebook_unknown_event_raises_on_parse_only(fb):
    postback = {"sender": {"id": "PSID1"}, "recipient": {"id": "PAGE1"}, "timestamp": 1,
                "postback": {"payload": "GET_STARTED"}}
    payload = fb_envelope("PAGE1", postback, fb_message("PAGE1", "PSID1", "m_5"))

    units = fb.split(payload)
    assert len(units) == 2
    with pytest.raises(UnsupportedEventError):
        fb.parse(units[0])
    assert fb.parse(units[1]).platform_message_id == "m_5"


def test_facebook_wrong_object_rejected(fb):
    with pytest.raises(UnsupportedEventError):
        fb.split({"object": "instagram", "entry": []})


def test_facebook_event_type_summary(fb):
    payload = fb_envelope("PAGE1", fb_message("PAGE1", "PSID1", "m_6"), fb_read("PAGE1", "PSID1", 5))
    assert fb.event_type(payload) == "message,read"


# ============================================
# WHATSAPP CLOUD
# ============================================

def test_whatsapp_text_with_contact_name(wa):
    payload = wa_envelope(
        "PHONE1",
        messages=[wa_text("15551234567", "wamid.1", "Hi there", 1700000000)],
        contacts=[wa_contact("15551234567", "Ana Silva")],
    )

    units = wa.split(payload)
    event = wa.parse(units[0])

    assert units[0].account.phone_number_id == "PHONE1"
    assert units[0].account.business_account_id == "WABA1"
    assert event.is_inbound
    assert event.content == "Hi there"
    assert event.customer_external_id == "15551234567"
    assert event.profile_hint.display_name == "Ana Silva"
    assert event.profile_hint.phone_number == "15551234567"
    assert event.timestamp == datetime.fromtimestamp(1700000000, tz=timezone.utc)


def test_whatsapp_document_message(wa):
    document = {"from": "15551234567", "id": "wamid.2", "timestamp": "1700000000", "type": "document",
                "document": {"filename": "invoice.pdf", "mime_type": "application/pdf", "id": "media-1"}}
    event = wa.parse(wa.split(wa_envelope("PHONE1", messages=[document]))[0])

    assert event.message_type == MessageType.DOCUMENT
    assert event.content == "invoice.pdf"
    assert event.attachments[0].mime_type == "application/pdf"


def test_whatsapp_failed_status_carries_error(wa):
    payload = wa_envelope("PHONE1", statuses=[wa_status("wamid.9", "failed", error_title="Message undeliverable")])

    event = wa.parse(wa.split(payload)[0])

    assert event.status == MessageStatus.FAILED
    assert event.platform_message_ids == ["wamid.9"]
    assert event.error_message == "Message undeliverable"


def test_whatsapp_messages_and_statuses_split_independently(wa):
    payload = wa_envelope(
        "PHONE1",
        messages=[wa_text("1555", "wamid.a"), wa_text("1555", "wamid.b")],
        statuses=[wa_status("wamid.c", "delivered")],
    )

    units = wa.split(payload)

    assert [unit.index for unit in units] == [0, 1, 2]
    assert wa.event_type(payload) == "messages,statuses"


def test_whatsapp_unsupported_message_type(wa):
    reaction = {"from": "1555", "id": "wamid.r", "timestamp": "1700000000", "type": "reaction",
                "reaction": {"emoji": "👍", "message_id": "wamid.a"}}
    units = wa.split(wa_envelope("PHONE1", messages=[reaction]))

    with pytest.raises(UnsupportedEventError):
        wa.parse(units[0])


def test_whatsapp_non_message_field_becomes_failing_unit(wa):
    units = wa.split(wa_envelope("PHONE1", field="account_update"))

    assert len(units) == 1
    with pytest.raises(UnsupportedEventError):
        wa.parse(units[0])


# ============================================
# MALFORMED ENVELOPES
# ============================================

@pytest.mark.parametrize("payload", [
    {"object": "page", "entry": [None]},
    {"object": "page", "entry": [{"id": "PAGE1", "messaging": [7]}]},
    {"object": "page", "entry": "nope"},
])
def test_facebook_malformed_envelope_never_raises_on_split(fb, payload):
    units = fb.split(payload)

    fb.account_refs(payload)
    assert fb.event_type(payload) in ("malformed", "unknown")
    for unit in units:
        with pytest.raises(UnsupportedEventError):
            fb.parse(unit)


def test_facebook_sender_that_is_not_an_object_fails_the_unit(fb):
    item = fb_message("PAGE1", "PSID1", "m_1")
    item["sender"] = "PSID1"

    with pytest.raises(UnsupportedEventError):
        fb.parse(fb.split(fb_envelope("PAGE1", item))[0])


def test_whatsapp_malformed_items_become_failing_units(wa):
    payload = wa_envelope("PHONE1", messages=[wa_text("15551234567", "wamid.ok"), "junk"], statuses=[None])
    payload["entry"].append(42)

    units = wa.split(payload)

    assert len(units) == 4
    assert wa.parse(units[0]).platform_message_id == "wamid.ok"
    for unit in units[1:]:
        with pytest.raises(UnsupportedEventError):
            wa.parse(unit)
    assert wa.event_type(payload) == "malformed,messages,statuses"
    assert [ref.phone_number_id for ref in wa.account_refs(payload)] == ["PHONE1"]
