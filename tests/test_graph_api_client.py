import json

import httpx
import pytest

from chatbridge.exceptions import InvalidTokenError, MessagingApiError, TransientApiError
from chatbridge.models.messaging import FacebookAccountDetails, MessagingAccount, WhatsAppAccountDetails
from chatbridge.services.facebook_service import FacebookService
from chatbridge.services.whatsapp_service import WhatsAppService

BASE_URL = "https://graph.test/v23.0"


def facebook_account() -> MessagingAccount:
    return MessagingAccount(id=1, owner_user_id="user-1", details=FacebookAccountDetails(page_id="PAGE1"),
                            access_token="page-token")


def whatsapp_account() -> MessagingAccount:
    return MessagingAccount(id=2, owner_user_id="user-1", details=WhatsAppAccountDetails(phone_number_id="PHONE1"),
                            access_token="wa-token")


def recording_transport(response: httpx.Response, requests: list) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return response
    return httpx.MockTransport(handler)


def error_response(status_code: int, code=None, message="error") -> httpx.Response:
    error = {"message": message}
    if code is not None:
        error["code"] = code
    return httpx.Response(status_code, json={"error": error})


async def test_facebook_send_text_posts_to_page():
    requests = []
    service = FacebookService(
        BASE_URL, transport=recording_transport(httpx.Response(200, json={"message_id": "m_1"}), requests)
    )

    mid = await service.send_text(facebook_account(), "PSID1", "Hello")

    assert mid == "m_1"
    request = requests[0]
    assert request.method == "POST"
    assert str(request.url) == f"{BASE_URL}/PAGE1/messages"
    assert request.headers["Authorization"] == "Bearer page-token"
    body = json.loads(request.content)
    assert body == {"recipient": {"id": "PSID1"}, "message": {"text": "Hello"}, "messaging_type": "RESPONSE"}


async def test_facebook_fetch_profile_maps_fields():
    requests = []
    response = httpx.Response(200, json={"first_name": "Ana", "last_name": "Silva", "profile_pic": "https://p"})
    service = FacebookService(BASE_URL, transport=recording_transport(response, requests))

    profile = await service.fetch_profile(facebook_account(), "PSID1")

    assert profile == {"first_name": "Ana", "last_name": "Silva", "profile_picture_url": "https://p"}
    assert requests[0].url.params["fields"] == "first_name,last_name,profile_pic"


async def test_missing_message_id_is_an_error():
    service = FacebookService(BASE_URL, transport=recording_transport(httpx.Response(200, json={}), []))

    with pytest.raises(MessagingApiError):
        await service.send_text(facebook_account(), "PSID1", "Hello")


@pytest.mark.parametrize("response, expected", [
    (error_response(401), InvalidTokenError),
    (error_response(400, code=190, message="Session expired"), InvalidTokenError),
    (error_response(500), TransientApiError),
    (error_response(503), TransientApiError),
    (error_response(429), TransientApiError),
    (error_response(400, code=613, message="Calls limit reached"), TransientApiError),
    (error_response(400, code=131056), TransientApiError),
])
async def test_error_classification(response, expected):
    service = FacebookService(BASE_URL, transport=recording_transport(response, []))

    with pytest.raises(expected) as info:
        await service.send_text(facebook_account(), "PSID1", "Hello")

    assert info.value.transient == (expected is TransientApiError)


async def test_permanent_error_is_not_transient():
    service = FacebookService(BASE_URL, transport=recording_transport(error_response(400, code=100), []))

    with pytest.raises(MessagingApiError) as info:
        await service.send_text(facebook_account(), "PSID1", "Hello")

    assert type(info.value) is MessagingApiError
    assert not info.value.transient
    assert info.value.status_code == 400
    assert info.value.error_code == 100


@pytest.mark.parametrize("response, text", [
    (httpx.Response(400, json={"error": "Bad request"}), "Bad request"),
    (httpx.Response(400, json=["unexpected"]), "unexpected"),
    (httpx.Response(403, json={"error": {"code": "abc", "message": "Forbidden"}}), "Forbidden"),
    (httpx.Response(400, text="not json"), "not json"),
])
async def test_irregular_error_bodies_are_permanent_rejections(response, text):
    service = FacebookService(BASE_URL, transport=recording_transport(response, []))

    with pytest.raises(MessagingApiError) as info:
        await service.send_text(facebook_account(), "PSID1", "Hello")

    assert type(info.value) is MessagingApiError
    assert not info.value.transient
    assert info.value.error_code is None
    assert text in str(info.value)


async def test_whatsapp_malformed_success_body_is_an_error():
    response = httpx.Response(200, json={"messages": ["wamid.X"]})
    service = WhatsAppService(BASE_URL, transport=recording_transport(response, []))

    with pytest.raises(MessagingApiError):
        await service.send_text(whatsapp_account(), "15551234567", "Hi")


async def test_network_failure_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    service = FacebookService(BASE_URL, transport=httpx.MockTransport(handler))

    with pytest.raises(TransientApiError):
        await service.send_text(facebook_account(), "PSID1", "Hello")


async def test_whatsapp_send_text():
    requests = []
    response = httpx.Response(200, json={"messaging_product": "whatsapp", "messages": [{"id": "wamid.X"}]})
    service = WhatsAppService(BASE_URL, transport=recording_transport(response, requests))

    wamid = await service.send_text(whatsapp_account(), "15551234567", "Hi")

    assert wamid == "wamid.X"
    assert str(requests[0].url) == f"{BASE_URL}/PHONE1/messages"
    body = json.loads(requests[0].content)
    assert body["to"] == "15551234567"
    assert body["text"]["body"] == "Hi"


async def test_whatsapp_send_template():
    requests = []
    response = httpx.Response(200, json={"messages": [{"id": "wamid.T"}]})
    service = WhatsAppService(BASE_URL, transport=recording_transport(response, requests))

    await service.send_template(whatsapp_account(), "15551234567", "order_update", "pt_BR")

    body = json.loads(requests[0].content)
    assert body["type"] == "template"
    assert body["template"] == {"name": "order_update", "language": {"code": "pt_BR"}}


async def test_whatsapp_mark_seen_needs_message_id():
    requests = []
    service = WhatsAppService(BASE_URL, transport=recording_transport(httpx.Response(200, json={}), requests))

    await service.mark_seen(whatsapp_account(), "15551234567")
    assert requests == []

    await service.mark_seen(whatsapp_account(), "15551234567", last_message_id="wamid.in")
    assert json.loads(requests[0].content) == {
        "messaging_product": "whatsapp", "status": "read", "message_id": "wamid.in"
    }


async def test_whatsapp_has_no_profile_lookup():
    service = WhatsAppService(BASE_URL, transport=recording_transport(httpx.Response(200, json={}), []))

    with pytest.raises(MessagingApiError):
        await service.fetch_profile(whatsapp_account(), "15551234567")
