"""Payload builders and fakes shared by the test modules."""
import hashlib
import hmac
import json
import time
from typing import Any, Dict, List, Optional

from jose import jwt

from chatbridge.exceptions import MessagingApiError

JWT_SECRET = "test-jwt-secret"
JWT_AUDIENCE = "authenticated"
FACEBOOK_APP_SECRET = "fb-app-secret"
WHATSAPP_APP_SECRET = "wa-app-secret"


def make_token(user_id: str = "user-1", role: str = "authenticated", expires_in: int = 3600,
               secret: str = JWT_SECRET, audience: str = JWT_AUDIENCE) -> str:
    claims = {
        "sub": user_id,
        "email": f"{user_id}@example.com",
        "role": role,
        "aud": audience,
        "exp": int(time.time()) + expires_in,
    }
    return jwt.encode(claims, secret, algorithm="HS256")


def auth_headers(user_id: str = "user-1", role: str = "authenticated") -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


def sign(body: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def encode(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload).encode("utf-8")


# ============================================
# FACEBOOK MESSENGER PAYLOADS
# ============================================

def fb_envelope(page_id: str, *items: Dict[str, Any]) -> Dict[str, Any]:
    return {"object": "page", "entry": [{"id": page_id, "time": 1700000000000, "messaging": list(items)}]}


def fb_message(page_id: str, sender_id: str, mid: Optional[str], text: Optional[str] = "hello",
               timestamp_ms: int = 1700000000000, attachments: Optional[List[Dict[str, Any]]] = None,
               is_echo: bool = False) -> Dict[str, Any]:
    message: Dict[str, Any] = {}
    if mid is not None:
        message["mid"] = mid
    if text is not None:
        message["text"] = text
    if attachments:
        message["attachments"] = attachments
    if is_echo:
        message["is_echo"] = True
        return {
            "sender": {"id": page_id},
            "recipient": {"id": sender_id},
            "timestamp": timestamp_ms,
            "message": message,
        }
    return {
        "sender": {"id": sender_id},
        "recipient": {"id": page_id},
        "timestamp": timestamp_ms,
        "message": message,
    }


def fb_delivery(page_id: str, sender_id: str, mids: Optional[List[str]] = None,
                watermark: Optional[int] = None) -> Dict[str, Any]:
    delivery: Dict[str, Any] = {}
    if mids:
        delivery["mids"] = mids
    if watermark is not None:
        delivery["watermark"] = watermark
    return {"sender": {"id": sender_id}, "recipient": {"id": page_id}, "timestamp": watermark or 0,
            "delivery": delivery}


def fb_read(page_id: str, sender_id: str, watermark: int) -> Dict[str, Any]:
    return {"sender": {"id": sender_id}, "recipient": {"id": page_id}, "timestamp": watermark,
            "read": {"watermark": watermark}}


# ============================================
# WHATSAPP CLOUD PAYLOADS
# ============================================

def wa_envelope(phone_number_id: str, business_account_id: str = "WABA1",
                messages: Optional[List[Dict[str, Any]]] = None,
                statuses: Optional[List[Dict[str, Any]]] = None,
                contacts: Optional[List[Dict[str, Any]]] = None,
                field: str = "messages") -> Dict[str, Any]:
    value: Dict[str, Any] = {
        "messaging_product": "whatsapp",
        "metadata": {"display_phone_number": "15550001111", "phone_number_id": phone_number_id},
    }
    if contacts:
        value["contacts"] = contacts
    if messages:
        value["messages"] = messages
    if statuses:
        value["statuses"] = statuses
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": business_account_id, "changes": [{"field": field, "value": value}]}],
    }


def wa_text(wa_id: str, message_id: str, body: str = "hi", timestamp: int = 1700000000) -> Dict[str, Any]:
    return {"from": wa_id, "id": message_id, "timestamp": str(timestamp), "type": "text", "text": {"body": body}}


def wa_contact(wa_id: str, name: str) -> Dict[str, Any]:
    return {"wa_id": wa_id, "profile": {"name": name}}


def wa_status(message_id: str, status: str, recipient_id: str = "15551234567",
              error_title: Optional[str] = None) -> Dict[str, Any]:
    data: Dict[str, Any] = {"id": message_id, "status": status, "timestamp": "1700000100",
                            "recipient_id": recipient_id}
    if error_title:
        data["errors"] = [{"code": 131026, "title": error_title}]
    return data


# ============================================
# FAKE PLATFORM CLIENT
# ============================================

class FakePlatformClient:
    """
    Stands in for FacebookService / WhatsAppService.

    `failures` is consumed one entry per send call: an exception is raised,
    None lets the call succeed.
    """

    def __init__(self, prefix: str = "mid"):
        self.prefix = prefix
        self.sent: List[Dict[str, Any]] = []
        self.failures: List[Optional[Exception]] = []
        self.next_ids: List[str] = []
        self.profiles: Dict[str, Dict[str, Any]] = {}
        self.profile_calls: List[str] = []
        self.seen: List[Dict[str, Any]] = []
        self.validated: List[str] = []
        self.reject_validation: Optional[Exception] = None

    def _next_result(self) -> str:
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure
        if self.next_ids:
            return self.next_ids.pop(0)
        return f"{self.prefix}.{len(self.sent)}"

    async def send_text(self, account, recipient_id: str, text: str) -> str:
        self.sent.append({"account_id": account.id, "to": recipient_id, "text": text})
        return self._next_result()

    async def send_template(self, account, recipient_id: str, template_name: str,
                            language_code: str = "en_US", components=None) -> str:
        self.sent.append({"account_id": account.id, "to": recipient_id, "template": template_name,
                          "language": language_code})
        return self._next_result()

    async def fetch_profile(self, account, user_id: str) -> Dict[str, Any]:
        self.profile_calls.append(user_id)
        if user_id not in self.profiles:
            raise MessagingApiError(f"No profile for {user_id}")
        return self.profiles[user_id]

    async def mark_seen(self, account, recipient_id: str, last_message_id: Optional[str] = None) -> None:
        self.seen.append({"to": recipient_id, "last_message_id": last_message_id})

    async def validate_access(self, details, access_token: str) -> Dict[str, Any]:
        if self.reject_validation is not None:
            raise self.reject_validation
        self.validated.append(access_token)
        return {"id": "ok"}
