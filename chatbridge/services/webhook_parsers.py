"""
Webhook Parsers
Split Facebook Messenger and WhatsApp Cloud webhook envelopes into independent
units and turn each unit into a canonical message or status event.
"""
import logging
from typing import Any, Dict, List, Optional

from chatbridge.exceptions import UnsupportedEventError
from chatbridge.models.messaging import AttachmentType, MessageStatus, MessageType, MessagingPlatform
from chatbridge.models.webhook import (
    AccountRef,
    CustomerProfileHint,
    ParsedAttachment,
    ParsedEvent,
    ParsedMessageEvent,
    ParsedStatusEvent,
    RawEventUnit,
)
from chatbridge.utils.time import from_platform_timestamp

logger = logging.getLogger(__name__)


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _malformed(kind: str, value: Any) -> Dict[str, Any]:
    """Body of a unit that fails on its own instead of sinking the delivery"""
    return {"malformed": f"{kind} is {type(value).__name__}, expected object"}


class FacebookWebhookParser:
    """Messenger Platform webhook (object == "page")"""

    platform = MessagingPlatform.FACEBOOK
    expected_object = "page"

    ATTACHMENT_TYPES = {
        "image": (AttachmentType.IMAGE, MessageType.IMAGE),
        "video": (AttachmentType.VIDEO, MessageType.VIDEO),
        "audio": (AttachmentType.AUDIO, MessageType.AUDIO),
        "file": (AttachmentType.DOCUMENT, MessageType.DOCUMENT),
    }

    def account_refs(self, payload: Dict[str, Any]) -> List[AccountRef]:
        refs = []
        for entry in _as_list(payload.get("entry")):
            if isinstance(entry, dict) and entry.get("id"):
                refs.append(AccountRef(platform=self.platform, page_id=str(entry["id"])))
        return refs

    def event_type(self, payload: Dict[str, Any]) -> str:
        kinds = set()
        for entry in _as_list(payload.get("entry")):
            if not isinstance(entry, dict):
                kinds.add("malformed")
                continue
            for item in _as_list(entry.get("messaging")):
                if not isinstance(item, dict):
                    kinds.add("malformed")
                    continue
                kinds.update(key for key in ("message", "delivery", "read", "postback", "reaction") if key in item)
        return ",".join(sorted(kinds)) or "unknown"

    def split(self, payload: Dict[str, Any]) -> List[RawEventUnit]:
        if payload.get("object") != self.expected_object:
            raise UnsupportedEventError(f"Unexpected webhook object: {payload.get('object')!r}")

        units = []
        for entry in _as_list(payload.get("entry")):
            if not isinstance(entry, dict):
                units.append(RawEventUnit(platform=self.platform, account=AccountRef(platform=self.platform),
                                          index=len(units), body=_malformed("entry", entry)))
                continue
            page_id = str(entry.get("id") or "")
            account = AccountRef(platform=self.platform, page_id=page_id)
            for item in _as_list(entry.get("messaging")):
                body = item if isinstance(item, dict) else _malformed("messaging item", item)
                units.append(RawEventUnit(platform=self.platform, account=account, index=len(units), body=body))
        return units

    def parse(self, unit: RawEventUnit) -> ParsedEvent:
        item = unit.body
        if "malformed" in item:
            raise UnsupportedEventError(f"Malformed Messenger webhook: {item['malformed']}")
        page_id = unit.account.page_id
        sender_id = str(_as_dict(item.get("sender")).get("id") or "")
        recipient_id = str(_as_dict(item.get("recipient")).get("id") or "")

        if "message" in item:
            message = item["message"]
            if not isinstance(message, dict):
                raise UnsupportedEventError("Messenger message is not an object")
            return self._parse_message(unit, message, sender_id, recipient_id, item.get("timestamp"))

        if "delivery" in item:
            delivery = _as_dict(item["delivery"])
            return ParsedStatusEvent(
                account=unit.account,
                status=MessageStatus.DELIVERED,
                customer_external_id=sender_id or None,
                platform_message_ids=[str(mid) for mid in delivery.get("mids") or []],
                watermark=from_platform_timestamp(delivery["watermark"]) if delivery.get("watermark") else None,
            )

        if "read" in item:
            read = _as_dict(item["read"])
            if not read.get("watermark"):
                raise UnsupportedEventError("Messenger read event without watermark")
            return ParsedStatusEvent(
                account=unit.account,
                status=MessageStatus.READ,
                customer_external_id=sender_id or None,
                watermark=from_platform_timestamp(read["watermark"]),
            )

        kinds = sorted(key for key in item.keys() if key not in ("sender", "recipient", "timestamp"))
        raise UnsupportedEventError(f"Unsupported Messenger event for page {page_id}: {kinds}")

    def _parse_message(self, unit: RawEventUnit, message: Dict[str, Any], sender_id: str,
                       recipient_id: str, timestamp: Any) -> ParsedMessageEvent:
        page_id = unit.account.page_id
        is_echo = bool(message.get("is_echo")) or sender_id == page_id
        customer_id = recipient_id if is_echo else sender_id
        if not customer_id:
            raise UnsupportedEventError("Messenger message without sender")

        text = message.get("text")
        message_type = MessageType.TEXT
        attachments: List[ParsedAttachment] = []

        for raw in message.get("attachments") or []:
            raw_type = raw.get("type")
            payload = raw.get("payload") or {}
            if raw_type in self.ATTACHMENT_TYPES:
                attachment_type, attachment_message_type = self.ATTACHMENT_TYPES[raw_type]
                attachments.append(ParsedAttachment(attachment_type=attachment_type, file_url=payload.get("url")))
                if not text and message_type == MessageType.TEXT:
                    message_type = attachment_message_type
            elif raw_type == "location":
                coordinates = payload.get("coordinates") or {}
                text = text or f"{coordinates.get('lat')},{coordinates.get('long')}"
                message_type = MessageType.LOCATION
            elif raw_type in ("template", "fallback"):
                text = text or raw.get("title") or payload.get("url")
                message_type = MessageType.TEMPLATE
            else:
                raise UnsupportedEventError(f"Unsupported Messenger attachment type: {raw_type!r}")

        if text is None and not attachments:
            raise UnsupportedEventError("Messenger message without text or attachments")

        return ParsedMessageEvent(
            account=unit.account,
            platform_message_id=message.get("mid"),
            customer_external_id=customer_id,
            sender_id=sender_id,
            recipient_id=recipient_id or None,
            is_inbound=not is_echo,
            message_type=message_type,
            content=text,
            timestamp=from_platform_timestamp(timestamp, unit="ms"),
            attachments=attachments,
        )


class WhatsAppWebhookParser:
    """WhatsApp Cloud API webhook (object == "whatsapp_business_account")"""

    platform = MessagingPlatform.WHATSAPP
    expected_object = "whatsapp_business_account"

    STATUS_MAP = {
        "sent": MessageStatus.SENT,
        "delivered": MessageStatus.DELIVERED,
        "read": MessageStatus.READ,
        "failed": MessageStatus.FAILED,
    }

    MEDIA_TYPES = {
        "image": (AttachmentType.IMAGE, MessageType.IMAGE),
        "sticker": (AttachmentType.IMAGE, MessageType.IMAGE),
        "video": (AttachmentType.VIDEO, MessageType.VIDEO),
        "audio": (AttachmentType.AUDIO, MessageType.AUDIO),
        "document": (AttachmentType.DOCUMENT, MessageType.DOCUMENT),
    }

    def _account_ref(self, entry: Dict[str, Any], value: Dict[str, Any]) -> AccountRef:
        metadata = _as_dict(value.get("metadata"))
        return AccountRef(
            platform=self.platform,
            phone_number_id=str(metadata["phone_number_id"]) if metadata.get("phone_number_id") else None,
            business_account_id=str(entry["id"]) if entry.get("id") else None,
        )

    def account_refs(self, payload: Dict[str, Any]) -> List[AccountRef]:
        refs = []
        for entry in _as_list(payload.get("entry")):
            if not isinstance(entry, dict):
                continue
            for change in _as_list(entry.get("changes")):
                if isinstance(change, dict):
                    refs.append(self._account_ref(entry, _as_dict(change.get("value"))))
        return refs

    def event_type(self, payload: Dict[str, Any]) -> str:
        kinds = set()
        for entry in _as_list(payload.get("entry")):
            if not isinstance(entry, dict):
                kinds.add("malformed")
                continue
            for change in _as_list(entry.get("changes")):
                if not isinstance(change, dict):
                    kinds.add("malformed")
                    continue
                value = _as_dict(change.get("value"))
                if value.get("messages"):
                    kinds.add("messages")
                if value.get("statuses"):
                    kinds.add("statuses")
                if change.get("field") and change.get("field") != "messages":
                    kinds.add(str(change["field"]))
        return ",".join(sorted(kinds)) or "unknown"

    def split(self, payload: Dict[str, Any]) -> List[RawEventUnit]:
        if payload.get("object") != self.expected_object:
            raise UnsupportedEventError(f"Unexpected webhook object: {payload.get('object')!r}")

        units: List[RawEventUnit] = []
        for entry in _as_list(payload.get("entry")):
            if not isinstance(entry, dict):
                units.append(RawEventUnit(platform=self.platform, account=AccountRef(platform=self.platform),
                                          index=len(units), body=_malformed("entry", entry)))
                continue
            for change in _as_list(entry.get("changes")):
                if not isinstance(change, dict):
                    units.append(RawEventUnit(platform=self.platform, account=AccountRef(platform=self.platform),
                                              index=len(units), body=_malformed("change", change)))
                    continue
                value = _as_dict(change.get("value"))
                account = self._account_ref(entry, value)

                if change.get("field") not in (None, "messages"):
                    units.append(RawEventUnit(platform=self.platform, account=account, index=len(units),
                                              body={"field": change.get("field")}))
                    continue

                contacts = {
                    str(contact.get("wa_id")): _as_dict(contact.get("profile")).get("name")
                    for contact in _as_list(value.get("contacts"))
                    if isinstance(contact, dict) and contact.get("wa_id")
                }
                for message in _as_list(value.get("messages")):
                    body = {"message": message} if isinstance(message, dict) else _malformed("message", message)
                    units.append(RawEventUnit(platform=self.platform, account=account, index=len(units),
                                              body=body, context={"contacts": contacts}))
                for status in _as_list(value.get("statuses")):
                    body = {"status": status} if isinstance(status, dict) else _malformed("status", status)
                    units.append(RawEventUnit(platform=self.platform, account=account, index=len(units), body=body))
        return units

    def parse(self, unit: RawEventUnit) -> ParsedEvent:
        if "malformed" in unit.body:
            raise UnsupportedEventError(f"Malformed WhatsApp webhook: {unit.body['malformed']}")
        if "message" in unit.body:
            return self._parse_message(unit, unit.body["message"], unit.context.get("contacts") or {})
        if "status" in unit.body:
            return self._parse_status(unit, unit.body["status"])
        raise UnsupportedEventError(f"Unsupported WhatsApp webhook field: {unit.body.get('field')!r}")

    def _parse_message(self, unit: RawEventUnit, message: Dict[str, Any],
                       contacts: Dict[str, Optional[str]]) -> ParsedMessageEvent:
        wa_id = str(message.get("from") or "")
        if not wa_id:
            raise UnsupportedEventError("WhatsApp message without sender")

        raw_type = message.get("type")
        content: Optional[str] = None
        message_type = MessageType.TEXT
        attachments: List[ParsedAttachment] = []

        if raw_type == "text":
            content = (message.get("text") or {}).get("body")
        elif raw_type in self.MEDIA_TYPES:
            media = message.get(raw_type) or {}
            attachment_type, message_type = self.MEDIA_TYPES[raw_type]
            content = media.get("caption") or media.get("filename")
            attachments.append(ParsedAttachment(
                attachment_type=attachment_type,
                file_url=media.get("link") or media.get("url"),
                mime_type=media.get("mime_type"),
                original_filename=media.get("filename"),
            ))
        elif raw_type == "location":
            location = message.get("location") or {}
            label = " ".join(part for part in (location.get("name"), location.get("address")) if part)
            coordinates = f"{location.get('latitude')},{location.get('longitude')}"
            content = f"{label} ({coordinates})" if label else coordinates
            message_type = MessageType.LOCATION
        elif raw_type == "contacts":
            names = [
                (contact.get("name") or {}).get("formatted_name") or ""
                for contact in message.get("contacts") or []
            ]
            content = ", ".join(name for name in names if name) or None
            message_type = MessageType.CONTACT
        elif raw_type == "button":
            content = (message.get("button") or {}).get("text")
        elif raw_type == "interactive":
            interactive = message.get("interactive") or {}
            reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
            content = reply.get("title")
        else:
            raise UnsupportedEventError(f"Unsupported WhatsApp message type: {raw_type!r}")

        return ParsedMessageEvent(
            account=unit.account,
            platform_message_id=message.get("id"),
            customer_external_id=wa_id,
            sender_id=wa_id,
            recipient_id=unit.account.phone_number_id,
            is_inbound=True,
            message_type=message_type,
            content=content,
            timestamp=from_platform_timestamp(message.get("timestamp"), unit="s"),
            attachments=attachments,
            profile_hint=CustomerProfileHint(display_name=contacts.get(wa_id), phone_number=wa_id),
        )

    def _parse_status(self, unit: RawEventUnit, status: Dict[str, Any]) -> ParsedStatusEvent:
        raw_status = status.get("status")
        if raw_status not in self.STATUS_MAP:
            raise UnsupportedEventError(f"Unsupported WhatsApp status: {raw_status!r}")
        if not status.get("id"):
            raise UnsupportedEventError("WhatsApp status without message id")

        error_message = None
        if raw_status == "failed":
            errors = status.get("errors") or [{}]
            error_message = errors[0].get("title") or errors[0].get("message")

        return ParsedStatusEvent(
            account=unit.account,
            status=self.STATUS_MAP[raw_status],
            customer_external_id=status.get("recipient_id"),
            platform_message_ids=[str(status["id"])],
            error_message=error_message,
        )


_PARSERS = {
    MessagingPlatform.FACEBOOK: FacebookWebhookParser(),
    MessagingPlatform.WHATSAPP: WhatsAppWebhookParser(),
}


def get_parser(platform: MessagingPlatform):
    return _PARSERS[platform]
