"""
Webhook Models
Canonical events parsed out of Facebook Messenger and WhatsApp Cloud webhook payloads
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from chatbridge.models.messaging import (
    AttachmentType,
    MessageStatus,
    MessageType,
    MessagingPlatform,
)


class AccountRef(BaseModel):
    """How a webhook event identifies the receiving account"""
    platform: MessagingPlatform
    page_id: Optional[str] = None
    phone_number_id: Optional[str] = None
    business_account_id: Optional[str] = None

    def describe(self) -> str:
        if self.page_id:
            return f"page_id={self.page_id}"
        if self.phone_number_id:
            return f"phone_number_id={self.phone_number_id}"
        return f"business_account_id={self.business_account_id}"


class ParsedAttachment(BaseModel):
    attachment_type: AttachmentType
    file_url: Optional[str] = None
    mime_type: Optional[str] = None
    original_filename: Optional[str] = None
    file_size: Optional[int] = None


class CustomerProfileHint(BaseModel):
    """Profile data carried inline in the webhook (WhatsApp contacts block)"""
    display_name: Optional[str] = None
    phone_number: Optional[str] = None


class ParsedMessageEvent(BaseModel):
    """A message sent by a customer, or an echo of a message sent by the business"""
    kind: str = "message"
    account: AccountRef
    platform_message_id: Optional[str] = None
    customer_external_id: str
    sender_id: str
    recipient_id: Optional[str] = None
    is_inbound: bool
    message_type: MessageType = MessageType.TEXT
    content: Optional[str] = None
    timestamp: datetime
    attachments: List[ParsedAttachment] = Field(default_factory=list)
    profile_hint: Optional[CustomerProfileHint] = None


class ParsedStatusEvent(BaseModel):
    """
    Delivery/read/failure update for outbound messages.

    Either platform_message_ids names the messages directly, or watermark
    covers every outbound message in the customer's conversation sent at or
    before that instant (Messenger read receipts).
    """
    kind: str = "status"
    account: AccountRef
    status: MessageStatus
    customer_external_id: Optional[str] = None
    platform_message_ids: List[str] = Field(default_factory=list)
    watermark: Optional[datetime] = None
    error_message: Optional[str] = None


ParsedEvent = Union[ParsedMessageEvent, ParsedStatusEvent]


class RawEventUnit(BaseModel):
    """One independently processed unit split out of a webhook envelope"""
    platform: MessagingPlatform
    account: AccountRef
    index: int
    body: Dict[str, Any]
    context: Dict[str, Any] = Field(default_factory=dict)

    def label(self) -> str:
        return f"{self.platform.value}[{self.index}] {self.account.describe()}"


class ReplayResponse(BaseModel):
    """Response model for webhook replay"""
    submitted: int
    event_ids: List[int] = Field(default_factory=list)
