"""
Messaging Models
Canonical accounts, customers, conversations and messages shared by both platforms
"""
from datetime import datetime, timedelta
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field

from chatbridge.utils.time import utc_now


class MessagingPlatform(str, Enum):
    FACEBOOK = "FACEBOOK"
    WHATSAPP = "WHATSAPP"

    @property
    def display_name(self) -> str:
        return "WhatsApp" if self is MessagingPlatform.WHATSAPP else "Facebook"


class MessageType(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    DOCUMENT = "DOCUMENT"
    AUDIO = "AUDIO"
    VIDEO = "VIDEO"
    TEMPLATE = "TEMPLATE"
    LOCATION = "LOCATION"
    CONTACT = "CONTACT"


class MessageStatus(str, Enum):
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    READ = "READ"
    FAILED = "FAILED"


class AttachmentType(str, Enum):
    IMAGE = "IMAGE"
    DOCUMENT = "DOCUMENT"
    AUDIO = "AUDIO"
    VIDEO = "VIDEO"
    FILE = "FILE"


# Statuses a message may move to from each status. READ and FAILED are terminal.
STATUS_TRANSITIONS: Dict[MessageStatus, Tuple[MessageStatus, ...]] = {
    MessageStatus.SENT: (MessageStatus.DELIVERED, MessageStatus.READ, MessageStatus.FAILED),
    MessageStatus.DELIVERED: (MessageStatus.READ, MessageStatus.FAILED),
    MessageStatus.READ: (),
    MessageStatus.FAILED: (),
}


def allowed_previous_statuses(target: MessageStatus) -> List[MessageStatus]:
    """Statuses from which a message may move to target"""
    return [source for source, targets in STATUS_TRANSITIONS.items() if target in targets]


# ============================================
# ACCOUNTS
# ============================================

class FacebookAccountDetails(BaseModel):
    """Facebook Page identifiers"""
    platform: Literal[MessagingPlatform.FACEBOOK] = MessagingPlatform.FACEBOOK
    page_id: str = Field(..., min_length=1, description="Facebook Page ID")


class WhatsAppAccountDetails(BaseModel):
    """WhatsApp Business identifiers"""
    platform: Literal[MessagingPlatform.WHATSAPP] = MessagingPlatform.WHATSAPP
    phone_number_id: str = Field(..., min_length=1, description="WhatsApp phone number ID")
    business_account_id: Optional[str] = Field(None, description="WhatsApp Business Account ID")


AccountDetails = Annotated[
    Union[FacebookAccountDetails, WhatsAppAccountDetails],
    Field(discriminator="platform")
]


class MessagingAccount(BaseModel):
    """A business's connection to one Facebook Page or one WhatsApp number"""

    id: int
    owner_user_id: str
    account_name: Optional[str] = None
    details: AccountDetails
    access_token: str
    webhook_verify_token: Optional[str] = None
    webhook_secret: Optional[str] = Field(None, description="Per-account app secret overriding the platform secret")
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def platform(self) -> MessagingPlatform:
        return self.details.platform

    @property
    def page_id(self) -> Optional[str]:
        return self.details.page_id if isinstance(self.details, FacebookAccountDetails) else None

    @property
    def phone_number_id(self) -> Optional[str]:
        return self.details.phone_number_id if isinstance(self.details, WhatsAppAccountDetails) else None

    @property
    def business_account_id(self) -> Optional[str]:
        return self.details.business_account_id if isinstance(self.details, WhatsAppAccountDetails) else None

    @property
    def external_id(self) -> str:
        """Identifier the platform uses for this account in webhooks and API paths"""
        return self.page_id if self.platform == MessagingPlatform.FACEBOOK else self.phone_number_id

    def to_public_dict(self) -> Dict[str, Any]:
        """Account as returned by the API (credentials omitted)"""
        data = self.model_dump(mode="json", exclude={"access_token", "webhook_secret"})
        data["platform"] = self.platform.value
        data["has_webhook_secret"] = bool(self.webhook_secret)
        return data


# ============================================
# CUSTOMERS
# ============================================

class MessagingCustomer(BaseModel):
    """An external person identified by a platform-scoped id"""

    id: int
    platform: MessagingPlatform
    platform_customer_id: str
    display_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_picture_url: Optional[str] = None
    phone_number: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    profile_fetched: bool = False
    profile_fetch_attempted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def identity_key(self) -> Tuple[str, str]:
        """Natural key: the same person on the same platform, whichever account they message"""
        return (self.platform.value, self.platform_customer_id)

    def has_complete_profile(self) -> bool:
        return self.profile_fetched and bool(self.first_name) and bool(self.last_name)

    def best_display_name(self) -> str:
        if self.display_name and self.display_name.strip():
            return self.display_name.strip()
        first = (self.first_name or "").strip()
        last = (self.last_name or "").strip()
        if first and last:
            return f"{first} {last}"
        if first:
            return first
        if last:
            return last
        return f"{self.platform.display_name} User"

    def should_retry_profile_fetch(self, now: Optional[datetime] = None,
                                   refetch_after: timedelta = timedelta(hours=24)) -> bool:
        if self.profile_fetched:
            return False
        if self.profile_fetch_attempted_at is None:
            return True
        now = now or utc_now()
        return self.profile_fetch_attempted_at < now - refetch_after


# ============================================
# CONVERSATIONS & MESSAGES
# ============================================

class Conversation(BaseModel):
    id: int
    account_id: int
    customer_id: int
    conversation_name: Optional[str] = None
    last_message_at: Optional[datetime] = None
    unread_count: int = 0
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def conversation_lock_key(account_id: int, customer_id: int) -> str:
    """Lock key for a conversation, usable before the row exists"""
    return f"conversation:{account_id}:{customer_id}"


class MessageAttachment(BaseModel):
    id: Optional[int] = None
    message_id: Optional[int] = None
    attachment_type: AttachmentType
    file_url: Optional[str] = None
    file_path: Optional[str] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    original_filename: Optional[str] = None
    created_at: Optional[datetime] = None


class Message(BaseModel):
    id: int
    conversation_id: int
    account_id: int
    customer_id: int
    platform_message_id: Optional[str] = None
    sender_id: Optional[str] = None
    recipient_id: Optional[str] = None
    message_type: MessageType = MessageType.TEXT
    content: Optional[str] = None
    is_inbound: bool
    status: MessageStatus = MessageStatus.SENT
    sent_by_user_id: Optional[str] = None
    timestamp: datetime
    created_at: Optional[datetime] = None
    attachments: List[MessageAttachment] = Field(default_factory=list)


class WebhookEvent(BaseModel):
    """Immutable audit record of one webhook delivery"""

    id: int
    platform: MessagingPlatform
    event_type: str
    raw_payload: str
    processed: bool = False
    error_message: Optional[str] = None
    account_id: Optional[int] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


# ============================================
# REQUEST / RESPONSE MODELS
# ============================================

class AccountCreateRequest(BaseModel):
    """Request model for connecting a Facebook Page or WhatsApp number"""
    account_name: Optional[str] = Field(None, description="Display name for the account")
    details: AccountDetails = Field(..., description="Platform identifiers, tagged by platform")
    access_token: str = Field(..., min_length=1, description="Page or system-user access token")
    webhook_verify_token: Optional[str] = Field(None, description="Token expected in the webhook handshake")
    webhook_secret: Optional[str] = Field(None, description="App secret used to verify webhook signatures")
    validate_access: bool = Field(False, description="Check the token against the platform before saving")

    class Config:
        """Pydantic configuration"""
        json_schema_extra = {
            "example": {
                "account_name": "Main Store Page",
                "details": {"platform": "FACEBOOK", "page_id": "104857362819"},
                "access_token": "EAAG...",
                "webhook_verify_token": "my-verify-token"
            }
        }


class AccountUpdateRequest(BaseModel):
    """Request model for editing a connected account. Platform identifiers cannot change."""
    account_name: Optional[str] = Field(None, description="Display name for the account")
    access_token: Optional[str] = Field(None, min_length=1, description="Replacement access token")
    webhook_verify_token: Optional[str] = Field(None, description="Token expected in the webhook handshake")
    webhook_secret: Optional[str] = Field(None, description="App secret used to verify webhook signatures")
    validate_access: bool = Field(False, description="Check a replacement token against the platform before saving")


class CustomerUpdateRequest(BaseModel):
    """Request model for staff edits to a customer's contact details. Omitted fields are left unchanged."""
    display_name: Optional[str] = Field(None, max_length=255)
    first_name: Optional[str] = Field(None, max_length=255)
    last_name: Optional[str] = Field(None, max_length=255)
    phone_number: Optional[str] = Field(None, max_length=50)
    email: Optional[str] = Field(None, max_length=255)
    address: Optional[str] = Field(None, max_length=1000)


class SendMessageRequest(BaseModel):
    """Request model for sending a text reply in a conversation"""
    content: str = Field(..., min_length=1, max_length=4096, description="Message text")
    message_type: MessageType = Field(MessageType.TEXT, description="TEXT, or TEMPLATE with template_name")
    template_name: Optional[str] = Field(None, description="WhatsApp approved template to send instead of text")
    language_code: str = Field("en_US", description="Template language")


class PageResponse(BaseModel):
    """Paginated list response"""
    items: List[Dict[str, Any]]
    page: int
    size: int
    total: int
