"""Pydantic models"""
from .messaging import (
    AccountCreateRequest,
    AccountUpdateRequest,
    AttachmentType,
    Conversation,
    CustomerUpdateRequest,
    FacebookAccountDetails,
    Message,
    MessageAttachment,
    MessageStatus,
    MessageType,
    MessagingAccount,
    MessagingCustomer,
    MessagingPlatform,
    SendMessageRequest,
    WebhookEvent,
    WhatsAppAccountDetails,
)
from .events import MessagingEvent, MessagingEventType
from .user import User

__all__ = [
    "AccountCreateRequest",
    "AccountUpdateRequest",
    "AttachmentType",
    "Conversation",
    "CustomerUpdateRequest",
    "FacebookAccountDetails",
    "Message",
    "MessageAttachment",
    "MessageStatus",
    "MessageType",
    "MessagingAccount",
    "MessagingCustomer",
    "MessagingPlatform",
    "SendMessageRequest",
    "WebhookEvent",
    "WhatsAppAccountDetails",
    "MessagingEvent",
    "MessagingEventType",
    "User",
]
