"""
Conversations API Endpoints

Staff inbox: conversations, messages, replies and read state.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from chatbridge.api.dependencies import get_services, to_http_exception
from chatbridge.auth.dependencies import get_current_user
from chatbridge.models.messaging import Message, MessageType, MessagingPlatform, PageResponse, SendMessageRequest
from chatbridge.models.user import User
from chatbridge.services.container import MessagingServices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messaging", tags=["messaging"])


# ============ Conversation Endpoints ============

@router.get("/conversations", response_model=PageResponse)
async def list_conversations(
    account_id: Optional[int] = Query(None, description="Only this account"),
    platform: Optional[MessagingPlatform] = Query(None, description="Only this platform"),
    has_unread: Optional[bool] = Query(None, description="Only conversations with (or without) unread messages"),
    is_active: Optional[bool] = Query(None, description="False lists archived conversations"),
    search: Optional[str] = Query(None, description="Match on conversation or customer name"),
    page: int = Query(0, ge=0, description="Page number (0-indexed)"),
    size: int = Query(20, ge=1, le=100, description="Items per page"),
    current_user: User = Depends(get_current_user),
    services: MessagingServices = Depends(get_services),
):
    """
    List conversations across the user's accounts, most recent activity first.
    """
    try:
        items, total = await services.conversations.list_conversations(
            current_user.user_id,
            account_id=account_id,
            platform=platform,
            has_unread=has_unread,
            is_active=is_active,
            search=search,
            page=page,
            size=size,
        )
        return PageResponse(items=items, page=page, size=size, total=total)
    except Exception as e:
        raise to_http_exception(e)


@router.get("/conversations/{conversation_id}", response_model=Dict[str, Any])
async def get_conversation(
    conversation_id: int,
    current_user: User = Depends(get_current_user),
    services: MessagingServices = Depends(get_services),
):
    """Conversation with its customer and the 10 most recent messages"""
    try:
        return await services.conversations.get_conversation_detail(current_user.user_id, conversation_id)
    except Exception as e:
        raise to_http_exception(e)


@router.get("/conversations/{conversation_id}/messages", response_model=PageResponse)
async def list_messages(
    conversation_id: int,
    page: int = Query(0, ge=0),
    size: int = Query(50, ge=1, le=200),
    current_user: User = Depends(get_current_user),
    services: MessagingServices = Depends(get_services),
):
    """Messages of a conversation, newest first"""
    try:
        messages, total = await services.conversations.list_messages(
            current_user.user_id, conversation_id, page=page, size=size
        )
        return PageResponse(
            items=[message.model_dump(mode="json") for message in messages],
            page=page,
            size=size,
            total=total,
        )
    except Exception as e:
        raise to_http_exception(e)


@router.post("/conversations/{conversation_id}/messages", response_model=Message, status_code=201)
async def send_message(
    conversation_id: int,
    request: SendMessageRequest,
    current_user: User = Depends(get_current_user),
    services: MessagingServices = Depends(get_services),
):
    """
    Reply to the customer.

    The message is stored and broadcast before the platform call. A rejected
    or exhausted send leaves it FAILED and answers 502 (429 when throttled).

    Example:
        ```json
        {"content": "Thanks, your order ships today."}
        ```
    """
    try:
        if request.message_type == MessageType.TEMPLATE and not request.template_name:
            raise ValueError("template_name is required for TEMPLATE messages")
        if request.message_type not in (MessageType.TEXT, MessageType.TEMPLATE):
            raise ValueError(f"Sending {request.message_type.value} messages is not supported")

        account, conversation = await services.conversations.get_conversation_for_user(
            current_user.user_id, conversation_id
        )
        message = await services.gateway.send(
            account,
            conversation,
            request.content,
            sender_user_id=current_user.user_id,
            template_name=request.template_name if request.message_type == MessageType.TEMPLATE else None,
            language_code=request.language_code,
        )
        logger.info(f"📤 User {current_user.user_id} replied in conversation {conversation_id}: message {message.id}")
        return message
    except Exception as e:
        logger.warning(f"⚠️ Send in conversation {conversation_id} failed: {e}")
        raise to_http_exception(e)


@router.post("/conversations/{conversation_id}/read", response_model=Dict[str, Any])
async def mark_conversation_read(
    conversation_id: int,
    current_user: User = Depends(get_current_user),
    services: MessagingServices = Depends(get_services),
):
    """Mark everything in the conversation read for this user and reset the unread counter"""
    try:
        marked = await services.conversations.mark_conversation_read(current_user.user_id, conversation_id)
        return {"conversation_id": conversation_id, "notifications_marked": marked, "unread_count": 0}
    except Exception as e:
        raise to_http_exception(e)


@router.post("/conversations/{conversation_id}/archive", response_model=Dict[str, Any])
async def toggle_archive(
    conversation_id: int,
    current_user: User = Depends(get_current_user),
    services: MessagingServices = Depends(get_services),
):
    """Archive an active conversation, or restore an archived one"""
    try:
        conversation = await services.conversations.toggle_archive(current_user.user_id, conversation_id)
        return {"conversation_id": conversation.id, "is_active": conversation.is_active}
    except Exception as e:
        raise to_http_exception(e)


@router.get("/conversations/{conversation_id}/stats", response_model=Dict[str, Any])
async def get_conversation_stats(
    conversation_id: int,
    current_user: User = Depends(get_current_user),
    services: MessagingServices = Depends(get_services),
):
    try:
        return await services.conversations.get_stats(current_user.user_id, conversation_id)
    except Exception as e:
        raise to_http_exception(e)


# ============ Message Endpoints ============

@router.post("/messages/{message_id}/read", response_model=Dict[str, Any])
async def mark_message_read(
    message_id: int,
    current_user: User = Depends(get_current_user),
    services: MessagingServices = Depends(get_services),
):
    try:
        changed = await services.conversations.mark_message_read(current_user.user_id, message_id)
        return {"message_id": message_id, "is_read": True, "changed": changed}
    except Exception as e:
        raise to_http_exception(e)


@router.post("/messages/{message_id}/unread", response_model=Dict[str, Any])
async def mark_message_unread(
    message_id: int,
    current_user: User = Depends(get_current_user),
    services: MessagingServices = Depends(get_services),
):
    try:
        changed = await services.conversations.mark_message_unread(current_user.user_id, message_id)
        return {"message_id": message_id, "is_read": False, "changed": changed}
    except Exception as e:
        raise to_http_exception(e)


@router.post("/messages/{message_id}/retry", response_model=Message, status_code=201)
async def retry_message(
    message_id: int,
    current_user: User = Depends(get_current_user),
    services: MessagingServices = Depends(get_services),
):
    """Resend a FAILED outbound message as a new message"""
    try:
        account, message = await services.conversations.get_message_for_user(current_user.user_id, message_id)
        return await services.gateway.resend(account, message, sender_user_id=current_user.user_id)
    except Exception as e:
        raise to_http_exception(e)


@router.get("/stats", response_model=Dict[str, Any])
async def get_overall_stats(
    current_user: User = Depends(get_current_user),
    services: MessagingServices = Depends(get_services),
):
    """Account, conversation and message totals across the user's accounts"""
    try:
        return await services.stats.get_overall_stats(current_user.user_id)
    except Exception as e:
        raise to_http_exception(e)


@router.get("/unread-count", response_model=Dict[str, Any])
async def get_unread_count(
    conversation_id: Optional[int] = Query(None),
    current_user: User = Depends(get_current_user),
    services: MessagingServices = Depends(get_services),
):
    """Unread notifications of the current user, optionally for one conversation"""
    try:
        if conversation_id is not None:
            await services.conversations.get_conversation_for_user(current_user.user_id, conversation_id)
        total = await services.notifications.unread_total(current_user.user_id, conversation_id)
        return {"user_id": current_user.user_id, "conversation_id": conversation_id, "unread_count": total}
    except Exception as e:
        raise to_http_exception(e)
