"""
Messaging Accounts API Endpoints

Connect, list, toggle and remove Facebook Pages and WhatsApp numbers.
"""
import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query

from chatbridge.api.dependencies import get_services, to_http_exception
from chatbridge.auth.dependencies import get_current_user
from chatbridge.models.messaging import AccountCreateRequest, AccountUpdateRequest
from chatbridge.models.user import User
from chatbridge.services.container import MessagingServices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messaging/accounts", tags=["messaging-accounts"])


@router.get("", response_model=List[Dict[str, Any]])
async def list_accounts(
    current_user: User = Depends(get_current_user),
    services: MessagingServices = Depends(get_services),
):
    """List accounts visible to the authenticated user (credentials omitted)"""
    try:
        accounts = await services.accounts.list_accounts_for_user(current_user.user_id)
        return [account.to_public_dict() for account in accounts]
    except Exception as e:
        raise to_http_exception(e)


@router.post("", response_model=Dict[str, Any], status_code=201)
async def create_account(
    request: AccountCreateRequest,
    current_user: User = Depends(get_current_user),
    services: MessagingServices = Depends(get_services),
):
    """
    Connect a Facebook Page or WhatsApp number.

    Example:
        ```json
        {
            "account_name": "Support Line",
            "details": {"platform": "WHATSAPP", "phone_number_id": "1098237465", "business_account_id": "5550001"},
            "access_token": "EAAG...",
            "webhook_secret": "app-secret"
        }
        ```
    """
    try:
        account = await services.accounts.create_account(current_user.user_id, request)
        return account.to_public_dict()
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to connect account for {current_user.user_id}: {e}")
        raise to_http_exception(e)


@router.get("/{account_id}", response_model=Dict[str, Any])
async def get_account(
    account_id: int,
    current_user: User = Depends(get_current_user),
    services: MessagingServices = Depends(get_services),
):
    try:
        account = await services.accounts.get_account_for_user(current_user.user_id, account_id)
        return account.to_public_dict()
    except Exception as e:
        raise to_http_exception(e)


@router.put("/{account_id}", response_model=Dict[str, Any])
async def update_account(
    account_id: int,
    request: AccountUpdateRequest,
    current_user: User = Depends(get_current_user),
    services: MessagingServices = Depends(get_services),
):
    """
    Edit the account name, access token or webhook tokens (owner only).

    Page and phone number ids cannot change; connect a new account instead.
    """
    try:
        account = await services.accounts.update_account(current_user.user_id, account_id, request)
        return account.to_public_dict()
    except Exception as e:
        raise to_http_exception(e)


@router.get("/{account_id}/stats", response_model=Dict[str, Any])
async def get_account_stats(
    account_id: int,
    current_user: User = Depends(get_current_user),
    services: MessagingServices = Depends(get_services),
):
    try:
        return await services.stats.get_account_stats(current_user.user_id, account_id)
    except Exception as e:
        raise to_http_exception(e)


@router.post("/{account_id}/toggle-status", response_model=Dict[str, Any])
async def toggle_account_status(
    account_id: int,
    current_user: User = Depends(get_current_user),
    services: MessagingServices = Depends(get_services),
):
    """Flip is_active. Inactive accounts ignore incoming webhooks and refuse sends."""
    try:
        account = await services.accounts.toggle_status(current_user.user_id, account_id)
        return account.to_public_dict()
    except Exception as e:
        raise to_http_exception(e)


@router.delete("/{account_id}", response_model=Dict[str, Any])
async def delete_account(
    account_id: int,
    purge: bool = Query(False, description="Hard delete the account with its conversations and messages"),
    current_user: User = Depends(get_current_user),
    services: MessagingServices = Depends(get_services),
):
    """
    Deactivate an account, or purge it with `?purge=true`.

    Purging removes conversations, messages, attachments and notifications
    of the account. Customers are shared across accounts and are kept.
    """
    try:
        if purge:
            counts = await services.accounts.purge_account(current_user.user_id, account_id)
            return {"id": account_id, "purged": True, "deleted": counts}
        account = await services.accounts.set_active(current_user.user_id, account_id, False)
        return {"id": account.id, "purged": False, "is_active": account.is_active}
    except Exception as e:
        raise to_http_exception(e)
