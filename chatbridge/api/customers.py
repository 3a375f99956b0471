"""
Messaging Customers API Endpoints

Customer directory, contact edits and profile refreshes.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from chatbridge.api.dependencies import get_services, to_http_exception
from chatbridge.auth.dependencies import get_current_user, require_role
from chatbridge.models.messaging import CustomerUpdateRequest, MessagingPlatform, PageResponse
from chatbridge.models.user import User
from chatbridge.services.container import MessagingServices
from chatbridge.services.customer_service import customer_payload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messaging/customers", tags=["messaging-customers"])


@router.get("", response_model=PageResponse)
async def list_customers(
    platform: Optional[MessagingPlatform] = Query(None, description="Only this platform"),
    search: Optional[str] = Query(None, description="Match on name, phone or email"),
    profile_fetched: Optional[bool] = Query(None, description="Only customers whose profile was (not) fetched"),
    page: int = Query(0, ge=0, description="Page number (0-indexed)"),
    size: int = Query(20, ge=1, le=100, description="Items per page"),
    current_user: User = Depends(get_current_user),
    services: MessagingServices = Depends(get_services),
):
    """Customers who have talked to any of the user's accounts, most recently updated first"""
    try:
        items, total = await services.customers.list_customers(
            current_user.user_id,
            platform=platform,
            search=search,
            profile_fetched=profile_fetched,
            page=page,
            size=size,
        )
        return PageResponse(items=items, page=page, size=size, total=total)
    except Exception as e:
        raise to_http_exception(e)


@router.get("/stats", response_model=Dict[str, Any])
async def get_customer_stats(
    platform: Optional[MessagingPlatform] = Query(None),
    current_user: User = Depends(get_current_user),
    services: MessagingServices = Depends(get_services),
):
    """Profile coverage: fetched and complete profiles, with rates in percent"""
    try:
        return await services.customers.get_stats(current_user.user_id, platform)
    except Exception as e:
        raise to_http_exception(e)


@router.get("/search", response_model=PageResponse)
async def search_customers(
    query: Optional[str] = Query(None, description="Match on name, phone or email"),
    platform: Optional[MessagingPlatform] = Query(None),
    has_complete_profile: Optional[bool] = Query(None, description="Profile fetched with both names known"),
    page: int = Query(0, ge=0),
    size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    services: MessagingServices = Depends(get_services),
):
    try:
        items, total = await services.customers.list_customers(
            current_user.user_id,
            platform=platform,
            search=query,
            complete=has_complete_profile,
            page=page,
            size=size,
        )
        return PageResponse(items=items, page=page, size=size, total=total)
    except Exception as e:
        raise to_http_exception(e)


@router.post("/bulk-refresh", response_model=Dict[str, Any])
async def bulk_refresh_profiles(
    platform: Optional[MessagingPlatform] = Query(None),
    incomplete_only: bool = Query(True, description="Skip customers whose profile is already complete"),
    current_user: User = Depends(require_role("admin")),
    services: MessagingServices = Depends(get_services),
):
    """
    Refresh profiles of all customers (admin only).

    WhatsApp customers are skipped. Runs inline and returns the counts.
    """
    try:
        logger.info(f"🔄 Bulk profile refresh requested by {current_user.user_id}")
        return await services.customers.bulk_refresh(platform=platform, incomplete_only=incomplete_only)
    except Exception as e:
        raise to_http_exception(e)


@router.get("/{customer_id}", response_model=Dict[str, Any])
async def get_customer(
    customer_id: int,
    current_user: User = Depends(get_current_user),
    services: MessagingServices = Depends(get_services),
):
    try:
        customer = await services.customers.get_customer_for_user(current_user.user_id, customer_id)
        return customer_payload(customer)
    except Exception as e:
        raise to_http_exception(e)


@router.put("/{customer_id}", response_model=Dict[str, Any])
async def update_customer(
    customer_id: int,
    request: CustomerUpdateRequest,
    current_user: User = Depends(get_current_user),
    services: MessagingServices = Depends(get_services),
):
    """
    Edit contact details. Omitted or null fields keep their values.

    Example:
        ```json
        {"phone_number": "+8801712345678", "address": "House 12, Road 5, Dhanmondi"}
        ```
    """
    try:
        customer = await services.customers.update_customer(current_user.user_id, customer_id, request)
        return customer_payload(customer)
    except Exception as e:
        raise to_http_exception(e)


@router.post("/{customer_id}/refresh-profile", response_model=Dict[str, Any])
async def refresh_profile(
    customer_id: int,
    current_user: User = Depends(get_current_user),
    services: MessagingServices = Depends(get_services),
):
    """Fetch the profile from the platform now, ignoring the refetch window"""
    try:
        return await services.customers.refresh_profile(current_user.user_id, customer_id)
    except Exception as e:
        raise to_http_exception(e)
