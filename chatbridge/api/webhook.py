"""
Webhook API Endpoints
Receive Facebook Messenger and WhatsApp Cloud webhooks, plus the audit/replay views
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse

from chatbridge.api.dependencies import get_services, to_http_exception
from chatbridge.auth.dependencies import require_role
from chatbridge.exceptions import AccountConfigurationError, QueueFullError, WebhookVerificationError
from chatbridge.middleware.webhook_auth import SIGNATURE_HEADER
from chatbridge.models.messaging import MessagingPlatform, WebhookEvent
from chatbridge.models.user import ADMIN_ROLE, User
from chatbridge.models.webhook import ReplayResponse
from chatbridge.services.container import MessagingServices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhook"])

EVENT_RECEIVED = "EVENT_RECEIVED"


# ============================================
# HELPER FUNCTIONS
# ============================================

async def _handle_subscription(
    services: MessagingServices,
    platform: MessagingPlatform,
    mode: Optional[str],
    token: Optional[str],
    challenge: Optional[str],
) -> PlainTextResponse:
    try:
        echoed = await services.verifier.verify_subscription(platform, mode, token, challenge)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except WebhookVerificationError:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")
    return PlainTextResponse(echoed)


async def _handle_delivery(services: MessagingServices, platform: MessagingPlatform, request: Request) -> PlainTextResponse:
    body = await request.body()
    try:
        event = await services.ingestion.ingest(platform, body, request.headers.get(SIGNATURE_HEADER))
    except WebhookVerificationError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    except AccountConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    except QueueFullError as e:
        # Recorded but not queued: the platform will redeliver, replay also picks it up
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e), headers={"Retry-After": "5"}
        )
    except (ValueError, UnicodeDecodeError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid webhook payload: {e}")

    logger.debug(f"{platform.value} webhook accepted as event {event.id}")
    return PlainTextResponse(EVENT_RECEIVED)


# ============================================
# FACEBOOK MESSENGER
# ============================================

@router.get("/facebook", response_class=PlainTextResponse)
async def verify_facebook_webhook(
    mode: Optional[str] = Query(None, alias="hub.mode"),
    token: Optional[str] = Query(None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(None, alias="hub.challenge"),
    services: MessagingServices = Depends(get_services),
):
    """Messenger subscription handshake: echoes hub.challenge when the verify token matches"""
    return await _handle_subscription(services, MessagingPlatform.FACEBOOK, mode, token, challenge)


@router.post("/facebook", response_class=PlainTextResponse)
async def receive_facebook_webhook(request: Request, services: MessagingServices = Depends(get_services)):
    """Messenger webhook delivery (X-Hub-Signature-256 signed)"""
    return await _handle_delivery(services, MessagingPlatform.FACEBOOK, request)


# ============================================
# WHATSAPP CLOUD
# ============================================

@router.get("/whatsapp", response_class=PlainTextResponse)
async def verify_whatsapp_webhook(
    mode: Optional[str] = Query(None, alias="hub.mode"),
    token: Optional[str] = Query(None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(None, alias="hub.challenge"),
    services: MessagingServices = Depends(get_services),
):
    """WhatsApp subscription handshake"""
    return await _handle_subscription(services, MessagingPlatform.WHATSAPP, mode, token, challenge)


@router.post("/whatsapp", response_class=PlainTextResponse)
async def receive_whatsapp_webhook(request: Request, services: MessagingServices = Depends(get_services)):
    """WhatsApp webhook delivery (X-Hub-Signature-256 signed)"""
    return await _handle_delivery(services, MessagingPlatform.WHATSAPP, request)


# ============================================
# AUDIT & REPLAY
# ============================================

@router.get("/events", response_model=List[WebhookEvent])
async def list_webhook_events(
    processed: Optional[bool] = Query(None, description="Filter by processed flag"),
    failed: Optional[bool] = Query(None, description="Filter by presence of an error message"),
    platform: Optional[MessagingPlatform] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user: User = Depends(require_role(ADMIN_ROLE)),
    services: MessagingServices = Depends(get_services),
):
    """Webhook audit log, newest first"""
    return await services.store.list_events(
        processed=processed, failed=failed, platform=platform, limit=limit, offset=offset
    )


@router.get("/events/{event_id}", response_model=WebhookEvent)
async def get_webhook_event(
    event_id: int,
    user: User = Depends(require_role(ADMIN_ROLE)),
    services: MessagingServices = Depends(get_services),
):
    event = await services.store.get(event_id)
    if event is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Webhook event {event_id} not found")
    return event


@router.post("/events/replay", response_model=ReplayResponse)
async def replay_webhook_events(
    include_failed: bool = Query(False, description="Also retry events that failed before"),
    limit: int = Query(500, ge=1, le=5000),
    user: User = Depends(require_role(ADMIN_ROLE)),
    services: MessagingServices = Depends(get_services),
):
    """Re-dispatch recorded deliveries that have not been processed"""
    try:
        event_ids = await services.ingestion.replay_pending(limit=limit, include_failed=include_failed)
    except Exception as e:
        raise to_http_exception(e)
    logger.info(f"♻️ Replay requested by {user.user_id}: {len(event_ids)} events submitted")
    return ReplayResponse(submitted=len(event_ids), event_ids=event_ids)
