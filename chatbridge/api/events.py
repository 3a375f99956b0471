"""
Real-time Events API
Server-sent events and WebSocket streams of messaging events for staff clients
"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import StreamingResponse

from chatbridge.api.dependencies import get_services
from chatbridge.auth.dependencies import get_current_user, get_stream_user
from chatbridge.auth.jwt_handler import JWTValidationError, extract_user_from_token
from chatbridge.models.user import User
from chatbridge.services.container import MessagingServices
from chatbridge.services.event_broadcaster import Subscription
from chatbridge.utils.time import utc_now

logger = logging.getLogger(__name__)

router = APIRouter(tags=["messaging-events"])

# How often the SSE loop checks for a vanished client while idle
DISCONNECT_POLL_SECONDS = 1.0


async def _sse_stream(request: Request, services: MessagingServices, subscription: Subscription):
    try:
        while not subscription.closed:
            if await request.is_disconnected():
                break
            event = await subscription.next_event(timeout=DISCONNECT_POLL_SECONDS)
            if event is None:
                continue
            yield event.to_sse()
    finally:
        services.broadcaster.unsubscribe(subscription)


@router.get("/messaging/sse/events")
async def stream_events(
    request: Request,
    user: User = Depends(get_stream_user),
    services: MessagingServices = Depends(get_services),
):
    """
    Server-sent event stream for the authenticated user.

    **Connection URL:**
    ```
    GET /messaging/sse/events?token={jwt_token}
    ```

    Every frame carries `event: <type>` and a JSON `data` line with the
    MessagingEvent. The first frame is CONNECTION_STATUS.
    """
    subscription = services.broadcaster.subscribe(user.user_id, transport="sse")
    return StreamingResponse(
        _sse_stream(request, services, subscription),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/messaging/sse/stats", response_model=Dict[str, Any])
async def get_stream_stats(
    current_user: User = Depends(get_current_user),
    services: MessagingServices = Depends(get_services),
):
    return services.broadcaster.get_stats(current_user.user_id)


@router.post("/messaging/sse/disconnect", response_model=Dict[str, Any])
async def disconnect_streams(
    current_user: User = Depends(get_current_user),
    services: MessagingServices = Depends(get_services),
):
    """Close every live connection of the current user"""
    closed = services.broadcaster.disconnect_user(current_user.user_id)
    return {"user_id": current_user.user_id, "disconnected": closed}


async def _pump(websocket: WebSocket, subscription: Subscription) -> None:
    async for event in subscription:
        await websocket.send_json(event.to_payload())


async def _receive(websocket: WebSocket, user: User) -> None:
    while True:
        data = await websocket.receive_text()
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            continue
        if isinstance(message, dict) and message.get("type") == "ping":
            await websocket.send_json({"type": "pong", "timestamp": utc_now().isoformat()})
            logger.debug(f"🏓 Sent pong to user={user.user_id}")


@router.websocket("/ws/messaging")
async def messaging_websocket(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="JWT authentication token"),
):
    """
    WebSocket stream of messaging events.

    **Connection URL:**
    ```
    ws://your-api.com/ws/messaging?token={jwt_token}
    ```

    Clients may send `{"type": "ping"}` and receive `{"type": "pong"}`.
    The socket closes when the client leaves or the server drops the connection.
    """
    if not token:
        logger.warning("WebSocket connection attempt without token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    app_settings = websocket.app.state.settings
    try:
        user = extract_user_from_token(token, secret=app_settings.JWT_SECRET_KEY, audience=app_settings.JWT_AUDIENCE)
    except JWTValidationError as e:
        logger.warning(f"Invalid WebSocket token: {e}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    services: MessagingServices = websocket.app.state.services
    await websocket.accept()
    subscription = services.broadcaster.subscribe(user.user_id, transport="websocket")
    sender = asyncio.create_task(_pump(websocket, subscription))
    receiver = asyncio.create_task(_receive(websocket, user))

    try:
        done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            error = task.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                logger.warning(f"⚠️ WebSocket for user={user.user_id} ended with error: {error}")
        if sender in done and receiver not in done and sender.exception() is None:
            # Dropped by the server (slow consumer, manual disconnect or shutdown)
            await websocket.close()
    finally:
        services.broadcaster.unsubscribe(subscription)
        for task in (sender, receiver):
            task.cancel()
        await asyncio.gather(sender, receiver, return_exceptions=True)
