"""
Event Broadcaster
Registry of live staff connections (SSE streams and WebSockets) keyed by user id.

Publishing never blocks on a client: each connection owns a bounded queue
that its transport drains. A connection whose queue is full or which has
been closed is dropped from the registry.
"""
import asyncio
import logging
import uuid
from datetime import datetime
from typing import AsyncIterator, Dict, Iterable, List, Optional, Set

from chatbridge.models.events import MessagingEvent
from chatbridge.utils.time import utc_now

logger = logging.getLogger(__name__)


class Subscription:
    """One live connection belonging to a user"""

    def __init__(self, user_id: str, max_queue_size: int = 100, transport: str = "sse"):
        self.id = uuid.uuid4().hex
        self.user_id = user_id
        self.transport = transport
        self.connected_at: datetime = utc_now()
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)

    def offer(self, event: MessagingEvent) -> bool:
        """Queue an event without waiting. False if closed or full."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            return False

    async def next_event(self, timeout: Optional[float] = None) -> Optional[MessagingEvent]:
        """Next queued event; None once closed or when timeout elapses."""
        if self.closed and self._queue.empty():
            return None
        try:
            if timeout is None:
                event = await self._queue.get()
            else:
                event = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        return event

    async def __aiter__(self) -> AsyncIterator[MessagingEvent]:
        while True:
            event = await self.next_event()
            if event is None:
                return
            yield event

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Wake a transport blocked in next_event()
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._queue.put_nowait(None)

    @property
    def pending(self) -> int:
        return self._queue.qsize()


class EventBroadcaster:
    """Fan-out of messaging events to every connection of the target users"""

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        # Structure: {user_id: Set[Subscription]}
        self.active_connections: Dict[str, Set[Subscription]] = {}

    def subscribe(self, user_id: str, transport: str = "sse") -> Subscription:
        """Register a connection and queue the initial connection status event"""
        subscription = Subscription(user_id, max_queue_size=self.max_queue_size, transport=transport)
        self.active_connections.setdefault(user_id, set()).add(subscription)
        subscription.offer(MessagingEvent.connection_status(user_id, "Connected to messaging events"))

        logger.info(
            f"✅ {transport.upper()} connected: user={user_id}, "
            f"user_connections={len(self.active_connections[user_id])}"
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        connections = self.active_connections.get(subscription.user_id)
        if connections is None or subscription not in connections:
            return
        connections.discard(subscription)
        if not connections:
            del self.active_connections[subscription.user_id]
        logger.info(
            f"🔌 {subscription.transport.upper()} disconnected: user={subscription.user_id}, "
            f"remaining_connections={len(self.active_connections.get(subscription.user_id, ()))}"
        )

    def send_to_user(self, user_id: str, event: MessagingEvent) -> int:
        """Deliver to every connection of user_id. Returns how many accepted the event."""
        connections = list(self.active_connections.get(user_id, ()))
        if not connections:
            logger.debug(f"No active connections for user {user_id}")
            return 0

        event = event.for_user(user_id)
        delivered = 0
        failed_connections = []
        for subscription in connections:
            if subscription.offer(event):
                delivered += 1
            else:
                failed_connections.append(subscription)

        # Clean up slow or closed connections
        for failed in failed_connections:
            logger.warning(
                f"❌ Dropping {failed.transport} connection {failed.id} for user {user_id} "
                f"(closed={failed.closed}, pending={failed.pending})"
            )
            self.unsubscribe(failed)

        logger.debug(f"📢 {event.type.value} to user {user_id}: sent={delivered}, failed={len(failed_connections)}")
        return delivered

    def send_to_users(self, user_ids: Iterable[str], event: MessagingEvent) -> int:
        return sum(self.send_to_user(user_id, event) for user_id in user_ids)

    def send_heartbeat(self) -> int:
        delivered = 0
        for user_id in list(self.active_connections.keys()):
            delivered += self.send_to_user(user_id, MessagingEvent.connection_status(user_id, "heartbeat"))
        return delivered

    async def run_heartbeat(self, interval_seconds: float) -> None:
        """Periodic keep-alive so idle proxies do not cut streams"""
        logger.info(f"💓 Heartbeat loop started (every {interval_seconds}s)")
        while True:
            try:
                await asyncio.sleep(interval_seconds)
                self.send_heartbeat()
            except asyncio.CancelledError:
                logger.info("🛑 Heartbeat loop stopping...")
                break

    def disconnect_user(self, user_id: str) -> int:
        connections = list(self.active_connections.get(user_id, ()))
        for subscription in connections:
            self.unsubscribe(subscription)
        return len(connections)

    def close_all(self) -> None:
        for user_id in list(self.active_connections.keys()):
            self.disconnect_user(user_id)

    def get_connection_count(self, user_id: Optional[str] = None) -> int:
        if user_id:
            return len(self.active_connections.get(user_id, ()))
        return sum(len(connections) for connections in self.active_connections.values())

    def get_active_users(self) -> List[str]:
        return list(self.active_connections.keys())

    def get_stats(self, user_id: Optional[str] = None) -> Dict[str, int]:
        stats = {
            "total_connections": self.get_connection_count(),
            "active_users": len(self.active_connections),
        }
        if user_id:
            stats["user_connections"] = self.get_connection_count(user_id)
        return stats
