import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import redis.asyncio as redis
from redis import exceptions as redis_exceptions

from chatbridge.exceptions import LockTimeoutError

logger = logging.getLogger(__name__)


def create_redis(settings) -> redis.Redis:
    """Redis client over a connection pool built from settings"""
    pool = redis.ConnectionPool(
        host=settings.REDIS_HOST,
        port=settings.REDIS_PORT,
        db=settings.REDIS_DB,
        password=settings.REDIS_PASSWORD,
        decode_responses=True,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
    )
    return redis.Redis(connection_pool=pool)


class RedisLockManager:
    """
    Distributed locks shared by every worker process.

    Conversation resolution and unread counter changes run under
    `conversation:{account_id}:{customer_id}`; profile fetches under
    `profile:{platform}:{platform_customer_id}`.
    """

    def __init__(self, client: redis.Redis, prefix: str = "chatbridge:lock",
                 expire: float = 30, wait_time: float = 10, poll_interval: float = 0.05):
        self.client = client
        self.prefix = prefix
        self.expire = expire
        self.wait_time = wait_time
        self.poll_interval = poll_interval

    def _name(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    @asynccontextmanager
    async def acquire(self, key: str, wait_time: Optional[float] = None,
                      expire: Optional[float] = None) -> AsyncGenerator[None, None]:
        """
        Hold the lock for key for the duration of the block.

        Args:
            key: Lock key, e.g. conversation:3:17
            wait_time: Seconds to wait for the lock (defaults to the manager's)
            expire: Seconds before Redis releases a lock whose holder died

        Raises:
            LockTimeoutError: Lock not acquired within wait_time
        """
        lock = self.client.lock(
            self._name(key),
            timeout=expire if expire is not None else self.expire,
            sleep=self.poll_interval,
            blocking_timeout=wait_time if wait_time is not None else self.wait_time,
        )
        try:
            acquired = await lock.acquire()
        except redis_exceptions.LockError as e:
            raise LockTimeoutError(f"Could not lock {key}: {e}") from e
        if not acquired:
            logger.warning(f"🔒 Lock {key} still held after waiting; giving up")
            raise LockTimeoutError(f"Timed out waiting for lock {key}")

        try:
            yield
        finally:
            try:
                await lock.release()
            except redis_exceptions.LockError:
                # Expired while held; another holder may own it now
                logger.warning(f"⚠️ Lock {key} expired before release")

    async def is_locked(self, key: str) -> bool:
        return bool(await self.client.exists(self._name(key)))
