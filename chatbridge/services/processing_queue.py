"""
Processing Queue
Bounded queue plus a fixed pool of worker tasks that process recorded
webhook deliveries off the request path.
"""
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from chatbridge.exceptions import QueueFullError
from chatbridge.services.event_processor import WebhookJob

logger = logging.getLogger(__name__)

JobHandler = Callable[[WebhookJob], Awaitable[object]]


class ProcessingQueue:
    def __init__(self, handler: JobHandler, workers: int = 10, capacity: int = 100,
                 enqueue_timeout: float = 2.0):
        self.handler = handler
        self.workers = max(1, workers)
        self.capacity = max(1, capacity)
        self.enqueue_timeout = enqueue_timeout
        self._queue: Optional[asyncio.Queue] = None
        self._tasks: List[asyncio.Task] = []
        self.processed_count = 0
        self.failed_count = 0

    @property
    def is_running(self) -> bool:
        return bool(self._tasks)

    @property
    def depth(self) -> int:
        return self._queue.qsize() if self._queue else 0

    async def start(self) -> None:
        if self._tasks:
            return
        self._queue = asyncio.Queue(maxsize=self.capacity)
        self._tasks = [
            asyncio.create_task(self._worker(index), name=f"webhook-worker-{index}")
            for index in range(self.workers)
        ]
        logger.info(f"🚀 Processing queue started: workers={self.workers}, capacity={self.capacity}")

    async def submit(self, job: WebhookJob, timeout: Optional[float] = None) -> None:
        """
        Enqueue a job, waiting up to timeout for space.

        Raises:
            QueueFullError: If the queue stayed full for the whole timeout
        """
        if self._queue is None:
            raise RuntimeError("Processing queue is not started")
        wait = self.enqueue_timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(self._queue.put(job), timeout=wait)
        except asyncio.TimeoutError:
            logger.error(
                f"🚨 Processing queue full ({self.capacity}); webhook event {job.webhook_event_id} not queued"
            )
            raise QueueFullError(f"Processing queue full; webhook event {job.webhook_event_id} not queued")
        logger.debug(f"📨 Queued webhook event {job.webhook_event_id} (depth={self.depth})")

    async def join(self) -> None:
        """Wait until every queued job has been handled"""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self, drain: bool = True) -> None:
        if not self._tasks:
            return
        if drain:
            await self.join()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info(
            f"🛑 Processing queue stopped (processed={self.processed_count}, failed={self.failed_count})"
        )

    async def _worker(self, index: int) -> None:
        while True:
            try:
                job = await self._queue.get()
            except asyncio.CancelledError:
                break
            try:
                await self.handler(job)
                self.processed_count += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failed_count += 1
                logger.error(f"❌ Worker {index} failed on webhook event {job.webhook_event_id}: {e}", exc_info=True)
            finally:
                self._queue.task_done()
