"""
Webhook Ingestion Service
Request-path half of the pipeline: verify, record durably, hand off to workers
"""
import json
import logging
from typing import List, Optional

from chatbridge.exceptions import QueueFullError
from chatbridge.middleware.webhook_auth import SignatureVerifier
from chatbridge.models.messaging import MessagingPlatform, WebhookEvent
from chatbridge.services.event_processor import EventProcessor, WebhookJob
from chatbridge.services.processing_queue import ProcessingQueue
from chatbridge.services.webhook_parsers import get_parser
from chatbridge.services.webhook_store import WebhookStore

logger = logging.getLogger(__name__)


class WebhookIngestionService:
    def __init__(self, verifier: SignatureVerifier, store: WebhookStore, processor: EventProcessor,
                 queue: Optional[ProcessingQueue] = None):
        self.verifier = verifier
        self.store = store
        self.processor = processor
        self.queue = queue

    async def ingest(self, platform: MessagingPlatform, body: bytes, signature_header: Optional[str]) -> WebhookEvent:
        """
        Verify and record a delivery, then dispatch it for processing.

        Raises:
            WebhookVerificationError: Bad or missing signature (nothing recorded)
            AccountConfigurationError: No secret configured (nothing recorded)
            ValueError: Body is not a JSON object (nothing recorded)
            QueueFullError: Recorded, but the worker pool stayed saturated
        """
        await self.verifier.verify(platform, body, signature_header)

        raw_payload = body.decode("utf-8")
        payload = json.loads(raw_payload)
        if not isinstance(payload, dict):
            raise ValueError("Webhook payload must be a JSON object")

        event = await self.store.record(platform, get_parser(platform).event_type(payload), raw_payload)
        await self.dispatch(WebhookJob(webhook_event_id=event.id, platform=platform, payload=payload))
        return event

    async def dispatch(self, job: WebhookJob) -> None:
        if self.queue is None:
            await self.processor.process(job)
            return
        await self.queue.submit(job)

    async def replay_pending(self, limit: int = 500, include_failed: bool = False) -> List[int]:
        """
        Re-dispatch recorded deliveries that never finished processing.
        Safe to repeat: message ingestion is idempotent on platform ids.
        """
        pending = await self.store.list_unprocessed(limit=limit, include_failed=include_failed)
        submitted: List[int] = []
        for event in pending:
            job = self.processor.job_for(event)
            if job is None:
                await self.store.mark_failed(event.id, "Stored payload is not valid JSON")
                continue
            try:
                await self.dispatch(job)
            except QueueFullError:
                logger.warning(f"⚠️ Replay stopped at webhook event {event.id}: processing queue full")
                break
            submitted.append(event.id)

        if pending:
            logger.info(f"♻️ Replayed {len(submitted)}/{len(pending)} pending webhook events")
        return submitted
