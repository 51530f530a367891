"""Share target handling: parse, deliver now, or queue for later."""

import asyncio
import logging
from typing import Optional

from shared.db_operations import ShareQueue, StorageUnavailable
from shared.models import DeliveryOutcome, NewQueuedShare, ParsedSharePayload, ShareOutcome
from services.share_receiver.delivery import DeliveryClient
from services.share_receiver.parser import CapturedBody, ParseFailure, SharePayloadParser
from services.share_receiver.scheduler import SyncScheduler

logger = logging.getLogger(__name__)


class ShareReceiver:
    """Turns one captured share request into a ShareOutcome."""

    def __init__(
        self,
        parser: SharePayloadParser,
        delivery: DeliveryClient,
        queue: ShareQueue,
        scheduler: Optional[SyncScheduler] = None
    ):
        """
        Initialize the receiver.

        Args:
            parser: Payload parser for captured bodies
            delivery: Delivery client for immediate delivery
            queue: Offline queue for shares that cannot be delivered now
            scheduler: Scheduler asked to drain once connectivity is back
        """
        self.parser = parser
        self.delivery = delivery
        self.queue = queue
        self.scheduler = scheduler

    async def handle(self, body: CapturedBody) -> ShareOutcome:
        """
        Handle one share.

        Never raises: every failure is turned into an error outcome.

        Args:
            body: The captured share request

        Returns:
            ShareOutcome for the redirect back to the application
        """
        try:
            return await self._handle(body)
        except ParseFailure as e:
            logger.warning(f"Could not parse share: {e}")
            return ShareOutcome.error("parse_failed")
        except StorageUnavailable as e:
            logger.error(f"Share could not be queued: {e}", exc_info=True)
            return ShareOutcome.error("unknown")
        except Exception as e:
            logger.error(f"Unexpected error handling share: {e}", exc_info=True)
            return ShareOutcome.error("unknown")

    async def _handle(self, body: CapturedBody) -> ShareOutcome:
        payload = await self.parser.parse(body)
        if payload is None or payload.is_empty:
            raise ParseFailure(f"No share fields found in {body.media_type or 'untyped'} body")

        logger.info(f"Received {payload.kind} share")
        result = await self.delivery.deliver(payload)

        if result.ok:
            logger.info(f"Share delivered ({len(result.keys)} file(s) stored)")
            return ShareOutcome.success()

        # Stored objects no accepted record refers to are not kept
        await self.delivery.discard_stored(result.orphaned_keys)

        if result.outcome == DeliveryOutcome.SERVER_REJECTED and result.stage == "storage":
            logger.error(f"Storage rejected shared file: {result.detail}")
            return ShareOutcome.error("upload_failed")

        # Base64 encoding and the insert both run off the event loop
        queue_id = await asyncio.to_thread(self._enqueue, payload)
        logger.info(
            f"Share queued as {queue_id} after {result.outcome.value} at {result.stage}"
        )
        if self.scheduler is not None:
            self.scheduler.register_sync()
        return ShareOutcome.pending(queue_id)

    def _enqueue(self, payload: ParsedSharePayload) -> int:
        return self.queue.enqueue(NewQueuedShare.from_payload(payload))
