"""Delivery of shares to storage and the upstream ingestion API."""

import asyncio
import dataclasses
import logging
from typing import Dict, List, Optional, Tuple

import httpx
from botocore.exceptions import (
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from shared.db_operations import ShareQueue, StorageUnavailable
from shared.models import (
    DeliveryOutcome,
    DeliveryResult,
    ParsedSharePayload,
    QueuedShare,
    SyncEvent,
)
from services.share_receiver.notifications import NotificationBus
from services.share_receiver.uploader import UploadFailure, UploadStrategySelector, build_file_key

logger = logging.getLogger(__name__)

SHARE_SYNCED = "SHARE_SYNCED"

# Storage errors that mean the backend could not be reached at all
STORAGE_NETWORK_ERRORS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
)


class DeliveryClient:
    """Writes a share to durable storage: file to the object store, record to the ingestion API."""

    def __init__(
        self,
        ingest_client: httpx.AsyncClient,
        uploader: UploadStrategySelector,
        queue: ShareQueue,
        notification_bus: NotificationBus,
        ingest_url: str,
        empty_file_policy: str = "metadata"
    ):
        """
        Initialize the delivery client.

        Args:
            ingest_client: HTTP client used for the ingestion API
            uploader: Upload strategy selector for shared files
            queue: Offline queue that queued deliveries are removed from
            notification_bus: Bus notified when a queued share is synced
            ingest_url: URL of the ingestion endpoint
            empty_file_policy: ``metadata`` to keep a record for zero-byte
                               files, ``skip`` to drop them
        """
        self.ingest_client = ingest_client
        self.uploader = uploader
        self.queue = queue
        self.notification_bus = notification_bus
        self.ingest_url = ingest_url
        self.empty_file_policy = empty_file_policy

    async def deliver(
        self,
        payload: ParsedSharePayload,
        key_prefix: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> DeliveryResult:
        """
        Deliver one share.

        Every file is written to storage first. Then one ingestion record is
        posted per stored file, the first carrying the share's title, text and
        url and the others its title only. A share without files is posted as
        a single text record.

        Args:
            payload: The share to deliver
            key_prefix: Prefix for the storage keys of the shared files
            idempotency_key: Sent as the Idempotency-Key header of the record
                             writes, suffixed with the record index after the first

        Returns:
            DeliveryResult; never raises for network or server failures
        """
        text_fields: Dict[str, str] = {}
        for name in ("title", "text", "url"):
            value = getattr(payload, name)
            if value:
                text_fields[name] = value

        file_records: List[Dict[str, str]] = []
        keys: List[str] = []

        for index, shared_file in enumerate(payload.files):
            prefix = f"{key_prefix}-{index}" if key_prefix and index else key_prefix
            key = build_file_key(shared_file.name, prefix)

            try:
                upload = await self.uploader.upload(shared_file, key)
            except UploadFailure as e:
                if isinstance(e.__cause__, STORAGE_NETWORK_ERRORS):
                    outcome = DeliveryOutcome.NETWORK_FAILURE
                else:
                    outcome = DeliveryOutcome.SERVER_REJECTED
                logger.warning(f"Storage write for {shared_file.name} failed ({outcome.value}): {e}")
                return DeliveryResult(
                    outcome=outcome,
                    stage="storage",
                    detail=str(e),
                    keys=keys,
                    orphaned_keys=list(keys)
                )

            logger.info(
                f"Stored {shared_file.name}: {upload.bytes_written} bytes via {upload.strategy_used}"
            )

            if upload.bytes_written > 0:
                keys.append(key)
                file_records.append({
                    "type": shared_file.kind,
                    "file_key": key,
                    "file_name": shared_file.name,
                    "file_size": str(upload.bytes_written),
                    "mime_type": shared_file.mime_type,
                })
            elif self.empty_file_policy == "metadata":
                logger.info(f"Recording metadata only for empty file {shared_file.name}")
                file_records.append({
                    "type": shared_file.kind,
                    "file_name": shared_file.name,
                    "file_size": "0",
                    "mime_type": shared_file.mime_type,
                })
            else:
                logger.info(f"Skipping empty file {shared_file.name}")

        if file_records:
            records = [dict(text_fields, **file_records[0])]
            title = {"title": text_fields["title"]} if "title" in text_fields else {}
            records.extend(dict(title, **file_record) for file_record in file_records[1:])
        else:
            without_files = dataclasses.replace(payload, files=())
            if without_files.is_empty:
                return DeliveryResult(outcome=DeliveryOutcome.SUCCESS, stage="storage")
            records = [dict(text_fields, type=without_files.kind)]

        referenced: List[str] = []
        for index, record in enumerate(records):
            record_key = f"{idempotency_key}-{index}" if idempotency_key and index else idempotency_key
            result = await self._write_record(record, record_key)
            if not result.ok:
                result.keys = keys
                result.orphaned_keys = [key for key in keys if key not in referenced]
                return result
            if "file_key" in record:
                referenced.append(record["file_key"])

        return DeliveryResult(outcome=DeliveryOutcome.SUCCESS, stage="ingest", keys=keys)

    async def discard_stored(self, keys: List[str]) -> None:
        """Delete stored objects that no accepted record refers to."""
        if keys:
            await self.uploader.discard(keys)

    async def _write_record(
        self,
        record: Dict[str, str],
        idempotency_key: Optional[str]
    ) -> DeliveryResult:
        # (None, value) parts keep the body multipart/form-data without filenames
        parts: List[Tuple[str, Tuple[None, str]]] = [
            (name, (None, value)) for name, value in record.items()
        ]
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None

        try:
            response = await self.ingest_client.post(self.ingest_url, files=parts, headers=headers)
        except httpx.TransportError as e:
            logger.warning(f"Ingestion API unreachable: {e!r}")
            return DeliveryResult(
                outcome=DeliveryOutcome.NETWORK_FAILURE,
                stage="ingest",
                detail=str(e)
            )

        if 200 <= response.status_code < 300:
            return DeliveryResult(outcome=DeliveryOutcome.SUCCESS, stage="ingest")

        logger.error(f"Ingestion API rejected share ({response.status_code}): {response.text}")
        return DeliveryResult(
            outcome=DeliveryOutcome.SERVER_REJECTED,
            stage="ingest",
            detail=f"{response.status_code}: {response.text[:200]}"
        )

    async def deliver_queued(self, entry: QueuedShare) -> DeliveryOutcome:
        """
        Deliver a queued share and remove it from the queue on success.

        The entry is left in place on any failure and retried on the next
        drain. A SHARE_SYNCED event is published after removal.

        Args:
            entry: The queued share

        Returns:
            The DeliveryOutcome of this attempt
        """
        try:
            payload = await asyncio.to_thread(entry.to_payload)
        except ValueError as e:
            logger.error(f"Queued share {entry.id} has undecodable file data, leaving it queued: {e}")
            return DeliveryOutcome.SERVER_REJECTED

        result = await self.deliver(
            payload,
            key_prefix=entry.delivery_key,
            idempotency_key=f"share-{entry.id}-{entry.timestamp}"
        )

        if not result.ok:
            logger.warning(
                f"Queued share {entry.id} not delivered ({result.outcome.value} at {result.stage}), "
                f"will retry on next trigger"
            )
            return result.outcome

        try:
            await asyncio.to_thread(self.queue.remove_by_id, entry.id)
        except StorageUnavailable as e:
            logger.error(f"Share {entry.id} delivered but could not be removed from queue: {e}")
            return DeliveryOutcome.SUCCESS

        await self.notification_bus.notify(SyncEvent(type=SHARE_SYNCED, id=entry.id))
        return DeliveryOutcome.SUCCESS
