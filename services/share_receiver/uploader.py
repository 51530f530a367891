"""Upload strategy selection for shared files with unreliable size metadata."""

import logging
import re
import uuid
from typing import List, Optional

from shared.models import DEFAULT_MIME_TYPE, SharedFile, UploadResult
from services.share_receiver.s3_client import S3Client

logger = logging.getLogger(__name__)

STRATEGY_STREAM = "stream"
STRATEGY_BUFFERED = "buffered"

_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


class UploadFailure(Exception):
    """Raised when a file could not be written to storage by any strategy."""


def build_file_key(filename: str, prefix: Optional[str] = None) -> str:
    """
    Build the storage key for a shared file.

    Args:
        filename: Original file name
        prefix: Stable prefix; a random one is generated when omitted

    Returns:
        Object key of the form ``shares/<prefix>-<sanitized name>``
    """
    sanitized = _UNSAFE_KEY_CHARS.sub("_", filename or "") or "unnamed"
    return f"shares/{prefix or uuid.uuid4()}-{sanitized}"


class UploadStrategySelector:
    """
    Writes shared files to storage, choosing between streaming and buffering.

    Some mobile share clients report a size of 0 for files that do contain
    data, so a streaming write is only attempted when a positive size is
    reported, and any streaming failure is retried with a full buffered read.
    """

    def __init__(self, storage: S3Client):
        self.storage = storage

    async def upload(self, handle: SharedFile, key: str) -> UploadResult:
        """
        Write a file to storage.

        Args:
            handle: File handle exposing ``reported_size``, ``open_stream()`` and ``read()``
            key: Destination object key

        Returns:
            UploadResult with bytes written and the strategy that succeeded

        Raises:
            UploadFailure: If the buffered write fails
        """
        content_type = handle.mime_type or DEFAULT_MIME_TYPE
        reported_size = handle.reported_size or 0

        if reported_size > 0:
            try:
                stream = handle.open_stream()
                try:
                    await self.storage.put_stream(stream, key, reported_size, content_type)
                finally:
                    stream.close()
                return UploadResult(bytes_written=reported_size, strategy_used=STRATEGY_STREAM, key=key)
            except Exception as e:
                logger.warning(f"Stream upload of {key} failed ({e}), retrying with buffered upload")
        else:
            logger.info(f"Reported size for {key} is 0, using buffered upload")

        return await self._upload_buffered(handle, key, content_type)

    async def _upload_buffered(self, handle: SharedFile, key: str, content_type: str) -> UploadResult:
        buffer = handle.read()

        if len(buffer) == 0:
            logger.warning(
                f"File buffer for {key} is empty after buffered read; the file may be empty "
                f"or the share client sent no data. Reporting zero bytes written."
            )
            return UploadResult(bytes_written=0, strategy_used=STRATEGY_BUFFERED, key=key)

        try:
            await self.storage.put_bytes(buffer, key, content_type)
        except Exception as e:
            raise UploadFailure(f"Buffered upload of {key} failed: {e}") from e

        return UploadResult(bytes_written=len(buffer), strategy_used=STRATEGY_BUFFERED, key=key)

    async def discard(self, keys: List[str]) -> int:
        """
        Delete objects that were stored but will not be referenced.

        Failures are logged by the storage client and skipped.

        Returns:
            Number of objects deleted
        """
        deleted = 0
        for key in keys:
            if await self.storage.delete_object(key):
                deleted += 1
        if deleted < len(keys):
            logger.warning(f"Could not delete {len(keys) - deleted} of {len(keys)} unreferenced object(s)")
        return deleted
