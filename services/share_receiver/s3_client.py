"""S3-compatible object storage client for shared files."""

import asyncio
import logging
from typing import BinaryIO, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)


class S3Client:
    """Handles S3 operations for shared file storage."""

    def __init__(
        self,
        bucket_name: str,
        region: str = "us-east-1",
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        endpoint_url: Optional[str] = None
    ):
        """
        Initialize S3 client.

        Args:
            bucket_name: S3 bucket name
            region: AWS region
            access_key_id: AWS access key ID (optional, uses default credentials if not provided)
            secret_access_key: AWS secret access key (optional)
            endpoint_url: Custom endpoint for S3-compatible stores such as R2 or MinIO
        """
        self.bucket_name = bucket_name
        self.region = region

        client_kwargs = {"region_name": region}
        if endpoint_url:
            client_kwargs["endpoint_url"] = endpoint_url

        if access_key_id and secret_access_key:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key_id,
                aws_secret_access_key=secret_access_key,
                **client_kwargs
            )
        else:
            # Use default credentials (from environment or IAM role)
            self.s3_client = boto3.client('s3', **client_kwargs)

    async def put_stream(
        self,
        stream: BinaryIO,
        key: str,
        content_length: int,
        content_type: str = "application/octet-stream"
    ) -> None:
        """
        Write an object from a live stream without buffering it first.

        Args:
            stream: Readable binary stream
            key: S3 object key (path)
            content_length: Number of bytes the stream will yield
            content_type: MIME type of the object
        """
        try:
            await asyncio.to_thread(
                self.s3_client.put_object,
                Bucket=self.bucket_name,
                Key=key,
                Body=stream,
                ContentLength=content_length,
                ContentType=content_type
            )
            logger.info(f"Streamed {content_length} bytes to s3://{self.bucket_name}/{key}")

        except ClientError as e:
            logger.error(f"Failed to stream object to S3: {e}", exc_info=True)
            raise

    async def put_bytes(
        self,
        data: bytes,
        key: str,
        content_type: str = "application/octet-stream"
    ) -> None:
        """
        Write an object from an in-memory buffer.

        Args:
            data: Complete object content
            key: S3 object key (path)
            content_type: MIME type of the object
        """
        try:
            await asyncio.to_thread(
                self.s3_client.put_object,
                Bucket=self.bucket_name,
                Key=key,
                Body=data,
                ContentType=content_type
            )
            logger.info(f"Uploaded {len(data)} bytes to s3://{self.bucket_name}/{key}")

        except ClientError as e:
            logger.error(f"Failed to upload object to S3: {e}", exc_info=True)
            raise

    async def delete_object(self, key: str) -> bool:
        """
        Delete an object from S3.

        Args:
            key: S3 object key (path)

        Returns:
            True if successful, False otherwise
        """
        try:
            await asyncio.to_thread(
                self.s3_client.delete_object,
                Bucket=self.bucket_name,
                Key=key
            )
            logger.info(f"Deleted s3://{self.bucket_name}/{key}")
            return True

        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to delete object from S3: {e}", exc_info=True)
            return False
