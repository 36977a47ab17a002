"""
Object storage access (staged tarballs, canary state).

The pipeline only needs put / get by key. S3ObjectStore implements that
with boto3; the blocking SDK calls run in a worker thread so they do not
stall the event loop.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional
import asyncio
import logging

logger = logging.getLogger(__name__)


class ObjectStore(ABC):
    """Key-value blob store"""

    bucket: str

    @abstractmethod
    async def put_object(
        self,
        key: str,
        body: bytes,
        content_type: str = "application/octet-stream",
        metadata: Optional[Dict[str, str]] = None
    ) -> None:
        """Write (or overwrite) an object"""
        pass

    @abstractmethod
    async def get_object(self, key: str) -> Optional[bytes]:
        """Object body, or None when the key does not exist"""
        pass


class S3ObjectStore(ObjectStore):
    """
    Amazon S3 implementation.

    The boto3 client is created on first use.
    """

    def __init__(self, bucket: str, client=None, region_name: Optional[str] = None):
        if not bucket:
            raise ValueError("An S3 bucket name is required")
        self.bucket = bucket
        self._client = client
        self.region_name = region_name

    @property
    def client(self):
        if self._client is None:
            import boto3
            self._client = boto3.client("s3", region_name=self.region_name)
        return self._client

    async def put_object(self, key, body, content_type="application/octet-stream", metadata=None):
        await asyncio.to_thread(
            self.client.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=body,
            ContentType=content_type,
            Metadata=metadata or {},
        )
        logger.debug(f"Wrote s3://{self.bucket}/{key} ({len(body)} bytes)")

    async def get_object(self, key):
        from botocore.exceptions import ClientError

        try:
            response = await asyncio.to_thread(self.client.get_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404", "NotFound"):
                return None
            raise
        return await asyncio.to_thread(response["Body"].read)
