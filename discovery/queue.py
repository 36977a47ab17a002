"""
Notification queue access.

Write-only: one message per call. SQSMessageQueue sends through boto3 in
a worker thread.
"""

from abc import ABC, abstractmethod
from typing import Optional
import asyncio
import logging

logger = logging.getLogger(__name__)


class MessageQueue(ABC):
    """Accepts one message per call and returns its message id"""

    queue_url: str

    @abstractmethod
    async def send(self, body: str) -> str:
        pass


class SQSMessageQueue(MessageQueue):
    """Amazon SQS implementation"""

    def __init__(self, queue_url: str, client=None, region_name: Optional[str] = None):
        if not queue_url:
            raise ValueError("An SQS queue URL is required")
        self.queue_url = queue_url
        self._client = client
        self.region_name = region_name

    @property
    def client(self):
        if self._client is None:
            import boto3
            self._client = boto3.client("sqs", region_name=self.region_name)
        return self._client

    async def send(self, body: str) -> str:
        response = await asyncio.to_thread(
            self.client.send_message,
            QueueUrl=self.queue_url,
            MessageBody=body,
        )
        return response.get("MessageId", "")
