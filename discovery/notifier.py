"""
Announces staged artifacts on the ingestion queue
"""

import logging

from core.exceptions import DeliveryError
from discovery.queue import MessageQueue
from schemas.feed import Notification, StagedArtifact

logger = logging.getLogger(__name__)


class QueueNotifier:
    """One queue message per staged artifact; rejection raises DeliveryError"""

    def __init__(self, queue: MessageQueue):
        self.queue = queue

    async def notify(self, artifact: StagedArtifact) -> str:
        notification = Notification.from_artifact(artifact)
        try:
            message_id = await self.queue.send(notification.to_message())
        except Exception as e:
            raise DeliveryError(
                "Queue rejected notification",
                context={
                    "queue_url": self.queue.queue_url,
                    "package_name": notification.package_name,
                    "package_version": notification.package_version,
                },
                original_exception=e
            )

        logger.info(
            f"Notified {notification.package_name}@{notification.package_version} "
            f"(message {message_id})"
        )
        return message_id
