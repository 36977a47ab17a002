"""
Checkpoint store for the change-feed marker
"""

from abc import ABC, abstractmethod
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import select
from models.checkpoint import DiscoveryMarker
from core.exceptions import CheckpointError
import logging

logger = logging.getLogger(__name__)


class CheckpointStore(ABC):
    """
    Durable single-value marker.

    ``load`` returns None on the first-ever run, meaning "start from the
    earliest retained change". ``save`` must be durable when it returns.
    """

    @abstractmethod
    async def load(self) -> Optional[int]:
        pass

    @abstractmethod
    async def save(self, marker: int) -> None:
        pass


class DatabaseCheckpointStore(CheckpointStore):
    """
    Marker persisted in the ``discovery_markers`` table, one row per feed.

    Responsibilities:
    - Read the marker at run start
    - Upsert and commit the marker after each batch
    - Refuse to move the marker backwards
    """

    def __init__(self, db_session: AsyncSession, feed_name: str):
        self.db = db_session
        self.feed_name = feed_name

    async def _get_row(self) -> Optional[DiscoveryMarker]:
        result = await self.db.execute(
            select(DiscoveryMarker).where(DiscoveryMarker.feed_name == self.feed_name)
        )
        return result.scalar_one_or_none()

    async def load(self) -> Optional[int]:
        try:
            row = await self._get_row()
        except SQLAlchemyError as e:
            raise CheckpointError(
                "Failed to load marker",
                context={"feed_name": self.feed_name, "operation": "load"},
                original_exception=e
            )

        marker = row.marker if row else None
        logger.info(f"Loaded marker for {self.feed_name}: {marker}")
        return marker

    async def save(self, marker: int) -> None:
        try:
            row = await self._get_row()

            if row is None:
                self.db.add(DiscoveryMarker(feed_name=self.feed_name, marker=marker, total_saves=1))
            else:
                if marker < row.marker:
                    raise CheckpointError(
                        "Refusing to move marker backwards",
                        context={
                            "feed_name": self.feed_name,
                            "marker": marker,
                            "stored_marker": row.marker,
                            "operation": "save"
                        }
                    )
                row.marker = marker
                row.total_saves += 1

            await self.db.commit()

        except SQLAlchemyError as e:
            await self.db.rollback()
            raise CheckpointError(
                "Failed to save marker",
                context={"feed_name": self.feed_name, "marker": marker, "operation": "save"},
                original_exception=e
            )

        logger.debug(f"Saved marker for {self.feed_name}: {marker}")
