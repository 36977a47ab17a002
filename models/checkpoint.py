from sqlalchemy import Column, Integer, String, DateTime, BigInteger, Index
from core.clock import utc_now
from models.base import Base


class DiscoveryMarker(Base):
    """
    Last fully processed change-feed position, one row per feed.

    Invariant:
    - Every change with sequence <= marker has been staged or deemed
      irrelevant and its notification (if any) has been enqueued
    - The marker never moves backwards

    Written only by the scanner after a batch's effects are committed.
    """
    __tablename__ = "discovery_markers"

    id = Column(Integer, primary_key=True, autoincrement=True)

    feed_name = Column(String(100), nullable=False)
    marker = Column(BigInteger, nullable=False)

    # Statistics
    total_saves = Column(Integer, default=0, nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("idx_marker_feed", "feed_name", unique=True),
    )
