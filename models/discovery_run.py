from sqlalchemy import Column, BigInteger, String, Enum, DateTime, Float, Integer, Text, Boolean, Index, Uuid
import uuid
from core.clock import utc_now
from models.base import Base, RunStatus, JSONType


class DiscoveryRun(Base):
    """
    Tracks metadata for each scanner invocation.

    Purpose:
    - Audit trail of all discovery runs
    - Marker progression (before / after)
    - Counters matching the emitted metrics
    - Early-stop and failure tracking
    """
    __tablename__ = "discovery_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Uuid, default=uuid.uuid4, unique=True, nullable=False, index=True)

    feed_name = Column(String(100), nullable=False, index=True)
    status = Column(Enum(RunStatus), default=RunStatus.RUNNING, nullable=False, index=True)

    # Timestamps
    started_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_seconds = Column(Float, nullable=True)

    # Marker progression
    marker_before = Column(BigInteger, nullable=True)
    marker_after = Column(BigInteger, nullable=True)

    # Counters
    batch_count = Column(Integer, default=0)
    change_count = Column(Integer, default=0)
    package_version_count = Column(Integer, default=0)
    relevant_count = Column(Integer, default=0)
    unprocessable_count = Column(Integer, default=0)
    staged_count = Column(Integer, default=0)
    notified_count = Column(Integer, default=0)
    staging_failure_count = Column(Integer, default=0)
    deferred_retried_count = Column(Integer, default=0)

    # Time budget
    stopped_early = Column(Boolean, default=False, nullable=False)
    remaining_seconds = Column(Float, nullable=True)

    # Error tracking
    error_message = Column(Text, nullable=True)
    error_details = Column(JSONType, nullable=True)

    __table_args__ = (
        Index("idx_discovery_run_feed_started", "feed_name", "started_at"),
    )
