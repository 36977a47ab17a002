from sqlalchemy import Column, BigInteger, String, DateTime, Integer, Text, Index
from core.clock import utc_now
from models.base import Base, JSONType


class DeferredVersion(Base):
    """
    A relevant package version whose staging failed.

    The marker advances past the failed change, so the candidate is parked
    here (before the marker is saved) and retried at the start of later runs
    until it is staged or runs out of attempts.
    """
    __tablename__ = "deferred_versions"

    id = Column(Integer, primary_key=True, autoincrement=True)

    package_name = Column(String(214), nullable=False)
    package_version = Column(String(256), nullable=False)
    sequence_id = Column(BigInteger, nullable=False)

    # Serialized CandidateVersion
    candidate = Column(JSONType, nullable=False)

    attempts = Column(Integer, default=1, nullable=False)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("idx_deferred_package_version", "package_name", "package_version", unique=True),
    )
