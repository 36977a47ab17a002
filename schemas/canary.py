"""
Pydantic schemas for the package canary state
"""

from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime, timedelta
import enum

from core.clock import utc_now


class CanaryPhase(str, enum.Enum):
    """Where the tracked probe version currently is"""
    NOT_YET_PUBLISHED = "not_yet_published"
    PUBLISHED_UPSTREAM = "published_upstream"
    VISIBLE_IN_REPLICA = "visible_in_replica"
    VISIBLE_IN_CATALOG = "visible_in_catalog"


class CanaryState(BaseModel):
    """
    Persisted between scheduled canary ticks.

    Stored as a small JSON object so consecutive invocations can measure
    elapsed time across cold starts.
    """

    package_name: str
    version: Optional[str] = None
    phase: CanaryPhase = CanaryPhase.NOT_YET_PUBLISHED

    published_at: Optional[datetime] = None
    upstream_modified_at: Optional[datetime] = None
    replica_seen_at: Optional[datetime] = None
    catalog_seen_at: Optional[datetime] = None
    estimated_replica_lag_seconds: Optional[float] = None

    # Last version that reached the catalog, never tracked twice
    retired_version: Optional[str] = None

    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def dwell_time(self) -> Optional[timedelta]:
        if self.published_at is None or self.replica_seen_at is None:
            return None
        return self.replica_seen_at - self.published_at

    @property
    def time_to_catalog(self) -> Optional[timedelta]:
        if self.published_at is None or self.catalog_seen_at is None:
            return None
        return self.catalog_seen_at - self.published_at

    @property
    def is_tracking(self) -> bool:
        """A version is being watched and has not reached the catalog yet"""
        return self.version is not None and self.phase != CanaryPhase.VISIBLE_IN_CATALOG
