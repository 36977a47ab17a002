"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List
from datetime import datetime

from core.clock import utc_now
from models.base import RunStatus
from schemas.canary import CanaryPhase

# ============================================================================
# Health Check Schemas
# ============================================================================

class MarkerInfo(BaseModel):
    """Persisted change-feed position"""
    feed_name: str
    marker: int
    total_saves: int
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class RunSummary(BaseModel):
    run_id: str
    feed_name: str
    status: RunStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    marker_before: Optional[int] = None
    marker_after: Optional[int] = None
    change_count: int = 0
    relevant_count: int = 0
    notified_count: int = 0
    unprocessable_count: int = 0
    staging_failure_count: int = 0
    stopped_early: bool = False
    error_message: Optional[str] = None

    class Config:
        from_attributes = True
        use_enum_values = True

    @validator("run_id", pre=True)
    def stringify_run_id(cls, v):
        return str(v)

    @validator("change_count", "relevant_count", "notified_count",
               "unprocessable_count", "staging_failure_count", pre=True)
    def default_zero(cls, v):
        return v or 0


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    database_connected: bool
    marker: Optional[MarkerInfo] = None
    last_run: Optional[RunSummary] = None
    status: str = Field(None, description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=utc_now)

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Unhealthy without a database, degraded after a failed or partial run"""
        if not values.get("database_connected", False):
            return "unhealthy"

        last_run = values.get("last_run")
        if last_run is None:
            return "healthy"  # Nothing has run yet

        if last_run.status in (RunStatus.FAILED.value, RunStatus.PARTIAL.value):
            return "degraded"
        return "healthy"

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "marker": {
                    "feed_name": "npmjs",
                    "marker": 31400512,
                    "total_saves": 1520,
                    "updated_at": "2024-01-15T10:29:41Z"
                }
            }
        }


# ============================================================================
# Statistics Schemas
# ============================================================================

class StatsResponse(BaseModel):
    """Statistics response model"""
    timestamp: datetime = Field(default_factory=utc_now)

    total_runs: int
    successful_runs: int
    partial_runs: int
    failed_runs: int

    total_changes: int
    total_relevant: int
    total_notified: int
    total_unprocessable: int
    total_staging_failures: int
    pending_deferred_versions: int

    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    avg_run_duration_seconds: Optional[float] = None

    recent_runs: List[RunSummary] = Field(default_factory=list)

    class Config:
        json_schema_extra = {
            "example": {
                "timestamp": "2024-01-15T10:30:00Z",
                "total_runs": 96,
                "successful_runs": 94,
                "partial_runs": 1,
                "failed_runs": 1,
                "total_changes": 48210,
                "total_relevant": 37,
                "total_notified": 36,
                "pending_deferred_versions": 1,
                "avg_run_duration_seconds": 41.7
            }
        }


# ============================================================================
# Canary Schemas
# ============================================================================

class CanaryStatusResponse(BaseModel):
    package_name: str
    version: Optional[str] = None
    phase: CanaryPhase
    retired_version: Optional[str] = None
    published_at: Optional[datetime] = None
    dwell_time_seconds: Optional[float] = None
    time_to_catalog_seconds: Optional[float] = None
    estimated_replica_lag_seconds: Optional[float] = None
    updated_at: datetime

    class Config:
        use_enum_values = True


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)
