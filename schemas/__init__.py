"""
Pydantic schemas for data validation and serialization.

This package defines the models that flow through the discovery pipeline
and out of the API:

Schemas:
    feed: Change records, candidate versions, staged artifacts, notifications
    canary: Persisted package canary state
    api: API endpoint response schemas

Usage:
    from schemas.feed import ChangeRecord, Notification
    from schemas.api import HealthCheckResponse, StatsResponse

Example:
    record = ChangeRecord(sequence_id=101, name="@aws-cdk/core", version="1.2.3")

    # Records are frozen once read from the feed
    assert record.sequence_id == 101

Validation:
    - Sequence ids are non-negative
    - Timestamps are normalized to UTC
    - Notification messages serialize with stable camelCase keys
"""

__all__ = [
    "ChangeRecord",
    "FeedBatch",
    "CandidateVersion",
    "StagedArtifact",
    "Notification",
    "CanaryPhase",
    "CanaryState",
    "HealthCheckResponse",
    "StatsResponse",
    "CanaryStatusResponse",
]
