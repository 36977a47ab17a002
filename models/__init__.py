"""
SQLAlchemy ORM models for the discovery bookkeeping tables.

Models:
    base: Base declarative class, portable JSON type and RunStatus enum
    checkpoint: Change-feed marker, one row per feed
    discovery_run: Scanner invocation audit trail and counters
    deferred_version: Candidates whose staging failed, awaiting retry

Database Schema:
    All models inherit from the Base declarative class. JSON columns use
    JSONB on PostgreSQL and plain JSON on other dialects, so the same
    metadata works against SQLite in tests.

Usage:
    from models import DiscoveryMarker, DiscoveryRun, DeferredVersion
    from models.base import RunStatus
"""

from models.base import Base, RunStatus
from models.checkpoint import DiscoveryMarker
from models.discovery_run import DiscoveryRun
from models.deferred_version import DeferredVersion

__all__ = [
    "Base",
    "RunStatus",
    "DiscoveryMarker",
    "DiscoveryRun",
    "DeferredVersion",
]
