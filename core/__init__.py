"""
Core utilities and configuration for the registry discovery service.

This package provides foundational components used by the scanner and the
package canary:

Modules:
    config: Application configuration and environment variable management
    database: Database connection and session management
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities
    metrics: Named counter/gauge emission with pluggable backends
    clock: Wall-clock helpers (timezone-aware UTC)

Usage:
    from core.config import settings
    from core.database import async_session_maker
    from core.exceptions import StagingError, DeliveryError
    from core.logging import setup_logging
    from core.metrics import MetricsRecorder, MetricUnit

Example:
    # Initialize logging
    setup_logging()

    # Get database session
    async with async_session_maker() as session:
        # Perform database operations
        pass
"""

__all__ = [
    "settings",
    "async_session_maker",
    "setup_logging",
    "MetricsRecorder",
    "MetricUnit",
    # Exceptions
    "DiscoveryException",
    "RetryableError",
    "NonRetryableError",
    "HttpError",
    "NetworkError",
    "RateLimitError",
    "AuthenticationError",
    "ResourceNotFoundError",
    "FeedError",
    "TransientFeedError",
    "FatalFeedError",
    "MalformedRecord",
    "StagingError",
    "DeliveryError",
    "CheckpointError",
    "CanaryError",
]
