"""
Custom exceptions for the discovery pipeline with structured error context.

This module provides the exception hierarchy used by the scanner, the
package canary and their collaborators. Each exception includes context
information for debugging and monitoring.

Exception Hierarchy:
    DiscoveryException (base)
    ├── FeedError
    │   ├── TransientFeedError (retryable)
    │   └── FatalFeedError (non-retryable)
    ├── MalformedRecord
    ├── StagingError
    ├── DeliveryError
    ├── CheckpointError
    ├── CanaryError
    ├── HttpError
    │   ├── NetworkError / RateLimitError (retryable)
    │   └── AuthenticationError / ResourceNotFoundError (non-retryable)
    └── RetryableError / NonRetryableError (mixins)

Propagation policy:
    Per-record errors (MalformedRecord, StagingError) are contained by the
    scanner and never abort a healthy run. Errors that threaten checkpoint
    correctness (FeedError, DeliveryError, CheckpointError) abort the run.
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class DiscoveryException(Exception):
    """
    Base exception for all discovery-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (package, url, sequence, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

        # Add timestamp to context
        self.context["error_timestamp"] = self.timestamp.isoformat()

        # Chain original exception if provided
        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(DiscoveryException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Service unavailable (HTTP 5xx)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0
    ):
        super().__init__(message, context, original_exception)
        self.max_retries = max_retries
        self.retry_delay = retry_delay


class NonRetryableError(DiscoveryException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Authentication failures (HTTP 401, 403)
    - Malformed upstream responses
    - Resource not found (HTTP 404)
    """
    pass


# ============================================================================
# HTTP Errors
# ============================================================================

class HttpError(DiscoveryException):
    """
    Base exception for outbound HTTP failures.

    Context should include:
        - url: The URL that failed
        - status_code: HTTP status code (if applicable)
        - retry_count: Number of attempts made
    """
    pass


class NetworkError(RetryableError, HttpError):
    """Timeouts, connection failures and 5xx responses that should be retried."""
    pass


class RateLimitError(RetryableError, HttpError):
    """Rate limiting errors (HTTP 429) that should be retried with backoff."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after  # Seconds to wait before retry
        if retry_after:
            self.context["retry_after"] = retry_after


class AuthenticationError(NonRetryableError, HttpError):
    """Authentication failures (HTTP 401, 403) that should not be retried."""
    pass


class ResourceNotFoundError(NonRetryableError, HttpError):
    """Resource not found errors (HTTP 404) that should not be retried."""
    pass


# ============================================================================
# Feed Errors
# ============================================================================

class FeedError(DiscoveryException):
    """Base exception for change feed failures. Aborts the current run."""
    pass


class TransientFeedError(RetryableError, FeedError):
    """
    The feed kept failing with transient errors after all retries.

    Context should include:
        - feed_url: The feed endpoint
        - position: The position the read started from
        - retry_count: Number of attempts made
    """
    pass


class FatalFeedError(NonRetryableError, FeedError):
    """
    The feed returned something that cannot be processed (bad body, 4xx).

    Context should include:
        - feed_url: The feed endpoint
        - position: The position the read started from
        - response_body: Response body (truncated)
    """
    pass


# ============================================================================
# Per-record Errors
# ============================================================================

class MalformedRecord(NonRetryableError):
    """
    A change record failed required-field validation.

    Context should include:
        - sequence_id: Feed position of the record
        - field_name: Field that failed validation
    """
    pass


class StagingError(DiscoveryException):
    """
    Exception raised when a package artifact could not be staged.

    Raised on tarball fetch failure, checksum mismatch or storage-write
    failure.

    Context should include:
        - package_name / package_version
        - tarball_url
        - staged_key (if the write was attempted)
    """
    pass


# ============================================================================
# Run-fatal Errors
# ============================================================================

class DeliveryError(DiscoveryException):
    """
    Exception raised when the notification queue rejects a message.

    Context should include:
        - queue_url
        - package_name / package_version
    """
    pass


class CheckpointError(DiscoveryException):
    """
    Exception raised when marker management fails.

    Context should include:
        - feed_name: Name of the change feed
        - marker: The marker value that failed
        - operation: Operation that failed (load, save)
    """
    pass


class CanaryError(DiscoveryException):
    """
    Exception raised when a canary probe or state operation fails.

    Context should include:
        - package_name
        - probe: upstream, replica, catalog or state
    """
    pass
