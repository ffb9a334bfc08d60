"""
Custom exceptions for the sync pipeline with structured error context.

This module provides the exception hierarchy used by the marketplace
client, the record store, the stage executors and the orchestrator.
Each exception includes context information for debugging and
monitoring.

Exception Hierarchy:
    SyncError (base)
    ├── SourceAPIError
    │   ├── NetworkError            (retryable)
    │   ├── RateLimitError          (retryable)
    │   ├── AuthenticationError     (non-retryable)
    │   └── ResourceNotFoundError   (non-retryable)
    ├── StoreError
    │   ├── UpsertError
    │   └── RunStateError
    ├── StageConfigurationError
    ├── SyncCancelledError
    ├── SyncAlreadyRunningError
    ├── MarketValueError
    └── RetryableError / NonRetryableError (mixins)

Stage executors never let these escape: they are caught at the stage
boundary and folded into a StageResult.
"""

from typing import Optional, Dict, Any
from datetime import datetime


class SyncError(Exception):
    """
    Base exception for all sync-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (stage, resource, cursor, etc.)
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
        self.timestamp = datetime.utcnow()

        self.context["error_timestamp"] = self.timestamp.isoformat()

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

class RetryableError(SyncError):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 403/429 from the marketplace gateway)
    - Service unavailable (HTTP 5xx)
    """
    pass


class NonRetryableError(SyncError):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Authentication failures (HTTP 401)
    - Resource not found (HTTP 404)
    - Invalid stage configuration
    """
    pass


# ============================================================================
# Upstream (marketplace API) Errors
# ============================================================================

class SourceAPIError(SyncError):
    """
    Exception raised when a marketplace API request fails.

    Context should include:
        - api_url: The endpoint that failed
        - resource: players, sales or listings
        - status_code: HTTP status code (if applicable)
        - retry_count: Number of attempts made
    """
    pass


class NetworkError(RetryableError, SourceAPIError):
    """Timeouts, connection failures and 5xx responses."""
    pass


class RateLimitError(RetryableError, SourceAPIError):
    """Rate limiting responses (HTTP 403/429) that should be retried with backoff."""

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


class AuthenticationError(NonRetryableError, SourceAPIError):
    """Authentication failures (HTTP 401) that should not be retried."""
    pass


class ResourceNotFoundError(NonRetryableError, SourceAPIError):
    """Resource not found errors (HTTP 404) that should not be retried."""
    pass


# ============================================================================
# Store Errors
# ============================================================================

class StoreError(SyncError):
    """
    Exception raised when record store operations fail.

    Context should include:
        - operation: Type of operation (UPSERT, SELECT, UPDATE)
        - table_name: Name of the table
    """
    pass


class UpsertError(StoreError):
    """
    A batch upsert failed as a whole.

    Context should include:
        - table_name: Target table
        - batch_size: Records in the failed batch
    """
    pass


class RunStateError(StoreError):
    """Reading or writing orchestrator run state or stage state failed."""
    pass


# ============================================================================
# Orchestration Errors
# ============================================================================

class StageConfigurationError(NonRetryableError, ValueError):
    """Invalid stage name, non-chunkable stage or bad chunk parameters."""
    pass


class SyncCancelledError(SyncError):
    """
    Raised internally when a stop request is observed.

    Cancellation is a terminal state, not a failure.
    """
    pass


class SyncAlreadyRunningError(SyncError):
    """Another orchestrator run currently holds the run lock."""
    pass


class MarketValueError(SyncError):
    """Market value computation could not complete."""
    pass
