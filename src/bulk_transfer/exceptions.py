# src/bulk_transfer/exceptions.py

"""
Shared custom exceptions for the bulk transfer engine.

Centralizing exception definitions in a separate module prevents circular
import errors between other modules that need to raise or catch them.

Exception Hierarchy:
- BulkTransferError (base)
  - RetryableError (the runtime may restart the step from its last checkpoint)
    - FetchError
      - FetchTimeoutError
    - UploadError
      - S3ThrottlingError
      - S3TimeoutError
  - NonRetryableError (operator intervention required)
    - SerializationError (record-level, recovered locally)
    - CheckpointCorruptionError
    - PartitionPlanningError
    - ConfigurationError
    - ValidationError
    - S3AccessDeniedError
    - S3ObjectNotFoundError
    - S3UploadNotFoundError
  - StopRequested (graceful cancellation, handled by the orchestrator)
"""

from typing import Any, Dict, Optional


class BulkTransferError(Exception):
    """Base exception for all bulk transfer errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.context = dict(context) if context else {}  # Copy context to prevent mutation
        self.correlation_id = correlation_id

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "correlation_id": self.correlation_id,
            "retryable": isinstance(self, RetryableError),
        }


class RetryableError(BulkTransferError):
    """Base class for errors that can be retried."""

    pass


class NonRetryableError(BulkTransferError):
    """Base class for errors that should not be retried."""

    pass


# === Record-Level Errors ===


class SerializationError(NonRetryableError):
    """Raised when a single record cannot be serialized. Never aborts a chunk."""

    def __init__(self, reason: str, **kwargs):
        message = f"Record serialization failed: {reason}"
        context = {"reason": reason}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        super().__init__(
            message, error_code="SERIALIZATION_FAILED", context=context, **kwargs
        )


# === Source Errors ===


class FetchError(RetryableError):
    """Raised when the query source cannot produce a page."""

    def __init__(self, category: str, page_number: int, reason: str, **kwargs):
        message = f"Fetch failed for {category} page {page_number}: {reason}"
        context = {"category": category, "page_number": page_number, "reason": reason}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        kwargs.setdefault("error_code", "FETCH_FAILED")
        super().__init__(message, context=context, **kwargs)


class FetchTimeoutError(FetchError):
    """Raised when a page fetch exceeds its time budget."""

    def __init__(self, category: str, page_number: int, timeout_seconds: float, **kwargs):
        super().__init__(
            category,
            page_number,
            f"timed out after {timeout_seconds}s",
            error_code="FETCH_TIMEOUT",
            context={"timeout_seconds": timeout_seconds},
            **kwargs,
        )


# === Object Store Errors ===


class UploadError(RetryableError):
    """Raised when a part upload or session completion fails."""

    def __init__(self, reason: str, **kwargs):
        message = f"Upload failed: {reason}"
        context = {"reason": reason}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        kwargs.setdefault("error_code", "UPLOAD_FAILED")
        super().__init__(message, context=context, **kwargs)


class S3ThrottlingError(UploadError):
    """Raised when S3 operations are being throttled."""

    def __init__(self, operation: str, **kwargs):
        context = {"operation": operation}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        super().__init__(
            f"S3 operation throttled: {operation}",
            error_code="S3_THROTTLING",
            context=context,
            **kwargs,
        )


class S3TimeoutError(UploadError):
    """Raised when S3 operations timeout."""

    def __init__(self, operation: str, timeout_seconds: float, **kwargs):
        # Start with provided context, then add our default context
        context = {}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        context.update({"operation": operation, "timeout_seconds": timeout_seconds})
        super().__init__(
            f"S3 operation timed out after {timeout_seconds}s: {operation}",
            error_code="S3_TIMEOUT",
            context=context,
            **kwargs,
        )


class S3Error(NonRetryableError):
    """Base class for non-retryable S3 errors."""

    pass


class S3ObjectNotFoundError(S3Error):
    """Raised when a requested S3 object does not exist."""

    def __init__(self, bucket: str, key: str, **kwargs):
        message = f"S3 object not found: s3://{bucket}/{key}"
        context = {"bucket": bucket, "key": key}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        super().__init__(message, error_code="S3_OBJECT_NOT_FOUND", context=context, **kwargs)


class S3AccessDeniedError(S3Error):
    """Raised when access is denied to an S3 object."""

    def __init__(self, bucket: str, key: str, **kwargs):
        message = f"Access denied to S3 object: s3://{bucket}/{key}"
        context = {"bucket": bucket, "key": key}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        super().__init__(message, error_code="S3_ACCESS_DENIED", context=context, **kwargs)


class S3UploadNotFoundError(S3Error):
    """Raised when a multi-part upload id is unknown (aborted or already completed)."""

    def __init__(self, bucket: str, key: str, upload_id: str, **kwargs):
        message = f"Multi-part upload {upload_id} not found for s3://{bucket}/{key}"
        context = {"bucket": bucket, "key": key, "upload_id": upload_id}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        super().__init__(message, error_code="S3_UPLOAD_NOT_FOUND", context=context, **kwargs)


# === Checkpoint & Planning Errors ===


class CheckpointCorruptionError(NonRetryableError):
    """Raised when persisted checkpoint state is malformed or inconsistent."""

    def __init__(self, reason: str, **kwargs):
        message = f"Checkpoint is corrupt: {reason}"
        context = {"reason": reason}
        if "context" in kwargs:
            context.update(kwargs.pop("context"))
        super().__init__(
            message, error_code="CHECKPOINT_CORRUPTION", context=context, **kwargs
        )


class PartitionPlanningError(NonRetryableError):
    """Raised once when a job cannot be split into any partition."""

    def __init__(self, message: str, **kwargs):
        if "error_code" not in kwargs:
            kwargs["error_code"] = "PARTITION_PLANNING_FAILED"
        super().__init__(message, **kwargs)


class ValidationError(NonRetryableError):
    """Raised when an object key, label or prefix is unsafe."""

    pass


class ConfigurationError(NonRetryableError):
    """Raised when there's an error in the application configuration."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="CONFIGURATION_ERROR", **kwargs)


# === Cooperative Cancellation ===


class StopRequested(BulkTransferError):
    """
    Raised inside a partition's fetch path when the shared stop flag is set.
    The orchestrator turns it into a graceful stop; it never reaches the runtime.
    """

    def __init__(self, where: str, **kwargs):
        super().__init__(
            f"Stop requested before {where}",
            error_code="STOP_REQUESTED",
            context={"where": where},
            **kwargs,
        )


# === Utility Functions ===


def is_retryable_error(error: Exception) -> bool:
    """Check if an error is retryable."""
    return isinstance(error, RetryableError)


def get_error_context(error: Exception) -> Dict[str, Any]:
    """Extract error context for logging."""
    if isinstance(error, BulkTransferError):
        return error.to_dict()
    else:
        return {
            "error_type": error.__class__.__name__,
            "message": str(error),
            "retryable": False,  # Unknown errors default to non-retryable
        }
