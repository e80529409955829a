"""
SQP Sync Error Taxonomy
=======================

Exceptions raised by the extraction, reconciliation and state layers.

Hierarchy:
    SQPSyncError
    ├── ExtractionError        - warehouse query/network failure
    ├── ReconciliationError    - parent upsert or lookup failure
    ├── RateLimitError         - retry budget exhausted
    ├── DuplicateFieldError    - schema evolution conflict
    ├── InvalidTransitionError - state machine violation
    ├── LockContention         - pipeline lock not acquired
    └── DatabaseError          - relational store failure
"""

from typing import Optional, Dict, Any, List


class SQPSyncError(Exception):
    """Base exception for the sync pipeline."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class ExtractionError(SQPSyncError):
    """Warehouse query failed."""

    def __init__(self, message: str, rate_limited: bool = False, details: Optional[Dict[str, Any]] = None):
        self.rate_limited = rate_limited
        super().__init__(
            message,
            error_code="RATE_LIMITED" if rate_limited else "EXTRACTION_FAILED",
            details=details,
        )


class ReconciliationError(SQPSyncError):
    """Parent records could not be written or resolved."""

    def __init__(self, message: str, table: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.table = table
        super().__init__(message, error_code="RECONCILIATION_FAILED", details=details)


class RateLimitError(SQPSyncError):
    """Rate-limit retry budget exhausted."""

    def __init__(self, operation: str, attempts: int):
        self.operation = operation
        self.attempts = attempts
        super().__init__(
            f"Rate limit retries exhausted for {operation} after {attempts} attempts",
            error_code="RATE_LIMIT_EXHAUSTED",
        )


class DuplicateFieldError(SQPSyncError):
    """Schema update tried to add columns that already exist."""

    def __init__(self, table: str, fields: List[str]):
        self.table = table
        self.fields = list(fields)
        super().__init__(
            f"Fields already exist in {table}: {', '.join(self.fields)}",
            error_code="DUPLICATE_FIELD",
        )


class InvalidTransitionError(SQPSyncError):
    """Requested pipeline status change is not allowed."""

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid state transition: {from_status} -> {to_status}",
            error_code="INVALID_TRANSITION",
        )


class LockContention(SQPSyncError):
    """Pipeline lock is held by another run."""

    def __init__(self, pipeline_id: str, holder: Optional[str] = None):
        self.pipeline_id = pipeline_id
        self.holder = holder
        message = f"Pipeline {pipeline_id} is locked"
        if holder:
            message += f" by {holder}"
        super().__init__(message, error_code="LOCKED")


class DatabaseError(SQPSyncError):
    """Database operation error."""
    pass


def is_rate_limit_error(exc: BaseException) -> bool:
    """Check whether an exception represents a rate-limit response."""
    if isinstance(exc, ExtractionError):
        return exc.rate_limited
    if getattr(exc, "code", None) == 429:
        return True
    error_msg = str(exc).lower()
    return (
        "rate limit" in error_msg
        or "too many requests" in error_msg
        or "ratelimitexceeded" in error_msg
    )
