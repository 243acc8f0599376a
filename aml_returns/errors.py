"""
Error Taxonomy

Every rejected lifecycle or registry operation raises one of these, each
carrying a machine-readable ``reason`` that callers can act on.
"""

from typing import Optional


class ReturnsError(Exception):
    """Base exception for returns operations."""
    reason = "operation_failed"

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if reason:
            self.reason = reason


class NotFoundError(ReturnsError):
    """Raised when a submission, organization or user does not exist."""
    reason = "not_found"


class ForbiddenError(ReturnsError):
    """Raised when the caller's role or organization does not permit the operation."""
    reason = "forbidden"


class InvalidStateError(ReturnsError):
    """Raised when an operation is not allowed from the record's current state."""
    reason = "wrong_status"


class BelowThresholdError(InvalidStateError):
    """Raised when a submission is sent for review below the completion threshold."""
    reason = "below_threshold"


class ValidationError(ReturnsError, ValueError):
    """Raised for malformed payloads and missing rejection reasons."""
    reason = "invalid_payload"


class ConflictError(ReturnsError):
    """Raised when a unique value (organization code, user email) is taken."""
    reason = "conflict"


class DuplicatePeriodError(ConflictError):
    """Raised when the organization already has a submission for the period."""
    reason = "duplicate_period"
