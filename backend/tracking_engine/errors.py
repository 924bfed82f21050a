"""
ENGINE ERROR TAXONOMY

Every business-rule failure raised by the engine is a ProjectEngineError
carrying a stable code, a human message and a details dict (current value,
attempted value, limit) that the HTTP boundary renders verbatim.

    ValidationError        malformed input (range / type / precision)
    AuthorizationError     wrong role or wrong state for the actor
    BusinessRuleViolation  backward limit, jump limit, missing documents ...
    ConflictError          no-op change, version mismatch, key reuse
    NotFoundError          unknown project reference
    TransientError         store timeout / unavailability (retryable)

InvariantViolationError is outside the taxonomy: it signals a programming
error and propagates unmodified.
"""

from typing import Any, Dict, Optional


# Error codes
INVALID_VALUE = "INVALID_VALUE"
NO_PROGRESS_PROVIDED = "NO_PROGRESS_PROVIDED"
UNAUTHORIZED = "UNAUTHORIZED"
UPDATES_DISABLED = "UPDATES_DISABLED"
INVALID_TRANSITION = "INVALID_TRANSITION"
REJECTION_REASON_REQUIRED = "REJECTION_REASON_REQUIRED"
BACKWARD_NOT_ALLOWED = "BACKWARD_NOT_ALLOWED"
UNREALISTIC_JUMP = "UNREALISTIC_JUMP"
COMPLETION_REQUIRES_DOCUMENTS = "COMPLETION_REQUIRES_DOCUMENTS"
FINAL_BILL_DETAILS_REQUIRED = "FINAL_BILL_DETAILS_REQUIRED"
EXCEEDS_ESTIMATED_COST = "EXCEEDS_ESTIMATED_COST"
NO_OP = "NO_OP"
VERSION_CONFLICT = "VERSION_CONFLICT"
DUPLICATE_PROJECT = "DUPLICATE_PROJECT"
IDEMPOTENCY_KEY_REUSED = "IDEMPOTENCY_KEY_REUSED"
PROJECT_NOT_FOUND = "PROJECT_NOT_FOUND"
TRANSACTION_TIMEOUT = "TRANSACTION_TIMEOUT"
STORE_UNAVAILABLE = "STORE_UNAVAILABLE"


class ProjectEngineError(Exception):
    """Base class for typed engine failures."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}

    def __repr__(self):
        return f"{type(self).__name__}({self.code}: {self.message})"


class ValidationError(ProjectEngineError):
    pass


class AuthorizationError(ProjectEngineError):
    pass


class BusinessRuleViolation(ProjectEngineError):
    pass


class ConflictError(ProjectEngineError):
    pass


class ConcurrentModificationError(ConflictError):
    """Raised by a repository when the stored version moved under a commit."""
    def __init__(self, project_id: str, expected_version: int):
        self.project_id = project_id
        self.expected_version = expected_version
        super().__init__(
            VERSION_CONFLICT,
            f"Project {project_id} was modified concurrently (expected version {expected_version})",
            {"project_id": project_id, "expected_version": expected_version},
        )


class NotFoundError(ProjectEngineError):
    pass


class TransientError(ProjectEngineError):
    pass


class InvariantViolationError(Exception):
    """Raised when an aggregate invariant does not hold before commit"""
    def __init__(self, violation_type: str, message: str, details: dict = None):
        self.violation_type = violation_type
        self.message = message
        self.details = details or {}
        super().__init__(message)
