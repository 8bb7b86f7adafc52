"""Exception hierarchy for the points engine.

Every error carries a machine-readable ``code`` so callers can branch on it
without parsing messages. A rejected daily claim is NOT an error: it is a
normal ``ClaimResult`` with ``granted=False``.
"""

from __future__ import annotations

from typing import Any


class DojoError(Exception):
    """Base class for all application-level errors."""

    http_status: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "detail": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(DojoError):
    """Bad input: missing student, zero amount, unknown category. No write attempted."""

    http_status = 422
    code = "VALIDATION_ERROR"


class NotFoundError(DojoError):
    http_status = 404
    code = "NOT_FOUND"


class ForbiddenError(DojoError):
    http_status = 403
    code = "FORBIDDEN"


class StoreUnavailableError(DojoError):
    """A transactional write failed. Retryable; nothing was partially applied."""

    http_status = 503
    code = "STORE_UNAVAILABLE"


class InconsistentStateError(DojoError):
    """A claim or badge was committed but its paired ledger append failed.

    Never retried automatically: a blind retry risks paying twice. Operators
    reconcile from the ``details`` payload.
    """

    http_status = 500
    code = "INCONSISTENT_STATE"


class ConflictError(DojoError):
    """The target was already transitioned, e.g. a sprint completed twice."""

    http_status = 409
    code = "CONFLICT"


class AwardFollowUpError(StoreUnavailableError):
    """Badge awards (and their points) are committed but the recompute or
    notification that follows them failed. ``details["student_ids"]`` names
    the students who now hold the badge.
    """

    code = "AWARD_FOLLOW_UP_FAILED"
