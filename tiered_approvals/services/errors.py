"""
Approval level errors.

Every error carries a stable ``code`` and the HTTP status the API answers
with; routes render them as ``{"error": {"code": ..., "message": ...}}``.
"""

from typing import Optional


class ApprovalLevelError(Exception):
    code = "APPROVAL_LEVEL_ERROR"
    status_code = 400
    retryable = False

    def __init__(self, message: str, *, level_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.level_id = level_id

    def to_detail(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "retryable": self.retryable,
            }
        }


class NotFound(ApprovalLevelError):
    code = "APPROVAL_LEVEL_NOT_FOUND"
    status_code = 404


class ValidationError(ApprovalLevelError):
    code = "APPROVAL_LEVEL_INVALID"
    status_code = 422


class ConflictError(ApprovalLevelError):
    """The level changed since the caller read it (stale ``updated_at``)."""

    code = "APPROVAL_LEVEL_CONFLICT"
    status_code = 409


class TransientBackendError(ApprovalLevelError):
    code = "BACKEND_UNAVAILABLE"
    status_code = 503
    retryable = True


class InternalError(ApprovalLevelError):
    code = "INTERNAL_ERROR"
    status_code = 500
