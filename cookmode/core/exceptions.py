from datetime import UTC, datetime
from typing import Any


class CookModeException(Exception):
    """Base exception for the job subsystem."""

    code = "internal_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return create_error_response(self.code, self.message, self.details)


class ValidationError(CookModeException):
    """Raised when an operation payload fails validation. Never enqueued."""

    code = "validation_error"


class DuplicateJobError(CookModeException):
    """Raised when a job id is enqueued twice."""

    code = "duplicate_job"

    def __init__(self, job_id: Any):
        super().__init__(f"Job already exists: {job_id}", {"job_id": str(job_id)})


class NotFoundError(CookModeException):
    """Raised when a job id is unknown."""

    code = "not_found"

    def __init__(self, job_id: Any):
        super().__init__(f"Job not found: {job_id}", {"job_id": str(job_id)})


class InvalidTransitionError(CookModeException):
    """Raised when a job cannot move from its current state."""

    code = "invalid_transition"

    def __init__(self, job_id: Any, current: str, requested: str):
        super().__init__(
            f"Job {job_id} cannot move from {current} to {requested}",
            {"job_id": str(job_id), "current": current, "requested": requested},
        )


class HandlerError(CookModeException):
    """Base for failures raised while executing a job."""

    code = "handler_error"


class TransientHandlerError(HandlerError):
    """Failure worth retrying according to the backoff policy."""

    code = "transient_error"


class TerminalHandlerError(HandlerError):
    """Failure that makes further attempts pointless."""

    code = "terminal_error"


class CollaboratorError(TransientHandlerError):
    """An external collaborator call failed or timed out."""

    code = "collaborator_error"


def is_terminal(error: BaseException) -> bool:
    """Anything other than an explicit terminal failure is retried."""
    return isinstance(error, TerminalHandlerError)


def create_error_response(
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Create standardized error response envelope."""
    return {
        "ok": False,
        "error": {
            "message": message,
            "code": code,
            "details": details or {},
        },
        "timestamp": datetime.now(UTC).isoformat(),
    }
