"""
Boomerang error taxonomy.

Every failure the core surfaces to a caller is one of these. Each carries a
stable code so the API layer can map it to a transport status without
inspecting messages.
"""

from typing import Any, Dict, Optional


class BoomerangError(Exception):
    """Base error with structured details."""
    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class NotFoundError(BoomerangError):
    """A task, subtask, approval, context or mode id does not resolve."""
    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(
            code="NOT_FOUND",
            message=f"{kind.capitalize()} {identifier} not found",
            details={"kind": kind, "id": identifier},
        )


class InvalidStateError(BoomerangError):
    """The record is not in a state that permits the requested transition."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(code="INVALID_STATE", message=message, details=details)


class ExecutionFailure(BoomerangError):
    """The chosen execution strategy raised while running a subtask."""
    def __init__(self, subtask_id: str, reason: str):
        self.subtask_id = subtask_id
        self.reason = reason
        super().__init__(
            code="EXECUTION_FAILED",
            message=f"Subtask {subtask_id} failed: {reason}",
            details={"subtask_id": subtask_id, "reason": reason},
        )


class CapacityExceededError(BoomerangError):
    """The queue is full or a concurrency ceiling has been reached."""
    def __init__(self, message: str, limit: int):
        self.limit = limit
        super().__init__(
            code="CAPACITY_EXCEEDED",
            message=message,
            details={"limit": limit},
        )


class ApprovalRejectedError(BoomerangError):
    """The subtask was rejected by the approval gate and will not run."""
    def __init__(self, subtask_id: str, reason: Optional[str] = None):
        super().__init__(
            code="APPROVAL_REJECTED",
            message=f"Subtask {subtask_id} was rejected" + (f": {reason}" if reason else ""),
            details={"subtask_id": subtask_id, "reason": reason},
        )
