from __future__ import annotations

from typing import ClassVar


class WorkflowError(Exception):
    kind: ClassVar[str] = "error"
    status_code: ClassVar[int] = 500


class NotFoundError(WorkflowError):
    kind = "not_found"
    status_code = 404


class UnauthorizedError(WorkflowError):
    kind = "unauthorized"
    status_code = 401


class PermissionDeniedError(WorkflowError):
    kind = "forbidden"
    status_code = 403


class WorkflowValidationError(WorkflowError):
    kind = "validation"
    status_code = 400


class ConflictError(WorkflowError):
    kind = "conflict"
    status_code = 409


class InvalidTransitionError(ConflictError):
    kind = "invalid_transition"


class ConcurrentModificationError(ConflictError):
    kind = "concurrent_modification"
