from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict

_TYPE_ROOT = "https://burrow.dev/errors"


class ProblemDetails(BaseModel):
    type: str
    title: str
    status: int
    detail: str | None = None
    code: str | None = None

    model_config = ConfigDict(extra="allow")


class SessionsError(Exception):
    """Base class for errors returned by the public task operations."""

    def __init__(
        self,
        *,
        status_code: int,
        code: str,
        title: str,
        detail: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(detail or title)
        self.status_code = status_code
        self.code = code
        self.type_uri = f"{_TYPE_ROOT}/{code.replace('_', '-')}"
        self.title = title
        self.detail = detail
        self.extra = extra or {}

    def to_problem_details(self) -> ProblemDetails:
        payload: dict[str, Any] = {
            "type": self.type_uri,
            "title": self.title,
            "status": self.status_code,
            "code": self.code,
        }
        if self.detail:
            payload["detail"] = self.detail
        if self.extra:
            payload.update(self.extra)
        return ProblemDetails.model_validate(payload)


class InstructionRequiredError(SessionsError):
    def __init__(self) -> None:
        super().__init__(
            status_code=422,
            code="instruction_required",
            title="Instruction is required",
            detail="The instruction must contain non-whitespace text.",
        )


class InvalidRequestError(SessionsError):
    def __init__(self, detail: str) -> None:
        super().__init__(
            status_code=400,
            code="invalid_request",
            title="Invalid request",
            detail=detail,
        )


class CapacityError(SessionsError):
    def __init__(self, owner_id: str, limit: int) -> None:
        super().__init__(
            status_code=429,
            code="concurrent_limit_reached",
            title="Concurrent task limit reached",
            detail=f"Owner '{owner_id}' already has {limit} active task(s).",
            extra={"limit": limit},
        )


class TaskNotFoundError(SessionsError):
    def __init__(self, task_id: str) -> None:
        super().__init__(
            status_code=404,
            code="task_not_found",
            title="Task not found",
            detail=f"Task '{task_id}' was not found.",
        )


class TaskForbiddenError(SessionsError):
    def __init__(self, task_id: str) -> None:
        super().__init__(
            status_code=403,
            code="task_forbidden",
            title="Task belongs to another owner",
            detail=f"Task '{task_id}' cannot be modified by this owner.",
        )


class TaskNotCancellableError(SessionsError):
    def __init__(self, task_id: str, status: str) -> None:
        super().__init__(
            status_code=409,
            code="task_not_cancellable",
            title="Task not cancellable",
            detail=f"Task '{task_id}' is already {status}.",
        )


class PermissionNotPendingError(SessionsError):
    def __init__(self, task_id: str, permission_id: str) -> None:
        super().__init__(
            status_code=409,
            code="permission_not_pending",
            title="Permission not pending",
            detail=f"Task '{task_id}' has no pending permission '{permission_id}'.",
        )


class AgentProtocolError(RuntimeError):
    """Raised by the agent API client on transport failures or unexpected replies."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ContainerError(RuntimeError):
    """Raised by container providers when the engine rejects an operation."""


__all__ = [
    "AgentProtocolError",
    "CapacityError",
    "ContainerError",
    "InstructionRequiredError",
    "InvalidRequestError",
    "PermissionNotPendingError",
    "ProblemDetails",
    "SessionsError",
    "TaskForbiddenError",
    "TaskNotCancellableError",
    "TaskNotFoundError",
]
