"""Task and event models for sandboxed coding sessions."""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def _utc_now() -> datetime:
    return datetime.now(UTC)


class TaskStatus(str, Enum):
    PENDING = "pending"
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ErrorCode(str, Enum):
    """Stable error codes written onto failed tasks."""

    CONTAINER_START_FAILED = "container_start_failed"
    HEALTH_CHECK_TIMEOUT = "health_check_timeout"
    SESSION_CREATE_FAILED = "session_create_failed"
    PROMPT_SEND_FAILED = "prompt_send_failed"
    AGENT_ERROR = "agent_error"
    EVENT_STREAM_CLOSED = "event_stream_closed"
    TIMEOUT = "timeout"
    RUNNER_CRASHED = "runner_crashed"
    SHUTDOWN = "shutdown"


class Task(BaseModel):
    """One request to run an instruction inside an ephemeral agent container."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    instruction: str = Field(min_length=1)
    owner_id: str
    status: TaskStatus = TaskStatus.PENDING
    container_id: str | None = None
    container_port: int | None = None
    session_id: str | None = None
    error: str | None = None
    error_detail: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    @classmethod
    def new(cls, instruction: str, owner_id: str) -> Task:
        now = _utc_now()
        return cls(instruction=instruction, owner_id=owner_id, created_at=now, updated_at=now)

    def evolve(self, **fields: Any) -> Task:
        fields.setdefault("updated_at", _utc_now())
        return self.model_copy(update=fields)


class TaskEvent(BaseModel):
    """Envelope delivered to event sinks.

    ``status`` events describe runner transitions; ``agent`` events carry a
    decoded agent stream event unmodified in ``payload``.
    """

    task_id: str
    kind: Literal["status", "agent"]
    sequence: int = 0
    status: TaskStatus | None = None
    error: str | None = None
    payload: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=_utc_now)

    @property
    def terminal(self) -> bool:
        return self.kind == "status" and self.status in {
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
            TaskStatus.CANCELLED,
        }


PERMISSION_EVENT_TYPES = frozenset({"permission.asked", "permission.updated"})


class PermissionRequest(BaseModel):
    """Authorization prompt raised by the agent inside the container."""

    permission_id: str
    session_id: str | None = None
    permission: str | None = None
    title: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_event(cls, event: Mapping[str, Any]) -> PermissionRequest | None:
        if event.get("type") not in PERMISSION_EVENT_TYPES:
            return None
        properties = event.get("properties")
        source: Mapping[str, Any] = properties if isinstance(properties, Mapping) else event
        permission_id = source.get("id") or event.get("id")
        if not isinstance(permission_id, str) or not permission_id:
            return None
        permission = source.get("permission") or source.get("type")
        if permission == event.get("type"):
            permission = None
        return cls(
            permission_id=permission_id,
            session_id=source.get("sessionID") or event.get("sessionID"),
            permission=permission if isinstance(permission, str) else None,
            title=source.get("title") if isinstance(source.get("title"), str) else None,
            payload=dict(event),
        )


__all__ = [
    "ErrorCode",
    "PERMISSION_EVENT_TYPES",
    "PermissionRequest",
    "Task",
    "TaskEvent",
    "TaskStatus",
]
