"""Lifecycle telemetry for orchestrated coding tasks.

The service reports admission and the runner reports the terminal outcome of
each task, including the container and agent session it used and how long it
ran. Sinks never affect the task itself: emission errors are logged by the
caller and otherwise ignored.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field

from .models import TaskStatus

TaskEventType = Literal["task_created", "task_completed", "task_failed", "task_cancelled"]


class TaskTelemetryEvent(BaseModel):
    event_type: TaskEventType
    task_id: str
    owner_id: str
    status: TaskStatus
    error: str | None = None
    container_id: str | None = None
    session_id: str | None = None
    duration_ms: float | None = None
    created_at_s: float = Field(default_factory=time.time)
    extra: dict[str, Any] = Field(default_factory=dict)


class TaskTelemetrySink(Protocol):
    """Receives one event at admission and one when the task ends."""

    async def emit(self, event: TaskTelemetryEvent) -> None: ...


class NoOpTaskTelemetrySink:
    """Default sink when the embedding application wires none."""

    async def emit(self, event: TaskTelemetryEvent) -> None:
        del event


class LoggingTelemetrySink:
    """Writes telemetry events to a logger as structured records."""

    def __init__(self, logger: logging.Logger | None = None, *, level: int = logging.INFO) -> None:
        self._logger = logger or logging.getLogger("burrow.telemetry")
        self._level = level

    async def emit(self, event: TaskTelemetryEvent) -> None:
        self._logger.log(self._level, event.event_type, extra=event.model_dump(mode="json", exclude={"extra"}))


__all__ = [
    "LoggingTelemetrySink",
    "NoOpTaskTelemetrySink",
    "TaskEventType",
    "TaskTelemetryEvent",
    "TaskTelemetrySink",
]
