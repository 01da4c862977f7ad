"""Public package surface for Burrow."""

from __future__ import annotations

from .client import EventReader, OpencodeClient, SessionProtocolClient
from .config import SessionsConfig
from .containers import (
    ContainerHandle,
    ContainerLimits,
    ContainerProvider,
    ContainerState,
    DockerContainerProvider,
    sweep_orphans,
)
from .errors import (
    AgentProtocolError,
    CapacityError,
    ContainerError,
    InstructionRequiredError,
    InvalidRequestError,
    PermissionNotPendingError,
    ProblemDetails,
    SessionsError,
    TaskForbiddenError,
    TaskNotCancellableError,
    TaskNotFoundError,
)
from .events import EventSink, FanoutEventSink, NoOpEventSink, TaskEventBroker
from .gate import ConcurrencyGate
from .models import ErrorCode, PermissionRequest, Task, TaskEvent, TaskStatus
from .runner import PermissionDecider, TaskRunner, surface_to_operator
from .service import SessionsService
from .sse import format_sse, parse_sse_chunk
from .store import InMemoryTaskRepository, TaskRepository
from .supervisor import TaskRunnerSupervisor
from .telemetry import LoggingTelemetrySink, NoOpTaskTelemetrySink, TaskTelemetryEvent, TaskTelemetrySink

__all__ = [
    "__version__",
    "SessionsService",
    "SessionsConfig",
    "Task",
    "TaskEvent",
    "TaskStatus",
    "ErrorCode",
    "PermissionRequest",
    "PermissionDecider",
    "surface_to_operator",
    "TaskRunner",
    "TaskRunnerSupervisor",
    "ConcurrencyGate",
    "ContainerProvider",
    "ContainerLimits",
    "ContainerHandle",
    "ContainerState",
    "DockerContainerProvider",
    "sweep_orphans",
    "SessionProtocolClient",
    "OpencodeClient",
    "EventReader",
    "parse_sse_chunk",
    "format_sse",
    "TaskRepository",
    "InMemoryTaskRepository",
    "EventSink",
    "NoOpEventSink",
    "FanoutEventSink",
    "TaskEventBroker",
    "TaskTelemetryEvent",
    "TaskTelemetrySink",
    "NoOpTaskTelemetrySink",
    "LoggingTelemetrySink",
    "SessionsError",
    "ProblemDetails",
    "InstructionRequiredError",
    "InvalidRequestError",
    "CapacityError",
    "TaskNotFoundError",
    "TaskForbiddenError",
    "TaskNotCancellableError",
    "PermissionNotPendingError",
    "AgentProtocolError",
    "ContainerError",
]

__version__ = "0.1.0"
