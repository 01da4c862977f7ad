"""State machine that owns one task from admission to teardown.

A runner drives container provisioning, health polling, session creation,
prompt dispatch and event streaming on an inner asyncio task. The outer
``run`` coroutine races that task against the cancel signal and the task
deadline, so a wedged network or engine call can never suppress either.
Whatever ends the task, ``_finish`` stops and removes the container, stops
the event reader, releases the concurrency slot and persists the terminal
state, each step at most once. A container start still in flight when the
task ends does not hold the task open: the slot and final state are settled
first and the container is reaped once the engine returns it.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from .client import EventReader, SessionProtocolClient, base_url_for, text_parts
from .config import SessionsConfig
from .containers import INSTANCE_LABEL, TASK_LABEL, ContainerHandle, ContainerLimits, ContainerProvider
from .errors import PermissionNotPendingError
from .events import EventSink, NoOpEventSink
from .gate import ConcurrencyGate
from .models import ErrorCode, PermissionRequest, Task, TaskEvent, TaskStatus
from .policy import can_transition, terminal
from .store import TaskRepository
from .telemetry import NoOpTaskTelemetrySink, TaskTelemetryEvent, TaskTelemetrySink

logger = logging.getLogger("burrow.runner")

PermissionDecider = Callable[[PermissionRequest], Awaitable[str | None] | str | None]

ERROR_EVENTS = frozenset({"error", "session.error"})
PERMISSION_REPLIED_EVENTS = frozenset({"permission.replied"})


def surface_to_operator(request: PermissionRequest) -> None:
    """Default decider: leave every permission prompt for the operator."""
    _ = request
    return None


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class _Outcome:
    status: TaskStatus
    error: ErrorCode | None = None
    detail: str | None = None


@dataclass(frozen=True, slots=True)
class _StreamClosed:
    error: BaseException | None = None


class _StepFailed(Exception):
    def __init__(self, code: ErrorCode, detail: str) -> None:
        super().__init__(detail)
        self.code = code
        self.detail = detail


def _properties(event: Mapping[str, Any]) -> Mapping[str, Any]:
    properties = event.get("properties")
    return properties if isinstance(properties, Mapping) else {}


def event_session_id(event: Mapping[str, Any]) -> str | None:
    properties = _properties(event)
    info = properties.get("info")
    for candidate in (
        event.get("sessionID"),
        properties.get("sessionID"),
        info.get("sessionID") if isinstance(info, Mapping) else None,
    ):
        if isinstance(candidate, str) and candidate:
            return candidate
    return None


def extract_error(event: Mapping[str, Any]) -> str:
    for value in (event.get("error"), event.get("message"), _properties(event).get("error")):
        if isinstance(value, str) and value:
            return value
        if isinstance(value, Mapping):
            data = value.get("data")
            if isinstance(data, Mapping) and isinstance(data.get("message"), str):
                return data["message"]
            for key in ("message", "name"):
                if isinstance(value.get(key), str) and value[key]:
                    return value[key]
            return json.dumps(value, ensure_ascii=False)[:500]
    return "Unknown error from agent"


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class TaskRunner:
    """Owns one task end-to-end; see module docstring for the lifecycle."""

    def __init__(
        self,
        task: Task,
        *,
        config: SessionsConfig,
        containers: ContainerProvider,
        client: SessionProtocolClient,
        repository: TaskRepository,
        gate: ConcurrencyGate,
        sink: EventSink | None = None,
        telemetry: TaskTelemetrySink | None = None,
        permission_decider: PermissionDecider | None = None,
    ) -> None:
        self._task = task
        self._config = config
        self._containers = containers
        self._client = client
        self._repository = repository
        self._gate = gate
        self._sink = sink or NoOpEventSink()
        self._telemetry = telemetry or NoOpTaskTelemetrySink()
        self._decide_permission = permission_decider or surface_to_operator

        self._admitted_at = time.monotonic()
        self._deadline = self._admitted_at + config.task_timeout_s
        self._status = task.status
        self._container_id: str | None = None
        self._base_url: str | None = None
        self._session_id: str | None = None
        self._session_active = False
        self._pending_start: asyncio.Future[ContainerHandle] | None = None
        self._late_cleanup: asyncio.Task[None] | None = None
        self._reader: EventReader | None = None
        self._inbox: asyncio.Queue[dict[str, Any] | _StreamClosed] = asyncio.Queue()
        self._cancel_requested = asyncio.Event()
        self._pending_permissions: dict[str, PermissionRequest] = {}
        self._sequence = 0

        self._outcome: _Outcome | None = None
        self._container_stopped = False
        self._container_removed = False
        self._reader_stopped = False
        self._slot_released = False
        self._final_persisted = False
        self._finished = asyncio.Event()

    # Introspection ---------------------------------------------------------

    @property
    def task_id(self) -> str:
        return self._task.id

    @property
    def owner_id(self) -> str:
        return self._task.owner_id

    @property
    def task(self) -> Task:
        return self._task

    @property
    def status(self) -> TaskStatus:
        return self._status

    @property
    def done(self) -> bool:
        return self._finished.is_set()

    @property
    def pending_permissions(self) -> list[PermissionRequest]:
        return list(self._pending_permissions.values())

    async def wait(self) -> Task:
        await self._finished.wait()
        return self._task

    # Signals ---------------------------------------------------------------

    def cancel(self) -> bool:
        """Request cooperative cancellation. Returns False once the task is final."""
        if self._outcome is not None or terminal(self._status):
            return False
        self._cancel_requested.set()
        return True

    async def reply_permission(self, permission_id: str, response: str) -> None:
        request = self._pending_permissions.get(permission_id)
        if request is None or self._session_id is None or self._base_url is None:
            raise PermissionNotPendingError(self.task_id, permission_id)
        await self._client.reply_permission(self._base_url, self._session_id, permission_id, response)
        self._pending_permissions.pop(permission_id, None)
        logger.info(
            "permission_replied",
            extra={"task_id": self.task_id, "permission_id": permission_id, "response": response},
        )

    # Lifecycle -------------------------------------------------------------

    async def run(self) -> Task:
        if self._outcome is not None:
            await self._finish(self._outcome)
            return self._task

        if self._cancel_requested.is_set():
            logger.info("task_cancelled_before_start", extra={"task_id": self.task_id})
            outcome = _Outcome(TaskStatus.CANCELLED)
        else:
            drive = asyncio.create_task(self._drive(), name=f"task-drive:{self.task_id}")
            cancel_wait = asyncio.create_task(self._cancel_requested.wait(), name=f"task-cancel:{self.task_id}")
            try:
                outcome = await self._await_outcome(drive, cancel_wait)
            finally:
                await self._interrupt(drive, cancel_wait)

        if outcome.status == TaskStatus.CANCELLED or outcome.error == ErrorCode.TIMEOUT:
            await self._abort_session()
        await self._finish(outcome)
        if self._late_cleanup is not None:
            await asyncio.shield(self._late_cleanup)
        return self._task

    async def recover(self, code: ErrorCode = ErrorCode.RUNNER_CRASHED, detail: str | None = None) -> Task:
        """Run the cleanup path after the runner ended abnormally. Safe to repeat."""
        await self._finish(_Outcome(TaskStatus.FAILED, code, detail or code.value))
        return self._task

    async def _await_outcome(self, drive: asyncio.Task[_Outcome], cancel_wait: asyncio.Task[Any]) -> _Outcome:
        remaining = max(0.0, self._deadline - time.monotonic())
        done, _ = await asyncio.wait(
            {drive, cancel_wait},
            timeout=remaining,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if drive in done:
            if drive.cancelled():
                return _Outcome(TaskStatus.FAILED, ErrorCode.RUNNER_CRASHED, "runner step was cancelled")
            exc = drive.exception()
            if exc is not None:
                logger.error("task_runner_crashed", extra={"task_id": self.task_id}, exc_info=exc)
                return _Outcome(TaskStatus.FAILED, ErrorCode.RUNNER_CRASHED, repr(exc))
            return drive.result()
        if cancel_wait in done:
            logger.info("task_cancel_requested", extra={"task_id": self.task_id, "status": self._status.value})
            return _Outcome(TaskStatus.CANCELLED)
        logger.warning(
            "task_deadline_exceeded",
            extra={"task_id": self.task_id, "timeout_s": self._config.task_timeout_s},
        )
        return _Outcome(TaskStatus.FAILED, ErrorCode.TIMEOUT, "Task timed out")

    async def _interrupt(self, *tasks: asyncio.Task[Any]) -> None:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _drive(self) -> _Outcome:
        try:
            await self._start_container()
            await self._wait_for_health()
            await self._open_session()
            return await self._stream()
        except _StepFailed as failure:
            logger.warning(
                "task_step_failed",
                extra={"task_id": self.task_id, "error": failure.code.value, "detail": failure.detail},
            )
            return _Outcome(TaskStatus.FAILED, failure.code, failure.detail)

    # Steps -----------------------------------------------------------------

    async def _start_container(self) -> None:
        config = self._config
        limits = ContainerLimits(
            memory=config.memory_limit,
            cpus=config.cpu_limit,
            user=config.container_user,
            agent_port=config.agent_port,
            host_address=config.host_address,
            labels={
                **config.container_labels,
                INSTANCE_LABEL: config.instance_id,
                TASK_LABEL: self.task_id,
            },
        )
        # Shielded so an interrupted start still reports its container to cleanup.
        self._pending_start = asyncio.ensure_future(self._containers.start(config.image, limits))
        try:
            handle = await asyncio.shield(self._pending_start)
        except Exception as exc:
            raise _StepFailed(ErrorCode.CONTAINER_START_FAILED, f"Container start failed: {exc}") from exc

        self._container_id = handle.container_id
        self._base_url = base_url_for(handle.port, config.host_address)
        await self._transition(
            TaskStatus.STARTING,
            container_id=handle.container_id,
            container_port=handle.port,
        )

    async def _wait_for_health(self) -> None:
        assert self._base_url is not None
        retries = self._config.health_check_retries
        last_error: Exception | None = None
        for attempt in range(1, retries + 1):
            try:
                await self._client.health(self._base_url)
            except Exception as exc:
                last_error = exc
                logger.debug(
                    "health_check_failed",
                    extra={"task_id": self.task_id, "attempt": attempt, "error": repr(exc)},
                )
            else:
                logger.info("agent_healthy", extra={"task_id": self.task_id, "attempt": attempt})
                return
            if attempt < retries:
                await asyncio.sleep(self._config.health_check_interval_s)
        raise _StepFailed(
            ErrorCode.HEALTH_CHECK_TIMEOUT,
            f"Agent not healthy after {retries} attempt(s): {last_error}",
        )

    async def _open_session(self) -> None:
        assert self._base_url is not None
        try:
            session_id = await self._client.create_session(self._base_url)
        except Exception as exc:
            raise _StepFailed(ErrorCode.SESSION_CREATE_FAILED, f"Session creation failed: {exc}") from exc
        self._session_id = session_id

        # Subscribe before dispatching so no event of this session is missed.
        self._reader = self._client.subscribe_events(
            self._base_url,
            self._inbox.put_nowait,
            on_close=self._on_stream_closed,
        )
        await self._transition(TaskStatus.RUNNING, session_id=session_id, started_at=_utc_now())

        try:
            await self._client.send_prompt_async(self._base_url, session_id, text_parts(self._task.instruction))
        except Exception as exc:
            raise _StepFailed(ErrorCode.PROMPT_SEND_FAILED, f"Prompt send failed: {exc}") from exc
        logger.info("prompt_dispatched", extra={"task_id": self.task_id, "session_id": session_id})

    def _on_stream_closed(self, error: BaseException | None) -> None:
        self._inbox.put_nowait(_StreamClosed(error))

    async def _stream(self) -> _Outcome:
        while True:
            item = await self._inbox.get()
            if isinstance(item, _StreamClosed):
                detail = f"Event stream closed: {item.error!r}" if item.error else "Event stream closed"
                raise _StepFailed(ErrorCode.EVENT_STREAM_CLOSED, detail)
            await self._publish(TaskEvent(task_id=self.task_id, kind="agent", payload=item))
            await self._handle_permission(item)
            outcome = self._detect_terminal(item)
            if outcome is not None:
                return outcome

    def _detect_terminal(self, event: Mapping[str, Any]) -> _Outcome | None:
        session_id = event_session_id(event)
        if session_id is not None and session_id != self._session_id:
            return None
        event_type = event.get("type")
        if event_type == "session.status":
            status = _properties(event).get("status") or event.get("status")
            status_type = status.get("type") if isinstance(status, Mapping) else status
            if status_type != "idle":
                self._session_active = True
                return None
            return _Outcome(TaskStatus.COMPLETED) if self._session_active else None
        if isinstance(event_type, str) and event_type.startswith("message."):
            self._session_active = True
        if event_type == "message.completed":
            return _Outcome(TaskStatus.COMPLETED)
        if event_type == "session.idle" and self._session_active:
            return _Outcome(TaskStatus.COMPLETED)
        if event_type in ERROR_EVENTS:
            return _Outcome(TaskStatus.FAILED, ErrorCode.AGENT_ERROR, extract_error(event))
        return None

    async def _handle_permission(self, event: Mapping[str, Any]) -> None:
        if event.get("type") in PERMISSION_REPLIED_EVENTS:
            permission_id = _properties(event).get("permissionID") or event.get("permissionID")
            if isinstance(permission_id, str):
                self._pending_permissions.pop(permission_id, None)
            return
        request = PermissionRequest.from_event(event)
        if request is None:
            return
        if request.session_id is not None and request.session_id != self._session_id:
            return
        self._pending_permissions[request.permission_id] = request
        try:
            response = await _maybe_await(self._decide_permission(request))
        except Exception:
            logger.exception("permission_decider_failed", extra={"task_id": self.task_id})
            return
        if response is None:
            logger.info(
                "permission_awaiting_operator",
                extra={"task_id": self.task_id, "permission_id": request.permission_id},
            )
            return
        try:
            await self.reply_permission(request.permission_id, response)
        except Exception:
            logger.warning(
                "permission_reply_failed",
                extra={"task_id": self.task_id, "permission_id": request.permission_id},
                exc_info=True,
            )

    async def _abort_session(self) -> None:
        if self._session_id is None or self._base_url is None:
            return
        try:
            acknowledged = await asyncio.wait_for(
                self._client.abort_session(self._base_url, self._session_id),
                timeout=self._config.abort_timeout_s,
            )
        except Exception as exc:
            logger.warning("session_abort_failed", extra={"task_id": self.task_id, "error": repr(exc)})
            return
        logger.info("session_aborted", extra={"task_id": self.task_id, "acknowledged": acknowledged})

    # State -----------------------------------------------------------------

    async def _transition(self, status: TaskStatus, **fields: Any) -> None:
        if not can_transition(self._status, status):
            logger.warning(
                "task_transition_rejected",
                extra={"task_id": self.task_id, "from_status": self._status.value, "to_status": status.value},
            )
            return
        previous = self._status
        self._status = status
        self._task = self._task.evolve(status=status, **fields)
        self._task = await self._repository.update(self.task_id, status=status, **fields)
        logger.info(
            "task_transition",
            extra={"task_id": self.task_id, "from_status": previous.value, "to_status": status.value},
        )
        await self._publish(TaskEvent(task_id=self.task_id, kind="status", status=status))

    async def _publish(self, event: TaskEvent) -> None:
        self._sequence += 1
        event = event.model_copy(update={"sequence": self._sequence})
        try:
            await self._sink.publish(self.task_id, event)
        except Exception:
            logger.exception("event_publish_failed", extra={"task_id": self.task_id, "kind": event.kind})

    def _start_in_flight(self) -> bool:
        pending = self._pending_start
        return self._container_id is None and pending is not None and not pending.done()

    def _adopt_started_container(self) -> None:
        pending = self._pending_start
        if pending is None or self._container_id is not None or not pending.done():
            return
        if pending.cancelled() or pending.exception() is not None:
            return
        self._container_id = pending.result().container_id

    async def _reap_late_container(self) -> None:
        assert self._pending_start is not None
        try:
            handle = await asyncio.shield(self._pending_start)
        except Exception as exc:
            logger.info("late_container_start_failed", extra={"task_id": self.task_id, "error": repr(exc)})
            return
        self._container_id = handle.container_id
        logger.info("late_container_reaped", extra={"task_id": self.task_id, "container_id": handle.container_id})
        await self._cleanup_container()

    async def _cleanup_container(self) -> None:
        # Flags are set only once a call returns so an interrupted cleanup resumes.
        container_id = self._container_id
        if container_id is None:
            return
        if not self._container_stopped:
            try:
                await self._containers.stop(container_id)
            except Exception:
                logger.warning("container_stop_failed", extra={"task_id": self.task_id}, exc_info=True)
            self._container_stopped = True
        if not self._container_removed:
            try:
                await self._containers.remove(container_id)
            except Exception:
                logger.warning("container_remove_failed", extra={"task_id": self.task_id}, exc_info=True)
            self._container_removed = True

    async def _finish(self, outcome: _Outcome) -> None:
        if self._outcome is None:
            self._outcome = outcome
        outcome = self._outcome

        if self._late_cleanup is None and self._start_in_flight():
            # The engine has not answered yet; settle the task now and reap the container when it does.
            logger.warning("container_start_outlived_task", extra={"task_id": self.task_id})
            self._late_cleanup = asyncio.create_task(
                self._reap_late_container(), name=f"task-reap:{self.task_id}"
            )
        if self._late_cleanup is None:
            self._adopt_started_container()
            await self._cleanup_container()

        if self._reader is not None and not self._reader_stopped:
            await self._reader.stop()
            self._reader_stopped = True

        if not self._slot_released:
            self._slot_released = True
            self._gate.release(self.owner_id)

        if not self._final_persisted:
            await self._persist_final(outcome)
        self._finished.set()

    async def _persist_final(self, outcome: _Outcome) -> None:
        failed = outcome.status == TaskStatus.FAILED
        fields: dict[str, Any] = {
            "status": outcome.status,
            "completed_at": _utc_now(),
            "error": outcome.error.value if failed and outcome.error else None,
            "error_detail": outcome.detail if failed else None,
        }
        self._status = outcome.status
        self._task = self._task.evolve(**fields)
        try:
            self._task = await self._repository.update(self.task_id, **fields)
        except Exception:
            logger.exception("task_persist_failed", extra={"task_id": self.task_id})
            return
        self._final_persisted = True
        logger.info(
            "task_finished",
            extra={"task_id": self.task_id, "status": outcome.status.value, "error": fields["error"]},
        )
        await self._publish(
            TaskEvent(task_id=self.task_id, kind="status", status=outcome.status, error=fields["error"])
        )
        await self._emit_telemetry(outcome, fields["error"])

    async def _emit_telemetry(self, outcome: _Outcome, error: str | None) -> None:
        event_type = {
            TaskStatus.COMPLETED: "task_completed",
            TaskStatus.CANCELLED: "task_cancelled",
        }.get(outcome.status, "task_failed")
        try:
            await self._telemetry.emit(
                TaskTelemetryEvent(
                    event_type=event_type,
                    task_id=self.task_id,
                    owner_id=self.owner_id,
                    status=outcome.status,
                    error=error,
                    container_id=self._container_id,
                    session_id=self._session_id,
                    duration_ms=(time.monotonic() - self._admitted_at) * 1000,
                )
            )
        except Exception:
            logger.exception("telemetry_emit_failed", extra={"task_id": self.task_id})


__all__ = [
    "ERROR_EVENTS",
    "PermissionDecider",
    "TaskRunner",
    "event_session_id",
    "extract_error",
    "surface_to_operator",
]
