"""Public task operations: admission, cancellation, lookup and streaming.

``SessionsService`` is the single entry point bindings talk to. It validates
and admits new tasks, hands each one to a ``TaskRunner`` under the
``TaskRunnerSupervisor`` and answers ownership-scoped queries from the
``TaskRepository``. Every failure a caller can see is a ``SessionsError``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any

from .client import OpencodeClient, SessionProtocolClient
from .config import SessionsConfig
from .containers import ContainerProvider, DockerContainerProvider, sweep_orphans
from .errors import (
    CapacityError,
    InstructionRequiredError,
    PermissionNotPendingError,
    TaskForbiddenError,
    TaskNotCancellableError,
    TaskNotFoundError,
)
from .events import EventSink, FanoutEventSink, TaskEventBroker, iterate_until_terminal
from .gate import ConcurrencyGate
from .models import Task, TaskEvent, TaskStatus
from .policy import cancellable, terminal
from .runner import PermissionDecider, TaskRunner
from .store import InMemoryTaskRepository, TaskRepository
from .supervisor import TaskRunnerSupervisor
from .telemetry import NoOpTaskTelemetrySink, TaskTelemetryEvent, TaskTelemetrySink

logger = logging.getLogger("burrow.service")


class SessionsService:
    def __init__(
        self,
        config: SessionsConfig,
        *,
        containers: ContainerProvider,
        client: SessionProtocolClient,
        repository: TaskRepository | None = None,
        sink: EventSink | None = None,
        telemetry: TaskTelemetrySink | None = None,
        permission_decider: PermissionDecider | None = None,
    ) -> None:
        self._config = config
        self._containers = containers
        self._client = client
        self._repository = repository or InMemoryTaskRepository()
        self._broker = TaskEventBroker()
        self._sink: EventSink = FanoutEventSink([self._broker, sink]) if sink is not None else self._broker
        self._telemetry = telemetry or NoOpTaskTelemetrySink()
        self._permission_decider = permission_decider
        self._gate = ConcurrencyGate(config.max_concurrent_tasks)
        self._supervisor = TaskRunnerSupervisor()

    @classmethod
    def from_config(
        cls,
        config: SessionsConfig | None = None,
        *,
        docker_client: Any | None = None,
        **kwargs: Any,
    ) -> SessionsService:
        """Wire the Docker provider and the opencode client for ``config``."""
        config = config or SessionsConfig.from_env()
        return cls(
            config,
            containers=DockerContainerProvider(client=docker_client, api_timeout_s=config.request_timeout_s),
            client=OpencodeClient(timeout_s=config.request_timeout_s),
            **kwargs,
        )

    @property
    def config(self) -> SessionsConfig:
        return self._config

    @property
    def gate(self) -> ConcurrencyGate:
        return self._gate

    @property
    def supervisor(self) -> TaskRunnerSupervisor:
        return self._supervisor

    async def start(self) -> list[str]:
        """Remove managed containers left behind by a previous process."""
        swept = await sweep_orphans(self._containers, instance_id=self._config.instance_id)
        logger.info("sessions_service_started", extra={"swept": len(swept)})
        return swept

    async def stop(self) -> None:
        await self._supervisor.shutdown()

    # Operations ------------------------------------------------------------

    async def create_task(self, instruction: str, owner_id: str) -> Task:
        instruction = (instruction or "").strip()
        if not instruction:
            raise InstructionRequiredError()
        if not self._gate.try_acquire(owner_id):
            raise CapacityError(owner_id, self._gate.limit)

        task = Task.new(instruction, owner_id)
        try:
            await self._repository.save(task)
        except Exception:
            self._gate.release(owner_id)
            raise

        runner = TaskRunner(
            task,
            config=self._config,
            containers=self._containers,
            client=self._client,
            repository=self._repository,
            gate=self._gate,
            sink=self._sink,
            telemetry=self._telemetry,
            permission_decider=self._permission_decider,
        )
        self._supervisor.spawn(runner)
        logger.info("task_created", extra={"task_id": task.id, "owner_id": owner_id})
        await self._emit_created(task)
        return task

    async def cancel_task(self, task_id: str, owner_id: str) -> Task:
        task = await self._repository.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if task.owner_id != owner_id:
            raise TaskForbiddenError(task_id)
        if not cancellable(task.status):
            raise TaskNotCancellableError(task_id, task.status.value)

        runner = self._supervisor.get(task_id)
        if runner is not None:
            delivered = runner.cancel()
            logger.info(
                "task_cancel_delivered" if delivered else "task_already_finishing",
                extra={"task_id": task_id, "owner_id": owner_id},
            )
            return runner.task

        # No live runner owns this row, so nothing else will finish it.
        cancelled = await self._repository.update(
            task_id,
            status=TaskStatus.CANCELLED,
            completed_at=datetime.now(UTC),
        )
        await self._sink.publish(
            task_id,
            TaskEvent(task_id=task_id, kind="status", status=TaskStatus.CANCELLED),
        )
        logger.info("task_cancelled_without_runner", extra={"task_id": task_id, "owner_id": owner_id})
        return cancelled

    async def get_task(self, task_id: str, owner_id: str) -> Task:
        task = await self._repository.get(task_id)
        if task is None or task.owner_id != owner_id:
            raise TaskNotFoundError(task_id)
        return task

    async def list_tasks(self, owner_id: str) -> list[Task]:
        return await self._repository.list_by_owner(owner_id)

    async def reply_permission(self, task_id: str, owner_id: str, permission_id: str, response: str) -> None:
        await self.get_task(task_id, owner_id)
        runner = self._supervisor.get(task_id)
        if runner is None:
            raise PermissionNotPendingError(task_id, permission_id)
        await runner.reply_permission(permission_id, response)

    async def subscribe(self, task_id: str, owner_id: str) -> AsyncIterator[TaskEvent]:
        """Return an iterator of the task's events ending with its terminal status event.

        Ownership is checked before this returns; a task that is already
        final yields a single status event.
        """
        queue, unsubscribe = await self._broker.subscribe(task_id)
        try:
            task = await self.get_task(task_id, owner_id)
        except TaskNotFoundError:
            await unsubscribe()
            raise
        if terminal(task.status):
            await unsubscribe()
            return _single(TaskEvent(task_id=task_id, kind="status", status=task.status, error=task.error))
        return iterate_until_terminal(queue, unsubscribe)

    async def _emit_created(self, task: Task) -> None:
        try:
            await self._telemetry.emit(
                TaskTelemetryEvent(
                    event_type="task_created",
                    task_id=task.id,
                    owner_id=task.owner_id,
                    status=task.status,
                )
            )
        except Exception:
            logger.exception("telemetry_emit_failed", extra={"task_id": task.id})


async def _single(event: TaskEvent) -> AsyncIterator[TaskEvent]:
    yield event


__all__ = ["SessionsService"]
