import asyncio
import itertools
import sys
from pathlib import Path
from typing import Any

import pytest

# Ensure repository root is on sys.path for test imports.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from burrow.client import EventReader  # noqa: E402
from burrow.config import SessionsConfig  # noqa: E402
from burrow.containers import ContainerHandle, ContainerLimits, ContainerState  # noqa: E402
from burrow.gate import ConcurrencyGate  # noqa: E402
from burrow.models import Task, TaskEvent  # noqa: E402
from burrow.runner import TaskRunner  # noqa: E402
from burrow.store import InMemoryTaskRepository  # noqa: E402
from burrow.telemetry import TaskTelemetryEvent  # noqa: E402


class FakeContainers:
    """ContainerProvider double that records every call."""

    def __init__(self) -> None:
        self.started: list[str] = []
        self.stopped: list[str] = []
        self.removed: list[str] = []
        self.limits: list[ContainerLimits] = []
        self.leftover: list[str] = []
        self.listed_instances: list[str | None] = []
        self.fail_start: Exception | None = None
        self.hold_start: asyncio.Event | None = None
        self.hold_remove: asyncio.Event | None = None
        self.remove_entered = asyncio.Event()
        self.start_entered = asyncio.Event()
        self._ids = itertools.count(1)

    async def start(self, image: str, limits: ContainerLimits) -> ContainerHandle:
        self.start_entered.set()
        if self.hold_start is not None:
            await self.hold_start.wait()
        if self.fail_start is not None:
            raise self.fail_start
        n = next(self._ids)
        container_id = f"c{n}"
        self.started.append(container_id)
        self.limits.append(limits)
        return ContainerHandle(container_id=container_id, port=40000 + n)

    async def inspect(self, container_id: str) -> ContainerState:
        running = container_id in self.started and container_id not in self.stopped
        return ContainerState(running=running, status="running" if running else "exited")

    async def stop(self, container_id: str) -> None:
        self.stopped.append(container_id)

    async def remove(self, container_id: str) -> None:
        self.remove_entered.set()
        if self.hold_remove is not None:
            await self.hold_remove.wait()
        self.removed.append(container_id)

    async def list_managed(self, instance_id: str | None = None) -> list[str]:
        self.listed_instances.append(instance_id)
        return list(self.leftover)


class FakeAgentClient:
    """SessionProtocolClient double; tests push stream events with ``emit``."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.session_id = "s1"
        self.health_calls = 0
        self.health_error: Exception | None = None
        self.hold_health: asyncio.Event | None = None
        self.create_error: Exception | None = None
        self.prompt_error: Exception | None = None
        self.abort_error: Exception | None = None
        self.prompts: list[list[dict[str, Any]]] = []
        self.permission_replies: list[tuple[str, str, str]] = []
        self.script: list[dict[str, Any]] = []
        self.prompt_sent = asyncio.Event()
        self.reader: EventReader | None = None
        self._sink: Any = None
        self._on_close: Any = None

    async def health(self, base_url: str) -> None:
        self.health_calls += 1
        if self.hold_health is not None:
            await self.hold_health.wait()
        if self.health_error is not None:
            raise self.health_error

    async def create_session(self, base_url: str) -> str:
        self.calls.append("create_session")
        if self.create_error is not None:
            raise self.create_error
        return self.session_id

    async def send_prompt_async(self, base_url: str, session_id: str, parts: list[dict[str, Any]]) -> None:
        self.calls.append("send_prompt")
        if self.prompt_error is not None:
            raise self.prompt_error
        self.prompts.append(parts)
        self.prompt_sent.set()
        if self.script:
            asyncio.get_running_loop().call_soon(self._play)

    async def abort_session(self, base_url: str, session_id: str) -> bool:
        self.calls.append("abort")
        if self.abort_error is not None:
            raise self.abort_error
        return True

    async def reply_permission(self, base_url: str, session_id: str, permission_id: str, response: str) -> None:
        self.permission_replies.append((session_id, permission_id, response))

    def subscribe_events(self, base_url: str, sink, *, on_close=None) -> EventReader:
        self.calls.append("subscribe")
        self._sink = sink
        self._on_close = on_close
        self.reader = EventReader(asyncio.create_task(asyncio.Event().wait()))
        return self.reader

    def emit(self, event: dict[str, Any]) -> None:
        self._sink(event)

    def close_stream(self, error: BaseException | None = None) -> None:
        self._on_close(error)

    def _play(self) -> None:
        for event in self.script:
            self.emit(event)


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[TaskEvent] = []

    async def publish(self, task_id: str, event: TaskEvent) -> None:
        self.events.append(event)

    def statuses(self) -> list[str]:
        return [event.status.value for event in self.events if event.kind == "status"]

    def agent_payloads(self) -> list[dict[str, Any]]:
        return [event.payload for event in self.events if event.kind == "agent"]


class RecordingTelemetry:
    def __init__(self) -> None:
        self.events: list[TaskTelemetryEvent] = []

    async def emit(self, event: TaskTelemetryEvent) -> None:
        self.events.append(event)


def make_config(**overrides: Any) -> SessionsConfig:
    values: dict[str, Any] = {
        "health_check_retries": 2,
        "health_check_interval_s": 0.01,
        "task_timeout_s": 5.0,
        "abort_timeout_s": 0.5,
    }
    values.update(overrides)
    return SessionsConfig(**values)


def busy(session_id: str = "s1") -> dict[str, Any]:
    return {"type": "session.status", "properties": {"sessionID": session_id, "status": {"type": "busy"}}}


def idle(session_id: str = "s1") -> dict[str, Any]:
    return {"type": "session.idle", "properties": {"sessionID": session_id}}


@pytest.fixture
def containers() -> FakeContainers:
    return FakeContainers()


@pytest.fixture
def agent() -> FakeAgentClient:
    return FakeAgentClient()


@pytest.fixture
def recorder() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def telemetry() -> RecordingTelemetry:
    return RecordingTelemetry()


@pytest.fixture
def repository() -> InMemoryTaskRepository:
    return InMemoryTaskRepository()


@pytest.fixture
def gate() -> ConcurrencyGate:
    return ConcurrencyGate(1)


@pytest.fixture
def make_runner(containers, agent, recorder, telemetry, repository, gate):
    """Admit a task the way the service does and return its runner."""

    async def _make(
        *,
        config: SessionsConfig | None = None,
        decider=None,
        instruction: str = "fix the failing test",
        owner_id: str = "alice",
    ) -> TaskRunner:
        assert gate.try_acquire(owner_id)
        task = await repository.save(Task.new(instruction, owner_id))
        return TaskRunner(
            task,
            config=config or make_config(),
            containers=containers,
            client=agent,
            repository=repository,
            gate=gate,
            sink=recorder,
            telemetry=telemetry,
            permission_decider=decider,
        )

    return _make
