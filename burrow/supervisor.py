"""Registry of live task runners with crash recovery."""

from __future__ import annotations

import asyncio
import logging

from .models import ErrorCode, Task
from .runner import TaskRunner

logger = logging.getLogger("burrow.supervisor")


class TaskRunnerSupervisor:
    """Starts each runner on its own asyncio task and keeps a handle to it.

    A runner that raises, or whose task is cancelled from outside, is handed
    to ``TaskRunner.recover`` so its container, reader and slot are released
    and the task row is failed with ``runner_crashed`` or ``shutdown``.
    """

    def __init__(self) -> None:
        self._runners: dict[str, TaskRunner] = {}
        self._handles: dict[str, asyncio.Task[Task]] = {}
        self._closing = False

    def spawn(self, runner: TaskRunner) -> asyncio.Task[Task]:
        if self._closing:
            raise RuntimeError("Supervisor is shutting down")
        task_id = runner.task_id
        if task_id in self._runners:
            raise ValueError(f"Runner for task '{task_id}' already registered")
        self._runners[task_id] = runner
        handle = asyncio.create_task(self._supervise(runner), name=f"task-runner:{task_id}")
        self._handles[task_id] = handle
        logger.debug("runner_spawned", extra={"task_id": task_id})
        return handle

    async def _supervise(self, runner: TaskRunner) -> Task:
        try:
            return await runner.run()
        except asyncio.CancelledError:
            logger.info("runner_interrupted", extra={"task_id": runner.task_id})
            await runner.recover(ErrorCode.SHUTDOWN, "Orchestrator shut down before the task finished")
            raise
        except Exception as exc:
            logger.exception("runner_crashed", extra={"task_id": runner.task_id})
            return await runner.recover(ErrorCode.RUNNER_CRASHED, repr(exc))
        finally:
            self._runners.pop(runner.task_id, None)
            self._handles.pop(runner.task_id, None)

    def get(self, task_id: str) -> TaskRunner | None:
        return self._runners.get(task_id)

    def active_ids(self) -> list[str]:
        return list(self._runners)

    def cancel(self, task_id: str) -> bool:
        runner = self._runners.get(task_id)
        if runner is None:
            return False
        return runner.cancel()

    async def join(self, task_id: str) -> Task | None:
        """Wait for a runner to end and return its final task snapshot."""
        runner = self._runners.get(task_id)
        handle = self._handles.get(task_id)
        if runner is None or handle is None:
            return None
        await asyncio.wait({handle})
        if handle.cancelled():
            return runner.task
        return handle.result()

    async def shutdown(self) -> None:
        """Cancel every live runner and wait until each has cleaned up."""
        self._closing = True
        runners = list(self._runners.values())
        handles = list(self._handles.values())
        for handle in handles:
            if not handle.done():
                handle.cancel()
        if handles:
            await asyncio.gather(*handles, return_exceptions=True)
        # A handle cancelled before its first step never reaches _supervise.
        for runner in runners:
            if not runner.done:
                await runner.recover(ErrorCode.SHUTDOWN, "Orchestrator shut down before the task finished")
            self._runners.pop(runner.task_id, None)
            self._handles.pop(runner.task_id, None)
        logger.info("supervisor_stopped", extra={"count": len(runners)})


__all__ = ["TaskRunnerSupervisor"]
