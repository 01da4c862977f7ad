from __future__ import annotations

import asyncio
from typing import Any, Protocol

from .models import Task
from .policy import terminal


class TaskRepository(Protocol):
    """Persistence boundary for task rows."""

    async def save(self, task: Task) -> Task: ...

    async def update(self, task_id: str, **fields: Any) -> Task: ...

    async def get(self, task_id: str) -> Task | None: ...

    async def list_by_owner(self, owner_id: str) -> list[Task]: ...


class InMemoryTaskRepository:
    """Process-local TaskRepository. Terminal tasks are read-only."""

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}
        self._lock = asyncio.Lock()

    async def save(self, task: Task) -> Task:
        async with self._lock:
            if task.id in self._tasks:
                raise ValueError(f"Task '{task.id}' already exists")
            self._tasks[task.id] = task
        return task

    async def update(self, task_id: str, **fields: Any) -> Task:
        async with self._lock:
            stored = self._tasks.get(task_id)
            if stored is None:
                raise KeyError(task_id)
            if terminal(stored.status):
                raise ValueError(f"Task '{task_id}' is {stored.status.value} and can no longer change")
            updated = stored.evolve(**fields)
            self._tasks[task_id] = updated
        return updated

    async def get(self, task_id: str) -> Task | None:
        async with self._lock:
            return self._tasks.get(task_id)

    async def list_by_owner(self, owner_id: str) -> list[Task]:
        async with self._lock:
            tasks = [task for task in self._tasks.values() if task.owner_id == owner_id]
        tasks.sort(key=lambda task: task.created_at, reverse=True)
        return tasks


__all__ = ["InMemoryTaskRepository", "TaskRepository"]
