"""Pure rules over task status values."""

from __future__ import annotations

from .models import TaskStatus

ACTIVE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.STARTING, TaskStatus.RUNNING})
TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})

_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.STARTING, TaskStatus.FAILED, TaskStatus.CANCELLED}),
    TaskStatus.STARTING: frozenset({TaskStatus.RUNNING, TaskStatus.FAILED, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


def _coerce(status: TaskStatus | str | None) -> TaskStatus | None:
    if isinstance(status, TaskStatus):
        return status
    try:
        return TaskStatus(status)
    except ValueError:
        return None


def valid_status(status: TaskStatus | str | None) -> bool:
    return _coerce(status) is not None


def cancellable(status: TaskStatus | str | None) -> bool:
    return _coerce(status) in ACTIVE_STATUSES


def terminal(status: TaskStatus | str | None) -> bool:
    return _coerce(status) in TERMINAL_STATUSES


def can_transition(current: TaskStatus | str, new: TaskStatus | str) -> bool:
    """Return True when ``current -> new`` is a legal lifecycle step."""
    source = _coerce(current)
    target = _coerce(new)
    if source is None or target is None:
        return False
    return target in _TRANSITIONS[source]


__all__ = [
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "can_transition",
    "cancellable",
    "terminal",
    "valid_status",
]
