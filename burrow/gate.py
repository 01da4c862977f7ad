"""Per-owner admission control."""

from __future__ import annotations

import logging
import threading

logger = logging.getLogger("burrow.gate")


class ConcurrencyGate:
    """Bounds the number of simultaneously active tasks per owner.

    Acquire and release are synchronous and lock-guarded, so an admission
    check can never interleave with another caller for the same owner,
    whether the callers are coroutines on one loop or separate threads.
    """

    def __init__(self, max_concurrent_tasks: int) -> None:
        if max_concurrent_tasks < 1:
            raise ValueError("max_concurrent_tasks must be >= 1")
        self._limit = max_concurrent_tasks
        self._active: dict[str, int] = {}
        self._lock = threading.Lock()

    @property
    def limit(self) -> int:
        return self._limit

    def try_acquire(self, owner_id: str) -> bool:
        with self._lock:
            held = self._active.get(owner_id, 0)
            if held >= self._limit:
                logger.info("gate_rejected", extra={"owner_id": owner_id, "active": held})
                return False
            self._active[owner_id] = held + 1
        return True

    def release(self, owner_id: str) -> None:
        with self._lock:
            held = self._active.get(owner_id, 0)
            if held <= 0:
                logger.warning("gate_release_without_slot", extra={"owner_id": owner_id})
                return
            if held == 1:
                self._active.pop(owner_id, None)
            else:
                self._active[owner_id] = held - 1

    def active(self, owner_id: str) -> int:
        with self._lock:
            return self._active.get(owner_id, 0)


__all__ = ["ConcurrencyGate"]
