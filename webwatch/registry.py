from __future__ import annotations

import threading
from collections.abc import Callable


class JobRegistry:
    """
    Job id -> live scheduler handle.

    The only mutable state shared between the engine's callers. Every access
    goes through the internal lock; the dict itself is never handed out.
    Handles are the APScheduler job ids owned by the engine.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._handles: dict[int, str] = {}

    def put(self, job_id: int, handle: str) -> None:
        """Bind `handle` to `job_id`. Refuses to silently orphan an existing handle."""
        with self._lock:
            existing = self._handles.get(job_id)
            if existing is not None and existing != handle:
                raise ValueError(f"Job {job_id} already bound to handle {existing!r}; use replace_atomically().")
            self._handles[job_id] = handle

    def remove(self, job_id: int) -> str | None:
        """Unbind and return the handle for `job_id` (None if absent)."""
        with self._lock:
            return self._handles.pop(job_id, None)

    def replace_atomically(self, job_id: int, make_handle: Callable[[str | None], str]) -> str | None:
        """
        Swap the handle for `job_id` under the lock.

        `make_handle(old)` must retire `old` (if any) and return the new
        handle. The old entry is unbound before the call, so if it raises the
        registry is left without a handle for this job, never with a stale one.
        Returns the old handle.
        """
        with self._lock:
            old = self._handles.pop(job_id, None)
            new = make_handle(old)
            self._handles[job_id] = new
            return old

    def get(self, job_id: int) -> str | None:
        with self._lock:
            return self._handles.get(job_id)

    def ids(self) -> list[int]:
        with self._lock:
            return sorted(self._handles)

    def clear(self) -> dict[int, str]:
        """Drop every binding and return what was there."""
        with self._lock:
            snapshot = dict(self._handles)
            self._handles.clear()
            return snapshot

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)
