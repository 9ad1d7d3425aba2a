"""Progress snapshots and cancellation flags for long-running operations.

Long operations push a :class:`~transaction_intelligence.models.ProgressPayload`
to the store after every batch; clients poll :meth:`ProgressStore.get_progress`
instead of holding a stream open. Cancellation is cooperative: the engine
checks :meth:`ProgressStore.is_cancelled` between batches and iterations.

The store is injected into every operation. :class:`InMemoryProgressStore`
is the process-local implementation; a multi-process deployment would back
the same protocol with a shared cache.
"""

from __future__ import annotations

import threading
from typing import Protocol, runtime_checkable

from .models import ProgressPayload


@runtime_checkable
class ProgressStore(Protocol):
    def set_progress(self, user_id: str, payload: ProgressPayload) -> None: ...

    def get_progress(self, user_id: str) -> ProgressPayload | None: ...

    def clear_progress(self, user_id: str) -> None: ...

    def set_cancellation(self, user_id: str, cancelled: bool) -> None: ...

    def is_cancelled(self, user_id: str) -> bool: ...


class InMemoryProgressStore:
    """Thread-safe dict-backed store keyed by user id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._progress: dict[str, ProgressPayload] = {}
        self._cancelled: set[str] = set()

    def set_progress(self, user_id: str, payload: ProgressPayload) -> None:
        with self._lock:
            self._progress[user_id] = payload

    def get_progress(self, user_id: str) -> ProgressPayload | None:
        with self._lock:
            return self._progress.get(user_id)

    def clear_progress(self, user_id: str) -> None:
        with self._lock:
            self._progress.pop(user_id, None)

    def set_cancellation(self, user_id: str, cancelled: bool) -> None:
        # Clearing removes the key entirely rather than storing False.
        with self._lock:
            if cancelled:
                self._cancelled.add(user_id)
            else:
                self._cancelled.discard(user_id)

    def is_cancelled(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._cancelled

    def __len__(self) -> int:
        with self._lock:
            return len(self._progress.keys() | self._cancelled)


__all__ = ["InMemoryProgressStore", "ProgressStore"]
