"""Thread-safe sync progress reporting."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable


@dataclass(frozen=True)
class ProgressUpdate:
    completed: int
    total: int
    label: str | None = None


ProgressCallback = Callable[[ProgressUpdate], None]


class SyncProgress:
    """Running ``completed / total`` counter shared by the sync worker pool.

    Each source adds its entry count to ``total`` before its files are
    processed, so ``total`` grows as the sync moves from source to source.
    The callback is invoked under the lock, once per change.
    """

    def __init__(self, callback: ProgressCallback | None = None) -> None:
        self._callback = callback
        self._lock = threading.Lock()
        self.completed = 0
        self.total = 0
        self.label: str | None = None

    def add_total(self, count: int, label: str | None = None) -> None:
        with self._lock:
            self.total += count
            if label is not None:
                self.label = label
            self._report()

    def advance(self, count: int = 1) -> None:
        with self._lock:
            self.completed += count
            self._report()

    def snapshot(self) -> ProgressUpdate:
        with self._lock:
            return ProgressUpdate(self.completed, self.total, self.label)

    def _report(self) -> None:
        if self._callback is not None:
            self._callback(ProgressUpdate(self.completed, self.total, self.label))
