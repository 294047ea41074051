"""Shared accumulator cells with explicit access modes.

A cell is owned jointly by every worker of a run. ``UNGUARDED`` cells expose
plain loads and stores, so a load/compute/store sequence can lose updates
under concurrency. ``ATOMIC`` cells additionally provide an indivisible
``fetch_add``.
"""

from __future__ import annotations

import multiprocessing
import threading
from enum import Enum
from typing import Any, Optional


class AccessMode(str, Enum):
    """How workers are allowed to mutate a shared cell."""
    UNGUARDED = "unguarded"
    ATOMIC = "atomic"


class SharedAccumulator:
    """Float cell shared by threads of one process."""

    def __init__(self, mode: AccessMode, initial: float = 0.0):
        self.mode = mode
        self._value = float(initial)
        self._lock = threading.Lock()

    def load(self) -> float:
        return self._value

    def store(self, value: float) -> None:
        self._value = value

    def fetch_add(self, delta: float) -> float:
        """Add ``delta`` indivisibly and return the previous value."""
        if self.mode is not AccessMode.ATOMIC:
            raise TypeError("fetch_add requires an ATOMIC cell")
        with self._lock:
            previous = self._value
            self._value = previous + delta
        return previous


class ProcessSharedAccumulator:
    """Float cell in shared memory, visible to pool worker processes.

    Instances must reach workers through process inheritance (the pool
    initializer), never through task arguments.
    """

    def __init__(self, mode: AccessMode, initial: float = 0.0, context: Optional[Any] = None):
        ctx = context or multiprocessing.get_context()
        self.mode = mode
        if mode is AccessMode.ATOMIC:
            self._cell = ctx.Value("d", float(initial))
        else:
            self._cell = ctx.RawValue("d", float(initial))

    def load(self) -> float:
        return self._cell.value

    def store(self, value: float) -> None:
        self._cell.value = value

    def fetch_add(self, delta: float) -> float:
        if self.mode is not AccessMode.ATOMIC:
            raise TypeError("fetch_add requires an ATOMIC cell")
        with self._cell.get_lock():
            previous = self._cell.value
            self._cell.value = previous + delta
        return previous
