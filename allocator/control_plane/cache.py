"""
allocator/control_plane/cache.py
─────────────────────────────────
The node-local copy of the current AllocationPlan.

One writer (the scheduler thread) replaces the plan wholesale; any number of
threads read it through get_allocation(). Plans are never merged, so a reader
sees either the old plan or the new one, never a mix.
"""

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from allocator.shared.models import AllocationPlan


class ReadWriteLock:
    """
    Many readers or one writer, writers first.

    A waiting writer blocks new readers, so a steady stream of reads cannot
    starve replace().
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer_active = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer_active or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer_active or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer_active = True
        try:
            yield
        finally:
            with self._cond:
                self._writer_active = False
                self._cond.notify_all()


class AllocationCache:
    """
    Usage:
        cache = AllocationCache()
        cache.replace(plan)      # scheduler thread
        plan = cache.get()       # any thread
    """

    def __init__(self, initial: Optional[AllocationPlan] = None) -> None:
        self._lock = ReadWriteLock()
        self._plan: AllocationPlan = dict(initial or {})

    def get(self) -> AllocationPlan:
        """A deep copy of the current plan; callers may mutate it freely."""
        with self._lock.read():
            return copy.deepcopy(self._plan)

    def replace(self, plan: AllocationPlan) -> None:
        new_plan = copy.deepcopy(plan)
        with self._lock.write():
            self._plan = new_plan

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._plan)
