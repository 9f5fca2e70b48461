"""
tests/conftest.py
─────────────────
Fixtures shared by more than one test module.
"""

from __future__ import annotations

import pytest

from allocator.coordination.store import MemoryCoordinationStore
from allocator.shared.models import NodeResources


class FakeClock:
    """Monotonic clock the test moves by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store(clock: FakeClock) -> MemoryCoordinationStore:
    store = MemoryCoordinationStore(clock=clock)
    yield store
    store.close()


@pytest.fixture
def local_resources() -> NodeResources:
    """4 cores at 200 MHz: an allocated capacity of 150 is a demand of 0.75."""
    return NodeResources(
        total_memory_mb=8000,
        computational_capacity=800.0,
        maximum_capacity=200.0,
        ipc=1.0,
        power_consumption=400.0,
    )
