"""
tests/test_allocation_store.py
──────────────────────────────
Tests for allocator/coordination/allocation_store.py

Test groups:
    Group 1: publish / get
    Group 2: lease TTL versus epoch
    Group 3: watch and restart
    Group 4: watch backoff
"""

from __future__ import annotations

import threading
from typing import Iterator, List, Optional
from unittest.mock import MagicMock

import pytest

from allocator.coordination.allocation_store import (
    AllocationCorruptError,
    AllocationNotFoundError,
    AllocationStore,
)
from allocator.coordination.store import (
    LeaseGrantError,
    MemoryCoordinationStore,
    StoreUnavailableError,
    WatchEvent,
    WatchEventType,
)
from allocator.shared.models import FunctionAllocation, plan_from_json


def _make_plan(instances: int = 3) -> dict:
    return {
        "resize": FunctionAllocation(capacity=150.0, instances={"10.0.0.1": instances, "10.0.0.9": 0}),
        "encode": FunctionAllocation(capacity=40.5, instances={}),
    }


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: publish / get
# ─────────────────────────────────────────────────────────────────────────────

class TestPublishGet:
    def test_round_trip(self, memory_store: MemoryCoordinationStore) -> None:
        allocations = AllocationStore(memory_store)
        plan = _make_plan()

        allocations.publish(plan)

        assert allocations.get() == plan

    def test_wire_form_uses_capitalised_keys(self, memory_store: MemoryCoordinationStore) -> None:
        AllocationStore(memory_store).publish(_make_plan())

        raw = memory_store.get("allocation")

        assert '"Capacity":150.0' in raw
        assert '"Instances":{"10.0.0.1":3,"10.0.0.9":0}' in raw

    def test_publish_overwrites_whole_plan(self, memory_store: MemoryCoordinationStore) -> None:
        allocations = AllocationStore(memory_store)
        allocations.publish(_make_plan())
        allocations.publish({"only": FunctionAllocation(capacity=1.0, instances={"10.0.0.2": 1})})

        assert set(allocations.get()) == {"only"}

    def test_never_published_is_not_found(self, memory_store: MemoryCoordinationStore) -> None:
        with pytest.raises(AllocationNotFoundError):
            AllocationStore(memory_store).get()

    @pytest.mark.parametrize("payload", ["not json", '{"f": {"Capacity": "lots"}}', "[1, 2]"])
    def test_corrupt_value(self, memory_store: MemoryCoordinationStore, payload: str) -> None:
        memory_store.put("allocation", payload)

        with pytest.raises(AllocationCorruptError):
            AllocationStore(memory_store).get()

    def test_custom_key(self, memory_store: MemoryCoordinationStore) -> None:
        AllocationStore(memory_store, key="alloc/v2").publish(_make_plan())

        assert memory_store.get("allocation") is None
        assert plan_from_json(memory_store.get("alloc/v2")) == _make_plan()

    def test_lease_refusal_propagates(self) -> None:
        store = MagicMock()
        store.grant_lease.side_effect = LeaseGrantError("quota")

        with pytest.raises(LeaseGrantError):
            AllocationStore(store).publish(_make_plan())
        store.put.assert_not_called()


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: lease TTL versus epoch
# ─────────────────────────────────────────────────────────────────────────────

class TestLeaseGap:
    def test_ttl_shorter_than_epoch_leaves_a_gap(
        self, memory_store: MemoryCoordinationStore, clock
    ) -> None:
        # TTL 10s, epoch 30s: the plan is gone from t+10 until the next publish.
        allocations = AllocationStore(memory_store, lease_ttl_s=10)
        allocations.publish(_make_plan(instances=1))

        clock.advance(15)
        with pytest.raises(AllocationNotFoundError):
            allocations.get()

        clock.advance(15)
        allocations.publish(_make_plan(instances=2))
        assert allocations.get()["resize"].instances["10.0.0.1"] == 2

    def test_every_publish_gets_a_fresh_lease(
        self, memory_store: MemoryCoordinationStore, clock
    ) -> None:
        allocations = AllocationStore(memory_store, lease_ttl_s=60)
        allocations.publish(_make_plan())
        clock.advance(50)
        allocations.publish(_make_plan())
        clock.advance(50)

        assert allocations.get() == _make_plan()


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: watch and restart
# ─────────────────────────────────────────────────────────────────────────────

class _FlakyStore(MemoryCoordinationStore):
    """Breaks the first `failures` subscriptions after they start iterating."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.subscriptions = 0

    def watch(self, key: str, stop_event: Optional[threading.Event] = None) -> Iterator[WatchEvent]:
        self.subscriptions += 1
        if self.failures > 0:
            self.failures -= 1
            return self._broken()
        return super().watch(key, stop_event)

    @staticmethod
    def _broken() -> Iterator[WatchEvent]:
        raise StoreUnavailableError("connection reset")
        yield  # pragma: no cover


class TestWatch:
    def test_notifications_for_publishes(self, memory_store: MemoryCoordinationStore) -> None:
        allocations = AllocationStore(memory_store)
        events = allocations.watch()

        allocations.publish(_make_plan())
        allocations.publish(_make_plan())

        assert [next(events).type, next(events).type] == [WatchEventType.PUT, WatchEventType.PUT]

    def test_broken_subscription_restarts(self) -> None:
        store = _FlakyStore(failures=2)
        allocations = AllocationStore(store, retry_backoff_s=0.0)
        stop = threading.Event()
        events = allocations.watch(stop)
        publisher = threading.Timer(0.3, allocations.publish, args=(_make_plan(),))
        guard = threading.Timer(5.0, stop.set)
        publisher.start()
        guard.start()

        try:
            event = next(events)
        finally:
            guard.cancel()
            publisher.join()
            stop.set()

        assert event.type == WatchEventType.PUT
        assert store.subscriptions == 3

    def test_stop_event_ends_watch(self, memory_store: MemoryCoordinationStore) -> None:
        stop = threading.Event()
        events = AllocationStore(memory_store).watch(stop)
        stop.set()

        received: List[WatchEvent] = list(events)

        assert received == []

    def test_first_subscription_failure_raises(self) -> None:
        store = MagicMock()
        store.watch.side_effect = StoreUnavailableError("refused")

        with pytest.raises(StoreUnavailableError):
            AllocationStore(store).watch()


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: watch backoff
# ─────────────────────────────────────────────────────────────────────────────

class _RecordingStop:
    """Stop event that records every backoff instead of sleeping; sets itself after `limit` waits."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.waits: List[float] = []

    def is_set(self) -> bool:
        return len(self.waits) >= self.limit

    def wait(self, timeout: Optional[float] = None) -> bool:
        self.waits.append(timeout)
        return self.is_set()


class _ScriptedStore(MemoryCoordinationStore):
    """Each watch() plays the next script step: "broken" fails at once, "one_event" delivers a PUT then fails."""

    def __init__(self, script: List[str]) -> None:
        super().__init__()
        self.script = list(script)

    def watch(self, key: str, stop_event: Optional[threading.Event] = None) -> Iterator[WatchEvent]:
        step = self.script.pop(0) if self.script else "broken"
        if step == "one_event":
            return self._one_event(key)
        return _FlakyStore._broken()

    @staticmethod
    def _one_event(key: str) -> Iterator[WatchEvent]:
        yield WatchEvent(type=WatchEventType.PUT, key=key)
        raise StoreUnavailableError("connection reset")


class TestWatchBackoff:
    def test_backoff_grows_while_store_stays_down(self) -> None:
        store = _FlakyStore(failures=100)
        stop = _RecordingStop(limit=5)
        allocations = AllocationStore(store, retry_backoff_s=1.0, max_backoff_s=30.0)

        assert list(allocations.watch(stop)) == []
        assert stop.waits == [1.0, 2.0, 4.0, 8.0, 16.0]

    def test_backoff_is_capped(self) -> None:
        store = _FlakyStore(failures=100)
        stop = _RecordingStop(limit=6)
        allocations = AllocationStore(store, retry_backoff_s=1.0, max_backoff_s=5.0)

        list(allocations.watch(stop))

        assert stop.waits == [1.0, 2.0, 4.0, 5.0, 5.0, 5.0]
        assert max(stop.waits) == allocations.max_backoff_s

    def test_backoff_resets_after_a_delivered_event(self) -> None:
        store = _ScriptedStore(["broken", "broken", "one_event", "broken", "broken"])
        stop = _RecordingStop(limit=4)
        allocations = AllocationStore(store, retry_backoff_s=1.0, max_backoff_s=30.0)

        received = list(allocations.watch(stop))

        assert [e.type for e in received] == [WatchEventType.PUT]
        assert stop.waits == [1.0, 2.0, 1.0, 2.0]
