"""
allocator/control_plane/scheduler.py
─────────────────────────────────────
The control loop. Role is fixed at construction by is_solver_node; there is
no election and no role change at runtime.

Solver node
────────────
    IDLE ──tick──► SOLVING ──► PUBLISHING ──► IDLE

  Every epoch_duration_s the EpochTicker fires and solve_once() runs:
    1. snapshot  ← SnapshotBuilder.collect(node registry, local resources)
    2. nothing to place (no functions) → back to IDLE, no solve, no publish
    3. result    ← SolverBridge.solve(node_info, function_info)
    4. plan      ← AllocationPlanner.plan(result, names, ips)
    5. AllocationStore.publish(plan), then the local cache is replaced

  One thread does all of this, so solves never overlap. A solve that runs
  past the next tick leaves one tick pending; any further missed ticks are
  dropped and logged.

Watcher node
─────────────
    WATCHING ──notification──► APPLYING ──► WATCHING

  Subscribe, read the current plan once (a node that joins mid-epoch must
  not wait a full epoch), then re-read on every notification. Each read
  replaces the cache wholesale.

Error contract
───────────────
  Solver node:  every error in solve_once() is fatal and leaves run().
                The entry point logs it and exits with status 1.
  Watcher node: AllocationStoreError and StoreUnavailableError are logged;
                the loop keeps going and the cache keeps the last good plan.
                Lost subscriptions are retried with exponential backoff.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Callable, Optional

from tenacity import RetryError

from allocator.control_plane.cache import AllocationCache
from allocator.control_plane.planner import AllocationPlanner
from allocator.control_plane.snapshot import SnapshotBuilder
from allocator.control_plane.solver_bridge import SolverBridge
from allocator.coordination.allocation_store import (
    AllocationNotFoundError,
    AllocationStore,
    AllocationStoreError,
)
from allocator.coordination.store import StoreUnavailableError
from allocator.registry.nodes import NodeRegistry
from allocator.shared.models import AllocationPlan, NodeResources

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    IDLE = "IDLE"
    SOLVING = "SOLVING"
    PUBLISHING = "PUBLISHING"
    WATCHING = "WATCHING"
    APPLYING = "APPLYING"


# ── Ticker ────────────────────────────────────────────────────────────────────

class EpochTicker:
    """
    Fixed-rate ticks at start + k × period_s.

    wait() blocks until the next tick and returns True, or returns False once
    stop_event is set. If the caller falls behind, one missed tick fires
    immediately on the next wait(), the rest are dropped, and the tick after
    that comes at the first boundary still ahead of the clock.

    The first tick comes one full period after the first wait().
    """

    def __init__(
        self,
        period_s: float,
        stop_event: threading.Event,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if period_s <= 0:
            raise ValueError(f"period_s must be positive, got {period_s}")
        self.period_s = period_s
        self._stop_event = stop_event
        self._clock = clock
        self._next: Optional[float] = None
        self.ticks = 0
        self.dropped = 0

    def wait(self) -> bool:
        if self._next is None:
            self._next = self._clock() + self.period_s

        while True:
            if self._stop_event.is_set():
                return False
            remaining = self._next - self._clock()
            if remaining <= 0:
                break
            if self._stop_event.wait(remaining):
                return False

        now = self._clock()
        # boundaries already passed besides the one firing now
        behind = int((now - self._next) // self.period_s)
        if behind >= 1:
            self.dropped += behind
            logger.warning(
                "Epoch overran, dropped %d ticks (%d total)", behind, self.dropped,
            )
        self._next += (behind + 1) * self.period_s
        self.ticks += 1
        return True


# ── Scheduler ─────────────────────────────────────────────────────────────────

class Scheduler:
    """
    Drives one node's role.

    Watcher nodes only need allocation_store and cache. Solver nodes also need
    the snapshot builder, node registry, local resources and address, bridge
    and planner; a solver node constructed without them raises ValueError.

    Public API:
        run()             → blocks until stop() or a fatal error
        solve_once()      → one solver cycle, returns the plan or None
        get_allocation()  → the current plan (a copy)
        stop()            → ask run() to return at the next wait
        state             → current SchedulerState
    """

    def __init__(
        self,
        allocation_store: AllocationStore,
        cache: AllocationCache,
        *,
        is_solver_node: bool = False,
        epoch_duration_s: float = 30,
        snapshot_builder: Optional[SnapshotBuilder] = None,
        node_registry: Optional[NodeRegistry] = None,
        local_resources: Optional[NodeResources] = None,
        local_ip: Optional[str] = None,
        bridge: Optional[SolverBridge] = None,
        planner: Optional[AllocationPlanner] = None,
        stop_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.allocation_store = allocation_store
        self.cache = cache
        self.is_solver_node = is_solver_node
        self.epoch_duration_s = epoch_duration_s
        self.snapshot_builder = snapshot_builder
        self.node_registry = node_registry
        self.local_resources = local_resources
        self.local_ip = local_ip
        self.bridge = bridge
        self.planner = planner
        self._stop_event = stop_event or threading.Event()
        self._clock = clock
        self._state = SchedulerState.IDLE

        if is_solver_node:
            missing = [
                name for name in (
                    "snapshot_builder", "node_registry", "local_resources",
                    "local_ip", "bridge", "planner",
                )
                if getattr(self, name) is None
            ]
            if missing:
                raise ValueError(f"solver node is missing: {', '.join(missing)}")

    @property
    def state(self) -> SchedulerState:
        return self._state

    def _set_state(self, state: SchedulerState) -> None:
        if state is not self._state:
            logger.debug("Scheduler %s → %s", self._state.value, state.value)
        self._state = state

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def run(self) -> None:
        role = "solver" if self.is_solver_node else "watcher"
        logger.info("Scheduler starting as %s node", role)
        try:
            if self.is_solver_node:
                self._run_solver_loop()
            else:
                self._run_watch_loop()
        finally:
            self._set_state(SchedulerState.IDLE)
            logger.info("Scheduler (%s) stopped", role)

    def stop(self) -> None:
        self._stop_event.set()

    def get_allocation(self) -> AllocationPlan:
        return self.cache.get()

    # ── Solver role ───────────────────────────────────────────────────────────

    def _run_solver_loop(self) -> None:
        ticker = EpochTicker(self.epoch_duration_s, self._stop_event, self._clock)
        while ticker.wait():
            self.solve_once()

    def solve_once(self) -> Optional[AllocationPlan]:
        """
        One full solver cycle.

        Returns the published plan, or None when there was nothing to solve.
        Every exception propagates.
        """
        self._set_state(SchedulerState.SOLVING)
        try:
            snapshot = self.snapshot_builder.collect(
                self.node_registry, self.local_resources, self.local_ip,
            )
            if not snapshot.is_solvable:
                logger.info(
                    "Nothing to solve (%d nodes, %d functions), skipping this epoch",
                    snapshot.node_count, snapshot.function_count,
                )
                return None

            result = self.bridge.solve(snapshot.node_info, snapshot.function_info)
            plan = self.planner.plan(result, snapshot.function_names, snapshot.node_ips)

            self._set_state(SchedulerState.PUBLISHING)
            self.allocation_store.publish(plan)
            self.cache.replace(plan)
            return plan
        finally:
            self._set_state(SchedulerState.IDLE)

    # ── Watcher role ──────────────────────────────────────────────────────────

    def _run_watch_loop(self) -> None:
        try:
            for attempt in self.allocation_store.retrying(self._stop_event):
                with attempt:
                    events = self.allocation_store.watch(self._stop_event)
        except RetryError:
            return

        self._set_state(SchedulerState.WATCHING)
        self._refresh()
        for event in events:
            logger.debug("Allocation %s (revision %d)", event.type.value, event.revision)
            self._refresh()
            if self._stop_event.is_set():
                break

    def _refresh(self) -> None:
        """Re-read the plan and replace the cache. Read failures keep the old plan."""
        self._set_state(SchedulerState.APPLYING)
        try:
            plan = self.allocation_store.get()
        except AllocationNotFoundError as e:
            logger.warning("No allocation available: %s", e)
        except (AllocationStoreError, StoreUnavailableError) as e:
            logger.error("Failed to read allocation: %s", e)
        else:
            self.cache.replace(plan)
            logger.info("Applied allocation for %d functions", len(plan))
        finally:
            self._set_state(SchedulerState.WATCHING)
