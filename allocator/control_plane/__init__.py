"""
allocator/control_plane: the solve → plan → publish loop and its watcher
counterpart.

Public API:
    Scheduler          : role-driven control loop
    SnapshotBuilder    : cluster state → solver arrays
    SolverBridge       : bounded call into a Solver backend
    AllocationPlanner  : solver result → AllocationPlan + cpu_demand
    AllocationCache    : node-local plan behind a reader/writer lock
"""

from allocator.control_plane.cache import AllocationCache, ReadWriteLock
from allocator.control_plane.planner import AllocationPlanner, PlanningError
from allocator.control_plane.scheduler import EpochTicker, Scheduler, SchedulerState
from allocator.control_plane.snapshot import SnapshotBuilder, peer_address
from allocator.control_plane.solver_bridge import SolverBridge

__all__ = [
    "AllocationCache",
    "AllocationPlanner",
    "EpochTicker",
    "PlanningError",
    "ReadWriteLock",
    "Scheduler",
    "SchedulerState",
    "SnapshotBuilder",
    "SolverBridge",
    "peer_address",
]
