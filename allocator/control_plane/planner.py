"""
allocator/control_plane/planner.py
───────────────────────────────────
AllocationPlanner: solver indices in, distributable plan out.

For function i (position i of the snapshot's function_names):

    Instances  = {node_ips[n]: int(NodesInstances[n][i]) for every node n}
    Capacity   = FunctionsCapacity[i]
    cpu_demand = round_half_away(FunctionsCapacity[i] / local maximum_capacity, 2)

cpu_demand is written back to the function's registry record. Records are
saved one after another; if a save fails the cycle aborts with PlanningError
and records already saved stay saved.

Malformed instance entries (not a number, negative, missing, or for a node
index the snapshot does not know) are logged and dropped. They never abort
the cycle.
"""

from __future__ import annotations

import logging
import math
from numbers import Real
from typing import Any, Dict, List, Optional

from allocator.registry.functions import FunctionRegistry
from allocator.registry.nodes import RegistryError
from allocator.shared.models import AllocationPlan, FunctionAllocation, NodeResources
from solver_core import SolverResult

logger = logging.getLogger(__name__)

CPU_DEMAND_DECIMALS = 2


class PlanningError(Exception):
    """
    The plan could not be completed. Fatal to the solve cycle.

    Raised when a function record is missing or cannot be saved, or when the
    local node reports a non-positive single-core capacity.
    """


def round_half_away(value: float, decimals: int) -> float:
    """Round to decimals places, ties away from zero (0.125 → 0.13, -0.125 → -0.13)."""
    scale = 10 ** decimals
    return math.copysign(math.floor(abs(value) * scale + 0.5), value) / scale


class AllocationPlanner:

    def __init__(self, function_registry: FunctionRegistry, local_resources: NodeResources) -> None:
        self.function_registry = function_registry
        self.local_resources = local_resources

    def plan(
        self,
        result: SolverResult,
        function_names: List[str],
        node_ips: List[str],
    ) -> AllocationPlan:
        """
        Build the plan and persist every function's cpu_demand.

        Raises:
            PlanningError
        """
        max_capacity = self.local_resources.maximum_capacity
        if max_capacity <= 0:
            raise PlanningError(f"local maximum capacity must be positive, got {max_capacity}")
        if len(result.functions_capacity) < len(function_names):
            raise PlanningError(
                f"solver returned {len(result.functions_capacity)} capacities "
                f"for {len(function_names)} functions"
            )

        plan: AllocationPlan = {}
        for i, name in enumerate(function_names):
            capacity = result.functions_capacity[i]
            plan[name] = FunctionAllocation(
                capacity=capacity,
                instances=self._instances_for(i, name, result, node_ips),
            )
            self._record_cpu_demand(name, round_half_away(capacity / max_capacity, CPU_DEMAND_DECIMALS))

        logger.info("Planned %d functions across %d nodes", len(plan), len(node_ips))
        return plan

    # ── Instances ─────────────────────────────────────────────────────────────

    def _instances_for(
        self,
        function_index: int,
        name: str,
        result: SolverResult,
        node_ips: List[str],
    ) -> Dict[str, int]:
        instances: Dict[str, int] = {}
        for node_index, values in result.nodes_instances.items():
            if not 0 <= node_index < len(node_ips):
                logger.warning(
                    "Solver reported node index %d, snapshot has %d nodes. Skipping it for %s",
                    node_index, len(node_ips), name,
                )
                continue
            if function_index >= len(values):
                logger.warning(
                    "Node %d has no instance entry at index %d (%s)", node_index, function_index, name,
                )
                continue
            count = _coerce_count(values[function_index])
            if count is None:
                logger.warning(
                    "Expected a non-negative number but found %r at index %d for node %d",
                    values[function_index], function_index, node_index,
                )
                continue
            instances[node_ips[node_index]] = count
        return instances

    # ── Derived signal ────────────────────────────────────────────────────────

    def _record_cpu_demand(self, name: str, cpu_demand: float) -> None:
        try:
            record = self.function_registry.get(name)
        except RegistryError as e:
            raise PlanningError(f"cannot read function {name}: {e}") from e
        if record is None:
            raise PlanningError(f"function {name} has no registry record")

        try:
            self.function_registry.save(record.model_copy(update={"cpu_demand": cpu_demand}))
        except RegistryError as e:
            raise PlanningError(f"cannot save cpu demand of function {name}: {e}") from e
        logger.debug("Function %s cpu_demand=%.2f", name, cpu_demand)


def _coerce_count(value: Any) -> Optional[int]:
    """Truncate a JSON number to an instance count; None if it is not a usable count."""
    if isinstance(value, bool) or not isinstance(value, Real):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return int(value)
