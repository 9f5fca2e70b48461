"""
solver_core/contract.py
───────────────────────
The request/response contract spoken across the solver boundary.

The optimisation engine is opaque. All the controller knows about it is:

  Request  → node count, function count, five integer node arrays and four
             integer function arrays, every array as long as its declared count.
  Response → one JSON document:

        {
          "SolverWalltime":     float,
          "SolverStatusName":   "OPTIMAL" | "INFEASIBLE" | "TIMEOUT" | ...,
          "ObjectiveValue":     float,
          "ActiveNodesIndexes": [int, ...],
          "FunctionsCapacity":  [float, ...],        # index-aligned to functions
          "NodesInstances":     {"<node index>": [number, ...], ...}
        }

Buffer ownership
────────────────
SolverRequest.as_positional() allocates fresh contiguous int32 arrays on every
call. The caller (the bridge) owns them; backends only read them for the
duration of the call. Nothing on the far side of the boundary frees anything.
"""

from __future__ import annotations

from typing import Any, Dict, List, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, model_validator

# Order of the positional arguments after the two counts. Backends that speak
# the positional contract receive arrays in exactly this order.
NODE_ARRAYS: Tuple[str, ...] = (
    "node_memory",
    "node_capacity",
    "maximum_capacity",
    "node_ipc",
    "node_power",
)
FUNCTION_ARRAYS: Tuple[str, ...] = (
    "function_memory",
    "function_workload",
    "function_deadline",
    "function_invocations",
)

ARRAY_DTYPE = np.int32
"""Element type of every array handed across the boundary (C int)."""


class SolverRequest(BaseModel):
    """
    One solve call, fully materialised.

    Array lengths are validated against the declared counts at construction
    time, so a backend can never be handed a ragged request.
    """
    node_count: int = Field(..., ge=0)
    function_count: int = Field(..., ge=0)

    node_memory: List[int]
    node_capacity: List[int]
    maximum_capacity: List[int]
    node_ipc: List[int]
    node_power: List[int]

    function_memory: List[int]
    function_workload: List[int]
    function_deadline: List[int]
    function_invocations: List[int]

    @model_validator(mode="after")
    def _check_lengths(self) -> "SolverRequest":
        for name in NODE_ARRAYS:
            if len(getattr(self, name)) != self.node_count:
                raise ValueError(
                    f"{name} has {len(getattr(self, name))} entries, "
                    f"expected node_count={self.node_count}"
                )
        for name in FUNCTION_ARRAYS:
            if len(getattr(self, name)) != self.function_count:
                raise ValueError(
                    f"{name} has {len(getattr(self, name))} entries, "
                    f"expected function_count={self.function_count}"
                )
        return self

    def as_positional(self) -> Tuple[Any, ...]:
        """
        Return the positional argument tuple of the fixed contract:

            (n_nodes, n_functions,
             node_memory, node_capacity, maximum_capacity, node_ipc, node_power,
             function_memory, function_workload, function_deadline, function_invocations)

        Each array is a new C-contiguous int32 numpy array.
        """
        arrays = [
            np.ascontiguousarray(getattr(self, name), dtype=ARRAY_DTYPE)
            for name in NODE_ARRAYS + FUNCTION_ARRAYS
        ]
        return (self.node_count, self.function_count, *arrays)


class SolverResult(BaseModel):
    """
    Parsed solver response.

    NodesInstances values are kept as raw JSON values (Any): a malformed entry
    for one (node, function) pair must not reject the whole document. The
    planner decides what to do with entries that are not numbers.
    """
    model_config = ConfigDict(populate_by_name=True)

    solver_walltime: float = Field(..., alias="SolverWalltime")
    solver_status_name: str = Field(..., alias="SolverStatusName")
    objective_value: float = Field(..., alias="ObjectiveValue")
    active_nodes_indexes: List[int] = Field(default_factory=list, alias="ActiveNodesIndexes")
    functions_capacity: List[float] = Field(..., alias="FunctionsCapacity")
    nodes_instances: Dict[int, List[Any]] = Field(default_factory=dict, alias="NodesInstances")
