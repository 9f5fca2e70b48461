"""
allocator/shared/models.py
──────────────────────────
Every data structure the allocation controller passes between components.

Reading guide
-------------
Read top-to-bottom. Each section builds on the ones above it.

  Section 1  → what a node reports about itself
  Section 2  → what the function registry knows about a function
  Section 3  → the per-cycle snapshot handed to the solver (parallel arrays)
  Section 4  → the plan that is published and cached on every node
"""

from __future__ import annotations

from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 1: NODE RESOURCES
# ─────────────────────────────────────────────────────────────────────────────

class NodeResources(BaseModel):
    """
    Compute / memory / power capability of one node.

    Fields:
        total_memory_mb        → Total RAM in MB (1 MB = 1e6 bytes).
        computational_capacity → Aggregate clock: per-core MHz × core count.
        maximum_capacity       → Single-core clock ceiling in MHz. The planner
                                 divides allocated capacity by this value to get
                                 a function's CPU demand.
        ipc                    → Instructions per cycle. Sent to the solver as
                                 fixed-point ×10.
        power_consumption      → Node power draw in watts.
    """
    total_memory_mb: int = Field(..., ge=0)
    computational_capacity: float = Field(..., ge=0.0)
    maximum_capacity: float = Field(..., ge=0.0)
    ipc: float = Field(1.0, ge=0.0)
    power_consumption: float = Field(400.0, ge=0.0)


class NodeStatus(NodeResources):
    """A peer's registry entry: its resources plus the URL it advertises."""
    url: str = Field(..., description="Advertised service URL, e.g. http://10.0.0.7:1323")


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 2: FUNCTION METADATA
# ─────────────────────────────────────────────────────────────────────────────

class FunctionMetadata(BaseModel):
    """
    One registered function as the controller sees it.

    workload is kept in its raw, fine-grained unit; the snapshot builder
    scales it by WORKLOAD_SCALE before it reaches the solver.

    cpu_demand is derived: the planner writes it back after every solve
    (allocated capacity / local single-core clock, two decimals).
    """
    name: str
    memory_mb: int = Field(0, ge=0)
    workload: float = Field(0.0, ge=0.0)
    deadline: int = Field(0, ge=0)
    invocations: int = Field(0, ge=0)
    cpu_demand: float = Field(0.0, ge=0.0)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 3: SOLVE SNAPSHOT
# Struct-of-arrays: position i means the same node (or function) in every
# array for the whole cycle.
# ─────────────────────────────────────────────────────────────────────────────

class NodeInfo(BaseModel):
    """Five index-aligned integer arrays, one entry per node."""
    total_memory_mb: List[int] = Field(default_factory=list)
    computational_capacity: List[int] = Field(default_factory=list)
    maximum_capacity: List[int] = Field(default_factory=list)
    ipc: List[int] = Field(default_factory=list)
    power_consumption: List[int] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_alignment(self) -> "NodeInfo":
        lengths = {
            len(self.total_memory_mb),
            len(self.computational_capacity),
            len(self.maximum_capacity),
            len(self.ipc),
            len(self.power_consumption),
        }
        if len(lengths) > 1:
            raise ValueError(f"NodeInfo arrays are not index-aligned: lengths {sorted(lengths)}")
        return self

    def __len__(self) -> int:
        return len(self.total_memory_mb)


class FunctionInfo(BaseModel):
    """Four index-aligned integer arrays, one entry per function."""
    memory_mb: List[int] = Field(default_factory=list)
    workload: List[int] = Field(default_factory=list)
    deadline: List[int] = Field(default_factory=list)
    invocations: List[int] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_alignment(self) -> "FunctionInfo":
        lengths = {
            len(self.memory_mb),
            len(self.workload),
            len(self.deadline),
            len(self.invocations),
        }
        if len(lengths) > 1:
            raise ValueError(f"FunctionInfo arrays are not index-aligned: lengths {sorted(lengths)}")
        return self

    def __len__(self) -> int:
        return len(self.memory_mb)


class Snapshot(BaseModel):
    """
    Everything one solve cycle needs, frozen at assembly time.

    node_ips[i] is the address of the node described by node_info[*][i];
    function_names[i] is the function described by function_info[*][i].
    """
    node_info: NodeInfo
    function_info: FunctionInfo
    node_ips: List[str]
    function_names: List[str]

    @model_validator(mode="after")
    def _check_labels(self) -> "Snapshot":
        if len(self.node_ips) != len(self.node_info):
            raise ValueError("node_ips must be index-aligned with node_info")
        if len(self.function_names) != len(self.function_info):
            raise ValueError("function_names must be index-aligned with function_info")
        return self

    @property
    def node_count(self) -> int:
        return len(self.node_info)

    @property
    def function_count(self) -> int:
        return len(self.function_info)

    @property
    def is_solvable(self) -> bool:
        """False when either side is empty. No solve is attempted then."""
        return self.node_count > 0 and self.function_count > 0


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 4: ALLOCATION PLAN
# The only artifact that leaves the solver node.
# ─────────────────────────────────────────────────────────────────────────────

class FunctionAllocation(BaseModel):
    """
    Allocation of one function.

    Wire form: {"Capacity": 150.0, "Instances": {"10.0.0.7": 3}}
    """
    model_config = ConfigDict(populate_by_name=True)

    capacity: float = Field(..., alias="Capacity")
    instances: Dict[str, int] = Field(default_factory=dict, alias="Instances")

    @model_validator(mode="after")
    def _check_instances(self) -> "FunctionAllocation":
        for ip, count in self.instances.items():
            if count < 0:
                raise ValueError(f"negative instance count {count} for {ip}")
        return self


# function name → allocation
AllocationPlan = Dict[str, FunctionAllocation]

_PLAN_ADAPTER: TypeAdapter = TypeAdapter(AllocationPlan)


def plan_to_json(plan: AllocationPlan) -> str:
    """Serialise a plan to its wire form (aliased keys)."""
    return _PLAN_ADAPTER.dump_json(plan, by_alias=True).decode("utf-8")


def plan_from_json(payload: str | bytes) -> AllocationPlan:
    """
    Parse and validate a plan from its wire form.

    Raises:
        pydantic.ValidationError: malformed JSON or schema mismatch.
    """
    return _PLAN_ADAPTER.validate_json(payload)
