"""
allocator/control_plane/snapshot.py
────────────────────────────────────
SnapshotBuilder: turns live cluster and function state into the parallel
integer arrays the solver consumes.

Ordering
─────────
  Nodes      → peers sorted by node id, then the local node, always last.
  Functions  → names sorted lexically.

The same position means the same node (or function) in every array and in
node_ips / function_names for the whole cycle. The planner relies on this to
map solver indices back to addresses and names.

Unit conversions
─────────────────
  workload   → int(raw_workload / WORKLOAD_SCALE)    (truncation)
  ipc        → int(ipc × IPC_FIXED_POINT)            (one decimal kept)
  the rest   → int(value)

Soft failures
──────────────
A function whose metadata cannot be read (missing record, registry error) is
logged and kept in the snapshot with all-zero values. The cycle goes on.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

from allocator.registry.functions import FunctionRegistry
from allocator.registry.nodes import NodeRegistry, RegistryError
from allocator.shared.models import (
    FunctionInfo,
    FunctionMetadata,
    NodeInfo,
    NodeResources,
    NodeStatus,
    Snapshot,
)

logger = logging.getLogger(__name__)

WORKLOAD_SCALE: float = 1e6
"""Raw workload units per solver workload unit."""

IPC_FIXED_POINT: int = 10
"""IPC is sent to the solver as an integer in tenths."""


def peer_address(url: str) -> str:
    """
    Host part of a peer's advertised URL.

        "http://10.0.0.7:1323"  → "10.0.0.7"
        "10.0.0.7:1323"         → "10.0.0.7"
        "http://[fd00::1]:80"   → "fd00::1"

    A URL with no recognisable host is returned unchanged, with a warning.
    """
    candidate = url if "//" in url else f"//{url}"
    try:
        host = urlsplit(candidate).hostname
    except ValueError:
        host = None
    if not host:
        logger.warning("Cannot extract a host from peer URL %r, using it verbatim", url)
        return url
    return host


class SnapshotBuilder:
    """
    Assembles one Snapshot per solve cycle.

    Usage:
        builder = SnapshotBuilder(function_registry)
        snapshot = builder.build(peers, local_resources, names, local_ip)
    """

    def __init__(self, function_registry: FunctionRegistry) -> None:
        self.function_registry = function_registry

    def collect(
        self,
        node_registry: NodeRegistry,
        local_resources: NodeResources,
        local_ip: str,
    ) -> Snapshot:
        """Read peers and function names from the registries, then build()."""
        peers = node_registry.get_peers()
        names = self.function_registry.list_names()
        return self.build(peers, local_resources, names, local_ip)

    def build(
        self,
        peers: Dict[str, NodeStatus],
        local_resources: NodeResources,
        function_names: Iterable[str],
        local_ip: str,
    ) -> Snapshot:
        node_info, node_ips = self._node_arrays(peers, local_resources, local_ip)
        names = sorted(set(function_names))
        function_info = self._function_arrays(names)

        snapshot = Snapshot(
            node_info=node_info,
            function_info=function_info,
            node_ips=node_ips,
            function_names=names,
        )
        logger.debug(
            "Snapshot: %d nodes %s, %d functions %s",
            snapshot.node_count, node_ips, snapshot.function_count, names,
        )
        return snapshot

    # ── Nodes ─────────────────────────────────────────────────────────────────

    def _node_arrays(
        self,
        peers: Dict[str, NodeStatus],
        local_resources: NodeResources,
        local_ip: str,
    ) -> Tuple[NodeInfo, List[str]]:
        ordered: List[Tuple[str, NodeResources]] = [
            (peer_address(peers[node_id].url), peers[node_id]) for node_id in sorted(peers)
        ]
        ordered.append((local_ip, local_resources))

        info = NodeInfo(
            total_memory_mb=[int(r.total_memory_mb) for _, r in ordered],
            computational_capacity=[int(r.computational_capacity) for _, r in ordered],
            maximum_capacity=[int(r.maximum_capacity) for _, r in ordered],
            ipc=[int(r.ipc * IPC_FIXED_POINT) for _, r in ordered],
            power_consumption=[int(r.power_consumption) for _, r in ordered],
        )
        return info, [ip for ip, _ in ordered]

    # ── Functions ─────────────────────────────────────────────────────────────

    def _function_arrays(self, names: List[str]) -> FunctionInfo:
        records = [self._lookup(name) for name in names]
        return FunctionInfo(
            memory_mb=[r.memory_mb if r else 0 for r in records],
            workload=[int(r.workload / WORKLOAD_SCALE) if r else 0 for r in records],
            deadline=[r.deadline if r else 0 for r in records],
            invocations=[r.invocations if r else 0 for r in records],
        )

    def _lookup(self, name: str) -> Optional[FunctionMetadata]:
        try:
            record = self.function_registry.get(name)
        except RegistryError as e:
            logger.warning("Cannot read metadata of function %s: %s. Using zeros", name, e)
            return None
        if record is None:
            logger.warning("Function %s has no metadata record. Using zeros", name)
        return record
