"""
allocator/registry/nodes.py
───────────────────────────
Node registry: who the peers are and what they can do.

The controller only reads it (get_peers). Every node keeps its own entry
fresh with a NodeHeartbeat: register() under a TTL lease, repeated well inside
that TTL. A node that dies without deregistering stops beating, its last
lease runs out, and it drops out of the next snapshot on its own.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional

from pydantic import ValidationError

from allocator.coordination.store import CoordinationError, CoordinationStore
from allocator.shared.models import NodeStatus

logger = logging.getLogger(__name__)

DEFAULT_NODE_PREFIX = "registry/nodes/"
DEFAULT_REGISTRATION_TTL_S = 90
HEARTBEAT_JOIN_TIMEOUT_S = 10.0


class RegistryError(Exception):
    """A registry could not be read or written."""


class NodeRegistry(ABC):
    """Source of peer inventory for the snapshot builder."""

    @abstractmethod
    def get_peers(self) -> Dict[str, NodeStatus]:
        """node_id → status for every node except the local one."""


class InMemoryNodeRegistry(NodeRegistry):
    """Static or test inventory."""

    def __init__(self, peers: Optional[Dict[str, NodeStatus]] = None) -> None:
        self._peers: Dict[str, NodeStatus] = dict(peers or {})

    def register(self, node_id: str, status: NodeStatus) -> None:
        self._peers[node_id] = status

    def deregister(self, node_id: str) -> None:
        self._peers.pop(node_id, None)

    def get_peers(self) -> Dict[str, NodeStatus]:
        return dict(self._peers)


class StoreNodeRegistry(NodeRegistry):
    """
    Registry kept in the coordination store, one JSON NodeStatus per key:

        registry/nodes/<node_id>  →  {"url": ..., "total_memory_mb": ..., ...}

    Entries that do not parse are skipped with a warning; one bad peer must
    not hide the rest of the cluster from the solver.
    """

    def __init__(
        self,
        store: CoordinationStore,
        local_node_id: str,
        prefix: str = DEFAULT_NODE_PREFIX,
    ) -> None:
        self._store = store
        self.local_node_id = local_node_id
        self.prefix = prefix

    def register(self, status: NodeStatus, ttl_s: Optional[int] = DEFAULT_REGISTRATION_TTL_S) -> None:
        """Publish this node's own entry, under a TTL lease unless ttl_s is None."""
        lease = self._store.grant_lease(ttl_s) if ttl_s is not None else None
        self._store.put(self.prefix + self.local_node_id, status.model_dump_json(), lease=lease)
        logger.debug("Registered node %s at %s (ttl %s)", self.local_node_id, status.url, ttl_s)

    def deregister(self) -> None:
        self._store.delete(self.prefix + self.local_node_id)
        logger.info("Deregistered node %s", self.local_node_id)

    def get_peers(self) -> Dict[str, NodeStatus]:
        peers: Dict[str, NodeStatus] = {}
        for key, payload in self._store.get_prefix(self.prefix).items():
            node_id = key[len(self.prefix):]
            if not node_id or node_id == self.local_node_id:
                continue
            try:
                peers[node_id] = NodeStatus.model_validate_json(payload)
            except ValidationError as e:
                logger.warning("Skipping malformed registry entry %s: %s", key, e)
        return peers


# ── Heartbeat ─────────────────────────────────────────────────────────────────

class NodeHeartbeat:
    """
    Re-registers the local node every interval_s under a fresh ttl_s lease.

    interval_s defaults to a third of ttl_s, so two beats can be lost before
    the entry expires. A failed beat is logged and the next one tries again.

    Usage:
        heartbeat = NodeHeartbeat(registry, status, ttl_s=90, stop_event=stop)
        heartbeat.beat()      # first registration, errors propagate
        heartbeat.start()     # background refresh until stop is set
    """

    def __init__(
        self,
        registry: StoreNodeRegistry,
        status: NodeStatus,
        ttl_s: int = DEFAULT_REGISTRATION_TTL_S,
        interval_s: Optional[float] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        interval_s = ttl_s / 3 if interval_s is None else interval_s
        if not 0 < interval_s < ttl_s:
            raise ValueError(f"heartbeat interval must be in (0, {ttl_s}), got {interval_s}")
        self.registry = registry
        self.status = status
        self.ttl_s = ttl_s
        self.interval_s = interval_s
        self._stop_event = stop_event or threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.failures = 0

    def beat(self) -> None:
        """Register once. Raises CoordinationError."""
        self.registry.register(self.status, ttl_s=self.ttl_s)

    def run(self) -> None:
        while not self._stop_event.wait(self.interval_s):
            try:
                self.beat()
            except CoordinationError as e:
                self.failures += 1
                logger.warning(
                    "Heartbeat for node %s failed (%d so far): %s",
                    self.registry.local_node_id, self.failures, e,
                )
        logger.info("Heartbeat for node %s stopped", self.registry.local_node_id)

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(target=self.run, name="node-heartbeat", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=HEARTBEAT_JOIN_TIMEOUT_S)
