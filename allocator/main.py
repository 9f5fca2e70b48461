"""
allocator/main.py
─────────────────
Process entry point: `allocation-controller`.

    allocation-controller --config /etc/allocator.yaml --solver
    ALLOCATOR_REDIS_URL=redis://coordinator:6379/0 allocation-controller

Startup order
──────────────
  1. logging, settings (defaults ← YAML ← ALLOCATOR_* env ← flags)
  2. probe local resources; failure is fatal, there is no degraded mode
  3. coordination store, registries, local node registration and its
     heartbeat thread (the entry lives under a TTL lease)
  4. solver backend (solver node only)
  5. Scheduler.run() until Ctrl-C / SIGTERM or a fatal error

Exit status: 0 on a requested shutdown, 1 on a fatal error.
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from typing import List, Optional, Tuple

from pydantic import ValidationError

from allocator.control_plane import (
    AllocationCache,
    AllocationPlanner,
    PlanningError,
    Scheduler,
    SnapshotBuilder,
    SolverBridge,
)
from allocator.coordination import (
    AllocationStore,
    CoordinationError,
    CoordinationStore,
    MemoryCoordinationStore,
    RedisCoordinationStore,
)
from allocator.registry import NodeHeartbeat, RegistryError, StoreFunctionRegistry, StoreNodeRegistry
from allocator.resources import ResourceProbe, ResourceProbeError, local_ip_address
from allocator.shared.config import ControllerSettings, load_settings
from allocator.shared.logging_config import configure_logging
from allocator.shared.models import NodeStatus
from solver_core import ModuleSolver, Solver, SolverError, SubprocessSolver

logger = logging.getLogger(__name__)

FATAL_ERRORS = (
    ResourceProbeError,
    SolverError,
    PlanningError,
    CoordinationError,
    RegistryError,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="allocation-controller",
        description="Cluster allocation controller: solve and publish, or watch the plan",
    )
    parser.add_argument("--config", default=None, help="YAML settings file (else $ALLOCATOR_CONFIG_FILE)")
    role = parser.add_mutually_exclusive_group()
    role.add_argument("--solver", dest="is_solver_node", action="store_const", const=True,
                      help="run as the solver node")
    role.add_argument("--watcher", dest="is_solver_node", action="store_const", const=False,
                      help="run as a watcher node")
    parser.add_argument("--store", choices=["redis", "memory"], default=None,
                        help="coordination store backend")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")
    return parser


def apply_overrides(settings: ControllerSettings, args: argparse.Namespace) -> ControllerSettings:
    """Command-line flags win over every other source."""
    overrides = {}
    if args.is_solver_node is not None:
        overrides["is_solver_node"] = args.is_solver_node
    if args.store is not None:
        overrides["store_backend"] = args.store
    if args.log_level is not None:
        overrides["log_level"] = args.log_level
    return settings.model_copy(update=overrides)


def build_store(settings: ControllerSettings) -> CoordinationStore:
    if settings.store_backend == "memory":
        logger.warning("Using the in-memory coordination store; the plan is not shared with other nodes")
        return MemoryCoordinationStore()
    return RedisCoordinationStore.from_url(settings.redis_url, timeout_s=settings.store_timeout_s)


def build_solver(settings: ControllerSettings) -> Solver:
    """
    Raises:
        ValueError:            the chosen backend is not configured.
        SolverInvocationError: the module entrypoint cannot be loaded.
    """
    if settings.solver_backend == "subprocess":
        if not settings.solver_command:
            raise ValueError("solver_backend=subprocess needs solver_command")
        return SubprocessSolver(settings.solver_command)
    if not settings.solver_entrypoint:
        raise ValueError("solver_backend=module needs solver_entrypoint ('package.module:function')")
    return ModuleSolver(settings.solver_entrypoint)


def build_scheduler(
    settings: ControllerSettings,
    store: CoordinationStore,
    node_registry: StoreNodeRegistry,
    stop_event: threading.Event,
) -> Tuple[Scheduler, NodeHeartbeat]:
    """Probe, register this node, and wire the components for its role."""
    resources = ResourceProbe().probe_local()
    local_ip = local_ip_address(settings.advertised_ip)
    heartbeat = NodeHeartbeat(
        node_registry,
        NodeStatus(url=f"http://{local_ip}", **resources.model_dump()),
        ttl_s=settings.registration_ttl_s,
        interval_s=settings.registration_interval_s,
        stop_event=stop_event,
    )
    heartbeat.beat()
    logger.info(
        "Registered node %s at %s, refreshing every %.0fs (ttl %ds)",
        settings.node_id, local_ip, heartbeat.interval_s, heartbeat.ttl_s,
    )

    allocation_store = AllocationStore(
        store,
        key=settings.allocation_key,
        lease_ttl_s=settings.lease_ttl_s,
        retry_backoff_s=settings.watch_retry_backoff_s,
        max_backoff_s=settings.watch_max_backoff_s,
    )
    cache = AllocationCache()

    if not settings.is_solver_node:
        return Scheduler(allocation_store, cache, stop_event=stop_event), heartbeat

    function_registry = StoreFunctionRegistry(store, prefix=settings.function_registry_prefix)
    scheduler = Scheduler(
        allocation_store,
        cache,
        is_solver_node=True,
        epoch_duration_s=settings.epoch_duration_s,
        snapshot_builder=SnapshotBuilder(function_registry),
        node_registry=node_registry,
        local_resources=resources,
        local_ip=local_ip,
        bridge=SolverBridge(build_solver(settings), timeout_s=settings.solver_timeout_s),
        planner=AllocationPlanner(function_registry, resources),
        stop_event=stop_event,
    )
    return scheduler, heartbeat


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level or logging.INFO)

    try:
        settings = apply_overrides(load_settings(args.config), args)
    except (ValidationError, OSError, ValueError) as e:
        logger.critical("Invalid configuration: %s", e)
        return 1
    configure_logging(settings.log_level)

    stop_event = threading.Event()
    store: Optional[CoordinationStore] = None
    node_registry: Optional[StoreNodeRegistry] = None
    heartbeat: Optional[NodeHeartbeat] = None
    try:
        store = build_store(settings)
        node_registry = StoreNodeRegistry(store, settings.node_id, prefix=settings.node_registry_prefix)
        scheduler, heartbeat = build_scheduler(settings, store, node_registry, stop_event)
        heartbeat.start()
        signal.signal(signal.SIGTERM, lambda signum, frame: scheduler.stop())
        scheduler.run()
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
        stop_event.set()
    except FATAL_ERRORS as e:
        logger.critical("Fatal error, exiting: %s", e, exc_info=True)
        return 1
    except ValueError as e:
        logger.critical("Invalid configuration: %s", e)
        return 1
    finally:
        stop_event.set()
        if heartbeat is not None:
            # no beat may land after the deregister below
            heartbeat.stop()
        if store is not None:
            if node_registry is not None:
                try:
                    node_registry.deregister()
                except CoordinationError as e:
                    logger.warning("Could not deregister node %s: %s", settings.node_id, e)
            store.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
