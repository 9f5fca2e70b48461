"""
allocator/resources/probe.py
────────────────────────────
ResourceProbe: reads the local node's capability at startup.

What is measured
─────────────────
  computational_capacity = per-core clock (MHz) × logical core count
  maximum_capacity       = clock of the first core, the representative core
  total_memory_mb        = total virtual memory / 1e6

What is NOT measured
─────────────────────
  ipc and power_consumption are fixed placeholders (IPC_PLACEHOLDER,
  POWER_PLACEHOLDER_W). Nothing on the node reports them today.

Failure policy
───────────────
There is no degraded mode. If CPU or memory information cannot be read the
probe raises ResourceProbeError and the process must not start: the planner
divides by maximum_capacity and the solver would otherwise see a node with
zero capacity.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
from typing import Optional

import psutil

from allocator.shared.models import NodeResources

logger = logging.getLogger(__name__)

IPC_PLACEHOLDER: float = 1.0
"""Instructions per cycle reported for every node until it is measured."""

POWER_PLACEHOLDER_W: float = 400.0
"""Power draw (W) reported for every node until it is measured."""

BYTES_PER_MB: float = 1e6

FALLBACK_IP = "127.0.0.1"


class ResourceProbeError(Exception):
    """CPU or memory information could not be read. Fatal at startup."""


class ResourceProbe:
    """
    Reads local capability through psutil.

    Usage:
        resources = ResourceProbe().probe_local()
    """

    def probe_local(self) -> NodeResources:
        """
        Return this node's NodeResources.

        Raises:
            ResourceProbeError: any psutil failure, missing frequency data, or a
                                non-positive clock / core count / memory size.
        """
        clock_mhz = self._core_clock_mhz()
        cores = self._core_count()
        total_memory_mb = self._total_memory_mb()

        resources = NodeResources(
            total_memory_mb=total_memory_mb,
            computational_capacity=clock_mhz * cores,
            maximum_capacity=clock_mhz,
            ipc=IPC_PLACEHOLDER,
            power_consumption=POWER_PLACEHOLDER_W,
        )
        logger.info(
            "Local resources: %d cores @ %.0f MHz (capacity %.0f), %d MB memory",
            cores, clock_mhz, resources.computational_capacity, total_memory_mb,
        )
        return resources

    # ── Individual readings ───────────────────────────────────────────────────

    def _core_clock_mhz(self) -> float:
        try:
            per_cpu = psutil.cpu_freq(percpu=True) or []
            freq = per_cpu[0] if per_cpu else psutil.cpu_freq()
        except (OSError, RuntimeError, NotImplementedError) as e:
            raise ResourceProbeError(f"cannot read CPU frequency: {e}") from e

        if freq is None:
            raise ResourceProbeError("CPU frequency is not available on this platform")

        # Some hypervisors report current=0 but a valid max.
        clock = freq.current or freq.max
        if not clock or clock <= 0:
            raise ResourceProbeError(f"CPU frequency reading is not positive: {freq}")
        return float(clock)

    def _core_count(self) -> int:
        try:
            cores = psutil.cpu_count(logical=True)
        except (OSError, RuntimeError) as e:
            raise ResourceProbeError(f"cannot read CPU count: {e}") from e
        if not cores or cores <= 0:
            raise ResourceProbeError(f"CPU count is not positive: {cores}")
        return int(cores)

    def _total_memory_mb(self) -> int:
        try:
            total = psutil.virtual_memory().total
        except (OSError, RuntimeError) as e:
            raise ResourceProbeError(f"cannot read memory information: {e}") from e
        if total <= 0:
            raise ResourceProbeError(f"total memory is not positive: {total}")
        return int(total / BYTES_PER_MB)


def local_ip_address(override: Optional[str] = None) -> str:
    """
    Address this node advertises in the plan.

    Priority:
      1. override (configuration), validated as an IP address
      2. first non-loopback IPv4 address found by psutil.net_if_addrs()
      3. FALLBACK_IP, with a warning
    """
    if override:
        ipaddress.ip_address(override)
        return override

    try:
        interfaces = psutil.net_if_addrs()
    except OSError as e:
        logger.warning("Cannot list network interfaces (%s), advertising %s", e, FALLBACK_IP)
        return FALLBACK_IP

    for name in sorted(interfaces):
        for addr in interfaces[name]:
            if addr.family != socket.AF_INET:
                continue
            if ipaddress.ip_address(addr.address).is_loopback:
                continue
            return addr.address

    logger.warning("No non-loopback IPv4 address found, advertising %s", FALLBACK_IP)
    return FALLBACK_IP
