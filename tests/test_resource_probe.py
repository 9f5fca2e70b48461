"""
tests/test_resource_probe.py
────────────────────────────
Tests for allocator/resources/probe.py

psutil is replaced with monkeypatched fakes; nothing here depends on the
machine running the tests.

Test groups:
    Group 1: capacity and memory readings
    Group 2: failure policy
    Group 3: advertised address
"""

from __future__ import annotations

import socket
from types import SimpleNamespace

import pytest

from allocator.resources import probe as probe_module
from allocator.resources.probe import (
    FALLBACK_IP,
    IPC_PLACEHOLDER,
    POWER_PLACEHOLDER_W,
    ResourceProbe,
    ResourceProbeError,
    local_ip_address,
)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _freq(current: float, maximum: float = 0.0) -> SimpleNamespace:
    return SimpleNamespace(current=current, min=0.0, max=maximum)


def _patch_psutil(
    monkeypatch: pytest.MonkeyPatch,
    per_cpu=None,
    aggregate=None,
    cores=4,
    total_bytes: int = 8_000_000_000,
) -> None:
    def cpu_freq(percpu: bool = False):
        return per_cpu if percpu else aggregate

    monkeypatch.setattr(probe_module.psutil, "cpu_freq", cpu_freq)
    monkeypatch.setattr(probe_module.psutil, "cpu_count", lambda logical=True: cores)
    monkeypatch.setattr(
        probe_module.psutil, "virtual_memory", lambda: SimpleNamespace(total=total_bytes),
    )


def _addr(family: int, address: str) -> SimpleNamespace:
    return SimpleNamespace(family=family, address=address, netmask=None, broadcast=None, ptp=None)


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: capacity and memory readings
# ─────────────────────────────────────────────────────────────────────────────

class TestReadings:
    def test_capacity_is_clock_times_cores(self, monkeypatch: pytest.MonkeyPatch) -> None:
        _patch_psutil(monkeypatch, per_cpu=[_freq(2000.0), _freq(1800.0)], cores=4)

        resources = ResourceProbe().probe_local()

        assert resources.computational_capacity == pytest.approx(8000.0)
        assert resources.maximum_capacity == pytest.approx(2000.0)

    def test_first_core_is_representative(self, monkeypatch: pytest.MonkeyPatch) -> None:
        _patch_psutil(monkeypatch, per_cpu=[_freq(1500.0), _freq(3000.0)], cores=2)

        assert ResourceProbe().probe_local().maximum_capacity == pytest.approx(1500.0)

    def test_falls_back_to_aggregate_reading(self, monkeypatch: pytest.MonkeyPatch) -> None:
        _patch_psutil(monkeypatch, per_cpu=[], aggregate=_freq(2400.0), cores=8)

        resources = ResourceProbe().probe_local()

        assert resources.maximum_capacity == pytest.approx(2400.0)
        assert resources.computational_capacity == pytest.approx(19200.0)

    def test_zero_current_clock_uses_max(self, monkeypatch: pytest.MonkeyPatch) -> None:
        _patch_psutil(monkeypatch, per_cpu=[_freq(0.0, 3100.0)], cores=1)

        assert ResourceProbe().probe_local().maximum_capacity == pytest.approx(3100.0)

    def test_memory_is_truncated_megabytes(self, monkeypatch: pytest.MonkeyPatch) -> None:
        _patch_psutil(monkeypatch, per_cpu=[_freq(2000.0)], total_bytes=8_123_456_789)

        assert ResourceProbe().probe_local().total_memory_mb == 8123

    def test_ipc_and_power_are_placeholders(self, monkeypatch: pytest.MonkeyPatch) -> None:
        _patch_psutil(monkeypatch, per_cpu=[_freq(2000.0)])

        resources = ResourceProbe().probe_local()

        assert resources.ipc == IPC_PLACEHOLDER == 1.0
        assert resources.power_consumption == POWER_PLACEHOLDER_W == 400.0


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: failure policy
# ─────────────────────────────────────────────────────────────────────────────

class TestFailures:
    def test_no_frequency_data_is_fatal(self, monkeypatch: pytest.MonkeyPatch) -> None:
        _patch_psutil(monkeypatch, per_cpu=[], aggregate=None)

        with pytest.raises(ResourceProbeError):
            ResourceProbe().probe_local()

    def test_zero_clock_is_fatal(self, monkeypatch: pytest.MonkeyPatch) -> None:
        _patch_psutil(monkeypatch, per_cpu=[_freq(0.0, 0.0)])

        with pytest.raises(ResourceProbeError):
            ResourceProbe().probe_local()

    def test_unknown_core_count_is_fatal(self, monkeypatch: pytest.MonkeyPatch) -> None:
        _patch_psutil(monkeypatch, per_cpu=[_freq(2000.0)], cores=None)

        with pytest.raises(ResourceProbeError):
            ResourceProbe().probe_local()

    def test_psutil_error_is_wrapped(self, monkeypatch: pytest.MonkeyPatch) -> None:
        _patch_psutil(monkeypatch, per_cpu=[_freq(2000.0)])

        def broken():
            raise OSError("no /proc/meminfo")

        monkeypatch.setattr(probe_module.psutil, "virtual_memory", broken)

        with pytest.raises(ResourceProbeError, match="memory"):
            ResourceProbe().probe_local()


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: advertised address
# ─────────────────────────────────────────────────────────────────────────────

class TestLocalIpAddress:
    def test_override_wins(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(probe_module.psutil, "net_if_addrs", lambda: {})

        assert local_ip_address("10.1.2.3") == "10.1.2.3"

    def test_invalid_override_rejected(self) -> None:
        with pytest.raises(ValueError):
            local_ip_address("not-an-ip")

    def test_first_non_loopback_ipv4(self, monkeypatch: pytest.MonkeyPatch) -> None:
        interfaces = {
            "eth0": [_addr(socket.AF_INET6, "fe80::1"), _addr(socket.AF_INET, "10.0.0.5")],
            "lo": [_addr(socket.AF_INET, "127.0.0.1")],
        }
        monkeypatch.setattr(probe_module.psutil, "net_if_addrs", lambda: interfaces)

        assert local_ip_address() == "10.0.0.5"

    def test_loopback_only_falls_back(self, monkeypatch: pytest.MonkeyPatch) -> None:
        interfaces = {"lo": [_addr(socket.AF_INET, "127.0.0.1")]}
        monkeypatch.setattr(probe_module.psutil, "net_if_addrs", lambda: interfaces)

        assert local_ip_address() == FALLBACK_IP
