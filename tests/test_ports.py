"""Tests for the port allocator."""
from __future__ import annotations

import subprocess

import pytest

from redaxoctl.config import PortsConfig
from redaxoctl.ports import (
    ExhaustedError,
    PortAllocator,
    PortsError,
    container_port_scanner,
    parse_listening_output,
    scan_listening_ports,
)
from redaxoctl.providers.docker import DockerError
from tests.fakes import FakeEngine


def _allocator(
    host: set[int] | None = None,
    containers: set[int] | None = None,
    *,
    reserved: frozenset[int] = frozenset(),
    max_attempts: int = 100,
) -> PortAllocator:
    host_ports = host or set()
    container_ports = containers or set()
    return PortAllocator(
        host_scan=lambda low, high: {port for port in host_ports if low <= port <= high},
        container_scan=lambda: set(container_ports),
        bind_probe=None,
        reserved=reserved,
        max_attempts=max_attempts,
    )


def test_allocate_returns_first_free_port() -> None:
    """The first acceptable port at or above the start is returned."""
    allocator = _allocator(host={8080}, containers={8081}, reserved=frozenset({8082}))

    assert allocator.find_port(8080) == 8083


def test_allocate_many_is_distinct_and_spaced() -> None:
    """Multiple ports are pairwise distinct, free and spaced apart."""
    used = {8090, 8100, 8101}
    allocator = _allocator(host=used, reserved=frozenset({8080}))

    ports = allocator.allocate(8080, 3)

    assert len(set(ports)) == 3
    assert not set(ports) & used
    assert 8080 not in ports
    assert ports == [8081, 8091, 8102]


def test_exclude_skips_claimed_ports() -> None:
    """Explicitly excluded ports are treated as in use."""
    allocator = _allocator()

    assert allocator.allocate(8080, 2, exclude={8080, 8090}) == [8081, 8091]


def test_exhausted_after_attempt_budget() -> None:
    """Allocation fails once the attempt budget is spent."""
    allocator = _allocator(host=set(range(8080, 8090)), max_attempts=5)

    with pytest.raises(ExhaustedError, match="5 attempts"):
        allocator.find_port(8080)


def test_bind_probe_rejects_candidates() -> None:
    """A failing bind probe disqualifies a port the scanners missed."""
    allocator = PortAllocator(
        host_scan=lambda low, high: set(),
        container_scan=set,
        bind_probe=lambda port: port != 8080,
        reserved=frozenset(),
    )

    assert allocator.find_port(8080) == 8081
    assert allocator.is_available(8080) is False
    assert allocator.is_available(8081) is True


def test_invalid_arguments_raise() -> None:
    """Out-of-range starts, empty counts and bad settings are rejected."""
    allocator = _allocator()

    with pytest.raises(PortsError):
        allocator.allocate(0)
    with pytest.raises(PortsError):
        allocator.allocate(8080, 0)
    with pytest.raises(PortsError):
        PortAllocator(host_scan=lambda low, high: set(), container_scan=set, spacing=0)


def test_in_use_merges_host_and_container_ports() -> None:
    """in_use reports host and container ports inside the window only."""
    allocator = _allocator(host={8000, 8500, 12000}, containers={8600, 80})

    assert allocator.in_use(8000, 9999) == [8000, 8500, 8600]


def test_parse_listening_output_for_ss_and_netstat() -> None:
    """Local ports are extracted from both scanner formats."""
    ss_output = (
        "LISTEN 0 4096 0.0.0.0:8080 0.0.0.0:*\n"
        "LISTEN 0 4096 [::]:3306 [::]:*\n"
        "LISTEN 0 128 127.0.0.53%lo:53 0.0.0.0:*\n"
    )
    netstat_output = (
        "Proto Recv-Q Send-Q Local Address Foreign Address (state)\n"
        "tcp4 0 0 *.8081 *.* LISTEN\n"
        "tcp4 0 0 192.168.1.2.50000 1.1.1.1.443 ESTABLISHED\n"
    )

    assert parse_listening_output(ss_output) == {8080, 3306, 53}
    assert parse_listening_output(netstat_output, netstat=True) == {8081}


def test_scan_listening_ports_falls_back_to_netstat(monkeypatch: pytest.MonkeyPatch) -> None:
    """When ss is missing the netstat output is used and filtered by range."""

    def fake_run(args: list[str], **_: object) -> subprocess.CompletedProcess[str]:
        if args[0] == "ss":
            raise FileNotFoundError("ss")
        return subprocess.CompletedProcess(
            args, 0, stdout="tcp 0 0 0.0.0.0:8081 0.0.0.0:* LISTEN\n"
            "tcp 0 0 0.0.0.0:22 0.0.0.0:* LISTEN\n", stderr=""
        )

    monkeypatch.setattr("redaxoctl.ports.subprocess.run", fake_run)

    assert scan_listening_ports(8000, 9000) == {8081}


def test_container_scanner_tolerates_engine_errors(engine: FakeEngine) -> None:
    """Engine failures degrade to an empty container port set."""
    engine.published = {8080}
    assert container_port_scanner(engine)() == {8080}  # type: ignore[arg-type]

    def broken() -> set[int]:
        raise DockerError("docker ps failed")

    engine.published_ports = broken  # type: ignore[method-assign]
    assert container_port_scanner(engine)() == set()  # type: ignore[arg-type]


def test_from_config_uses_module_scanners(
    monkeypatch: pytest.MonkeyPatch,
    engine: FakeEngine,
) -> None:
    """Allocators built from config honour the configured spacing and reserved list."""
    monkeypatch.setattr("redaxoctl.ports.scan_listening_ports", lambda low, high: {8200})
    monkeypatch.setattr("redaxoctl.ports.probe_bind", lambda port: True)
    config = PortsConfig(http_start=8200, spacing=5, reserved=(8201,))

    allocator = PortAllocator.from_config(config, engine)  # type: ignore[arg-type]

    assert allocator.allocate(8200, 2) == [8202, 8207]
