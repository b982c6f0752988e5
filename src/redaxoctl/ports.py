"""Port allocation helpers for redaxoctl.

A candidate port is accepted only when it is outside the reserved list, not
listening on the host and not published by any container. Allocation is
side-effect free: nothing is reserved, so the caller must publish the ports
promptly. Two allocations racing between the check and the publish can still
collide; spacing consecutive ports ``spacing`` apart keeps unrelated
allocations from landing on neighbouring ports.
"""
from __future__ import annotations

import logging
import re
import socket
import subprocess
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from .config import DEFAULT_RESERVED_PORTS, PortsConfig
from .providers.docker import DockerError, DockerProvider

LOGGER = logging.getLogger(__name__)

MAX_PORT = 65535

_LOCAL_PORT_RE = re.compile(r"[.:](\d+)$")

HostScan = Callable[[int, int], set[int]]
ContainerScan = Callable[[], set[int]]
BindProbe = Callable[[int], bool]


class PortsError(RuntimeError):
    """Raised when port allocation fails."""


class ExhaustedError(PortsError):
    """Raised when no free port is found within the attempt budget."""


def parse_listening_output(output: str, *, netstat: bool = False) -> set[int]:
    """Extract local listening ports from ``ss -ltnH`` or ``netstat -an`` output."""
    ports: set[int] = set()
    for line in output.splitlines():
        fields = line.split()
        if netstat:
            if "LISTEN" not in fields or len(fields) < 4:
                continue
            local = fields[3]
        else:
            if len(fields) < 4:
                continue
            local = fields[3]
        match = _LOCAL_PORT_RE.search(local)
        if match:
            ports.add(int(match.group(1)))
    return ports


def scan_listening_ports(low: int, high: int) -> set[int]:
    """Return host TCP ports in ``[low, high]`` with a listening socket."""
    commands: list[tuple[list[str], bool]] = [
        (["ss", "-ltnH"], False),
        (["netstat", "-an"], True),
    ]
    for args, is_netstat in commands:
        try:
            result = subprocess.run(  # noqa: S603, S607
                args,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError:
            continue
        if result.returncode != 0:
            continue
        ports = parse_listening_output(result.stdout or "", netstat=is_netstat)
        return {port for port in ports if low <= port <= high}
    LOGGER.debug("no listening-socket scanner available; relying on bind probes")
    return set()


def probe_bind(port: int) -> bool:
    """Return ``True`` when *port* can be bound on all interfaces right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind(("0.0.0.0", port))  # noqa: S104 - mirrors the published bind address
        except OSError:
            return False
    return True


def container_port_scanner(docker: DockerProvider) -> ContainerScan:
    """Return a scanner for host ports published by running containers."""

    def _scan() -> set[int]:
        try:
            return docker.published_ports()
        except DockerError as exc:
            LOGGER.warning("Unable to list published container ports: %s", exc)
            return set()

    return _scan


@dataclass(slots=True)
class PortAllocator:
    """Find free TCP ports aware of host sockets and container publications."""

    host_scan: HostScan
    container_scan: ContainerScan
    bind_probe: BindProbe | None = probe_bind
    reserved: frozenset[int] = field(default_factory=lambda: frozenset(DEFAULT_RESERVED_PORTS))
    spacing: int = 10
    max_attempts: int = 100

    def __post_init__(self) -> None:
        """Validate initialiser parameters."""
        if self.spacing < 1:
            raise PortsError("Port spacing must be at least 1.")
        if self.max_attempts < 1:
            raise PortsError("Maximum probe attempts must be at least 1.")

    @classmethod
    def from_config(cls, config: PortsConfig, docker: DockerProvider) -> PortAllocator:
        """Build an allocator using the host and docker scanners."""
        return cls(
            host_scan=scan_listening_ports,
            container_scan=container_port_scanner(docker),
            bind_probe=probe_bind,
            reserved=frozenset(config.reserved),
            spacing=config.spacing,
            max_attempts=config.max_attempts,
        )

    # ------------------------------------------------------------------
    def allocate(self, start: int, count: int = 1, *, exclude: Iterable[int] = ()) -> list[int]:
        """Return *count* distinct free ports probing upward from *start*."""
        if count < 1:
            raise PortsError("Port count must be at least 1.")
        if not 1 <= start <= MAX_PORT:
            raise PortsError(f"Start port {start} is outside 1-{MAX_PORT}.")

        window_high = min(MAX_PORT, start + (self.max_attempts + self.spacing) * count)
        used = self.host_scan(start, window_high) | self.container_scan()
        used.update(exclude)

        chosen: list[int] = []
        candidate = start
        while len(chosen) < count:
            candidate = self._probe_from(candidate, used, chosen)
            chosen.append(candidate)
            candidate += self.spacing
        LOGGER.debug("allocated ports %s from %s", chosen, start)
        return chosen

    def find_port(self, start: int, *, exclude: Iterable[int] = ()) -> int:
        """Return a single free port at or above *start*."""
        return self.allocate(start, 1, exclude=exclude)[0]

    def is_available(self, port: int) -> bool:
        """Return ``True`` when *port* would be accepted right now."""
        used = self.host_scan(port, port) | self.container_scan()
        return self._accepts(port, used, [])

    def in_use(self, low: int, high: int) -> list[int]:
        """Return ports in ``[low, high]`` held by the host or by containers."""
        used = self.host_scan(low, high) | self.container_scan()
        return sorted(port for port in used if low <= port <= high)

    # Internal helpers -------------------------------------------------
    def _probe_from(self, start: int, used: set[int], chosen: list[int]) -> int:
        candidate = start
        for _ in range(self.max_attempts):
            if candidate > MAX_PORT:
                break
            if self._accepts(candidate, used, chosen):
                return candidate
            candidate += 1
        raise ExhaustedError(
            f"No free port found in {self.max_attempts} attempts starting at {start}."
        )

    def _accepts(self, port: int, used: set[int], chosen: list[int]) -> bool:
        if port in self.reserved or port in used or port in chosen:
            return False
        if self.bind_probe is not None and not self.bind_probe(port):
            return False
        return True


__all__ = [
    "ExhaustedError",
    "PortAllocator",
    "PortsError",
    "container_port_scanner",
    "parse_listening_output",
    "probe_bind",
    "scan_listening_ports",
]
