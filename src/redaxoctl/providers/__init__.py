"""Provider interfaces for redaxoctl."""
from __future__ import annotations

from .docker import DockerError, DockerProvider, parse_published_ports
from .mkcert import MkcertError, MkcertProvider

__all__ = [
    "DockerError",
    "DockerProvider",
    "MkcertError",
    "MkcertProvider",
    "parse_published_ports",
]
