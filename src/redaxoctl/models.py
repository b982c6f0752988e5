"""Data models shared by the orchestration engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class InstanceKind(str, Enum):
    """Supported instance topologies."""

    STANDARD = "standard"
    CUSTOM = "custom"


class InstanceState(str, Enum):
    """Lifecycle state derived from disk and the container engine."""

    ABSENT = "absent"
    CREATING = "creating"
    STOPPED = "stopped"
    RUNNING = "running"
    ERROR = "error"


@dataclass(frozen=True)
class PortSet:
    """Host-side published ports of an instance."""

    http: int
    db: int
    https: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"http": self.http, "https": self.https, "db": self.db}


@dataclass(frozen=True)
class Credentials:
    """Database credentials generated at creation time."""

    db_name: str
    db_user: str
    db_password: str
    db_root_password: str

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "db_name": self.db_name,
            "db_user": self.db_user,
            "db_password": self.db_password,
            "db_root_password": self.db_root_password,
        }


@dataclass(frozen=True)
class InstanceSpec:
    """Caller-supplied parameters for creating an instance."""

    name: str
    kind: InstanceKind = InstanceKind.STANDARD
    php_version: str = "8.2"
    mariadb_version: str = "11.4"
    tls_enabled: bool = False
    image_variant: str = "stable"
    release_type: str = "standard"
    auto_install: bool = True
    http_port: int | None = None

    @property
    def domain(self) -> str:
        """Local domain served by the instance."""
        return f"{self.name}.local"


@dataclass(slots=True)
class Instance:
    """In-memory projection of a per-instance directory."""

    name: str
    path: Path
    kind: InstanceKind
    php_version: str
    mariadb_version: str
    ports: PortSet
    credentials: Credentials
    tls_enabled: bool = False
    release_type: str | None = None
    status: InstanceState = InstanceState.STOPPED
    env: dict[str, str] = field(default_factory=dict)

    @property
    def domain(self) -> str:
        """Local domain served by the instance."""
        return f"{self.name}.local"

    @property
    def base_url(self) -> str:
        """Primary frontend URL."""
        if self.tls_enabled and self.ports.https:
            return f"https://{self.domain}:{self.ports.https}"
        return f"http://localhost:{self.ports.http}"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (credentials omitted)."""
        return {
            "name": self.name,
            "path": str(self.path),
            "kind": self.kind.value,
            "status": self.status.value,
            "php_version": self.php_version,
            "mariadb_version": self.mariadb_version,
            "release_type": self.release_type,
            "tls_enabled": self.tls_enabled,
            "ports": self.ports.to_dict(),
            "domain": self.domain,
            "base_url": self.base_url,
        }


@dataclass(frozen=True)
class ContainerTopology:
    """Concrete container identities and layout of an instance."""

    instance: str
    kind: InstanceKind
    web_container: str
    db_container: str
    base_path: str
    base_path_confirmed: bool

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "instance": self.instance,
            "kind": self.kind.value,
            "web_container": self.web_container,
            "db_container": self.db_container,
            "base_path": self.base_path,
            "base_path_confirmed": self.base_path_confirmed,
        }


# ----------------------------------------------------------------------
# Remote result envelopes
# ----------------------------------------------------------------------


def _check_envelope(success: bool, error: str | None) -> None:
    if success and error is not None:
        raise ValueError("Successful results must not carry an error.")
    if not success and not (error and error.strip()):
        raise ValueError("Failed results must carry a non-empty error.")


@dataclass(frozen=True)
class RemoteCommandResult:
    """Outcome of a command executed inside a container."""

    success: bool
    output: str = ""
    error: str | None = None
    exit_code: int | None = None

    def __post_init__(self) -> None:
        """Enforce the success/error invariant."""
        _check_envelope(self.success, self.error)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "exit_code": self.exit_code,
        }


@dataclass(frozen=True)
class RemoteQueryResult:
    """Outcome of a SQL statement executed inside a database container."""

    success: bool
    rows: list[dict[str, str | None]] = field(default_factory=list)
    columns: list[str] = field(default_factory=list)
    error: str | None = None
    exit_code: int | None = None

    def __post_init__(self) -> None:
        """Enforce the success/error invariant."""
        _check_envelope(self.success, self.error)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "success": self.success,
            "columns": list(self.columns),
            "rows": [dict(row) for row in self.rows],
            "error": self.error,
            "exit_code": self.exit_code,
        }


@dataclass(frozen=True)
class RemoteFileResult:
    """Outcome of a file operation inside a container."""

    success: bool
    path: str
    content: str = ""
    error: str | None = None
    exit_code: int | None = None

    def __post_init__(self) -> None:
        """Enforce the success/error invariant."""
        _check_envelope(self.success, self.error)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "success": self.success,
            "path": self.path,
            "content": self.content,
            "error": self.error,
            "exit_code": self.exit_code,
        }


@dataclass(frozen=True)
class LoginInfo:
    """Connection details presented to the user for a single instance."""

    name: str
    kind: InstanceKind
    running: bool
    frontend_url: str
    backend_url: str
    frontend_url_https: str | None
    backend_url_https: str | None
    admin_user: str | None
    admin_password: str | None
    db_host: str
    db_name: str
    db_user: str
    db_password: str
    db_external_host: str
    db_external_port: int
    php_version: str
    mariadb_version: str
    release_type: str

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "kind": self.kind.value,
            "running": self.running,
            "frontend_url": self.frontend_url,
            "backend_url": self.backend_url,
            "frontend_url_https": self.frontend_url_https,
            "backend_url_https": self.backend_url_https,
            "admin_user": self.admin_user,
            "admin_password": self.admin_password,
            "db_host": self.db_host,
            "db_name": self.db_name,
            "db_user": self.db_user,
            "db_password": self.db_password,
            "db_external_host": self.db_external_host,
            "db_external_port": self.db_external_port,
            "php_version": self.php_version,
            "mariadb_version": self.mariadb_version,
            "release_type": self.release_type,
        }


__all__ = [
    "ContainerTopology",
    "Credentials",
    "Instance",
    "InstanceKind",
    "InstanceSpec",
    "InstanceState",
    "LoginInfo",
    "PortSet",
    "RemoteCommandResult",
    "RemoteFileResult",
    "RemoteQueryResult",
]
