"""Per-instance directory persistence.

Every instance owns ``<instances_dir>/<name>/``. The directory is the single
source of truth: the orchestration descriptor, the ``.env`` key-value file,
the bootstrap script and the data directories all live there, and in-memory
instance objects are rebuilt from it on demand.
"""
from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from ..templates import write_atomic

LOGGER = logging.getLogger(__name__)

DESCRIPTOR_NAME = "docker-compose.yml"
ENV_NAME = ".env"
SCRIPT_NAME = "custom-setup.sh"
SSL_CONF_NAME = "apache-ssl.conf"
DOCKERFILE_NAME = "Dockerfile"
SSL_DIR_NAME = "ssl"
DB_INIT_DIR_NAME = "mysql-init"


class InstanceStoreError(RuntimeError):
    """Raised when instance files cannot be read or written."""


def parse_env(text: str) -> dict[str, str]:
    """Parse ``KEY=VALUE`` lines, skipping blanks and comments."""
    values: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        values[key] = value
    return values


@dataclass(frozen=True)
class InstanceStore:
    """Filesystem access to the per-instance directories."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def ensure_root(self) -> None:
        """Create the instances directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the directory of instance *name*."""
        return self.root / name

    def file_for(self, name: str, filename: str) -> Path:
        """Return the path of *filename* inside the instance directory."""
        return self.path_for(name) / filename

    def exists(self, name: str) -> bool:
        """Return ``True`` when the instance directory exists."""
        return self.path_for(name).is_dir()

    def has_descriptor(self, name: str) -> bool:
        """Return ``True`` when the orchestration descriptor is present."""
        return self.file_for(name, DESCRIPTOR_NAME).is_file()

    def list_names(self) -> list[str]:
        """Return instance names (directories) sorted alphabetically."""
        if not self.root.is_dir():
            return []
        return sorted(
            child.name
            for child in self.root.iterdir()
            if child.is_dir() and not child.name.startswith(".")
        )

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------
    def read_text(self, name: str, filename: str) -> str | None:
        """Return the content of an instance file, or ``None`` when missing."""
        path = self.file_for(name, filename)
        if not path.is_file():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            raise InstanceStoreError(f"Failed to read {path}: {exc}") from exc

    def read_env(self, name: str) -> dict[str, str]:
        """Return the parsed ``.env`` of *name* (empty when missing)."""
        text = self.read_text(name, ENV_NAME)
        return parse_env(text) if text is not None else {}

    def read_descriptor(self, name: str) -> str | None:
        """Return the orchestration descriptor text, if present."""
        return self.read_text(name, DESCRIPTOR_NAME)

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------
    def create_directory(self, name: str, subdirs: tuple[str, ...] = ()) -> Path:
        """Create the instance directory (which must not exist) and *subdirs*."""
        path = self.path_for(name)
        self.ensure_root()
        try:
            path.mkdir()
        except FileExistsError as exc:
            raise InstanceStoreError(f"Instance directory {path} already exists.") from exc
        for subdir in subdirs:
            (path / subdir).mkdir(parents=True, exist_ok=True)
        return path

    def write_text(
        self,
        name: str,
        filename: str,
        content: str,
        *,
        mode: int | None = None,
    ) -> bool:
        """Atomically write an instance file; return ``True`` when it changed."""
        path = self.file_for(name, filename)
        if path.is_dir():
            raise InstanceStoreError(f"{path} is a directory; run repair to fix it.")
        if path.is_file() and path.read_text(encoding="utf-8") == content:
            return False
        try:
            write_atomic(path, content, mode=mode)
        except OSError as exc:
            raise InstanceStoreError(f"Failed to write {path}: {exc}") from exc
        return True

    def replace_misplaced_directories(self, name: str, filenames: tuple[str, ...]) -> list[str]:
        """Remove directories sitting where regular files are expected."""
        removed: list[str] = []
        for filename in filenames:
            path = self.file_for(name, filename)
            if path.is_dir():
                shutil.rmtree(path)
                removed.append(filename)
                LOGGER.warning("removed directory %s where a file was expected", path)
        return removed

    def remove(self, name: str) -> bool:
        """Recursively delete the instance directory; ``False`` when absent."""
        path = self.path_for(name)
        if not path.exists():
            return False
        try:
            shutil.rmtree(path)
        except OSError as exc:
            raise InstanceStoreError(f"Failed to remove {path}: {exc}") from exc
        return True


__all__ = [
    "DB_INIT_DIR_NAME",
    "DESCRIPTOR_NAME",
    "DOCKERFILE_NAME",
    "ENV_NAME",
    "InstanceStore",
    "InstanceStoreError",
    "SCRIPT_NAME",
    "SSL_CONF_NAME",
    "SSL_DIR_NAME",
    "parse_env",
]
