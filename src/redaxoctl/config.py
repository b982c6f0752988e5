"""Configuration loader for redaxoctl.

This module centralises the logic for reading configuration values from
multiple sources, later sources winning:

1. Built-in defaults.
2. ``~/.config/redaxoctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``REDAXOCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export REDAXOCTL_PORTS__HTTP_START=9000
    export REDAXOCTL_TLS__ENABLED=false

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load redaxoctl configuration. Install with "
        "`pip install redaxoctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "REDAXOCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

DEFAULT_RESERVED_PORTS: tuple[int, ...] = (
    22, 25, 53, 80, 110, 143, 443, 993, 995,
    3000, 3001, 4000, 5000, 5173, 8000, 8001,
    3306, 5432, 27017, 6379, 9000, 9001, 9002,
)


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PortsConfig:
    """Port allocation defaults."""

    http_start: int = 8080
    db_start: int = 3306
    count: int = 2
    spacing: int = 10
    max_attempts: int = 100
    scan_min: int = 8000
    scan_max: int = 9999
    reserved: tuple[int, ...] = DEFAULT_RESERVED_PORTS

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "http_start": self.http_start,
            "db_start": self.db_start,
            "count": self.count,
            "spacing": self.spacing,
            "max_attempts": self.max_attempts,
            "scan_min": self.scan_min,
            "scan_max": self.scan_max,
            "reserved": list(self.reserved),
        }


@dataclass(frozen=True)
class DockerConfig:
    """Container engine integration values."""

    bin: str = "docker"
    network: str = "redaxo-network"
    exec_timeout: float = 30.0
    install_timeout: float = 60.0
    web_image: str = "friendsofredaxo/redaxo"
    image_variant: str = "stable"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "bin": self.bin,
            "network": self.network,
            "exec_timeout": self.exec_timeout,
            "install_timeout": self.install_timeout,
            "web_image": self.web_image,
            "image_variant": self.image_variant,
        }


@dataclass(frozen=True)
class TLSConfig:
    """Certificate and host name-resolution settings."""

    enabled: bool = True
    mkcert_bin: str = "mkcert"
    hosts_file: Path = Path("/etc/hosts")
    hosts_writer: tuple[str, ...] = ("sudo", "tee")
    warn_expiry_days: int = 30

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "enabled": self.enabled,
            "mkcert_bin": self.mkcert_bin,
            "hosts_file": str(self.hosts_file),
            "hosts_writer": list(self.hosts_writer),
            "warn_expiry_days": self.warn_expiry_days,
        }


@dataclass(frozen=True)
class InstanceDefaults:
    """Defaults applied to ``instance create`` when flags are omitted."""

    php_version: str = "8.2"
    mariadb_version: str = "11.4"
    release_type: str = "standard"
    auto_install: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "php_version": self.php_version,
            "mariadb_version": self.mariadb_version,
            "release_type": self.release_type,
            "auto_install": self.auto_install,
        }


@dataclass(frozen=True)
class FilesConfig:
    """Remote file operation settings."""

    root: str = "/var/www/html"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"root": self.root}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for redaxoctl."""

    config_file: Path
    instances_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    ports: PortsConfig
    docker: DockerConfig
    tls: TLSConfig
    defaults: InstanceDefaults
    files: FilesConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "instances_dir": str(self.instances_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "ports": self.ports.to_dict(),
            "docker": self.docker.to_dict(),
            "tls": self.tls.to_dict(),
            "defaults": self.defaults.to_dict(),
            "files": self.files.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/redaxoctl/config.yml",
    "instances_dir": "~/redaxo-instances",
    "logs_dir": "~/.local/state/redaxoctl/logs",
    "runtime_dir": "~/.local/state/redaxoctl/run",
    "templates_dir": "~/.config/redaxoctl/templates",
    "lock_timeout": 30.0,
    "ports": {
        "http_start": 8080,
        "db_start": 3306,
        "count": 2,
        "spacing": 10,
        "max_attempts": 100,
        "scan_min": 8000,
        "scan_max": 9999,
        "reserved": list(DEFAULT_RESERVED_PORTS),
    },
    "docker": {
        "bin": "docker",
        "network": "redaxo-network",
        "exec_timeout": 30.0,
        "install_timeout": 60.0,
        "web_image": "friendsofredaxo/redaxo",
        "image_variant": "stable",
    },
    "tls": {
        "enabled": True,
        "mkcert_bin": "mkcert",
        "hosts_file": "/etc/hosts",
        "hosts_writer": ["sudo", "tee"],
        "warn_expiry_days": 30,
    },
    "defaults": {
        "php_version": "8.2",
        "mariadb_version": "11.4",
        "release_type": "standard",
        "auto_install": True,
    },
    "files": {
        "root": "/var/www/html",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    section: set(_value.keys())
    for section, _value in DEFAULTS.items()
    if isinstance(_value, Mapping)
}
ALLOWED_IMAGE_VARIANTS = {"stable", "edge"}
ALLOWED_RELEASE_TYPES = {"standard"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    docker_map = _as_dict(raw.get("docker"), "docker")
    variant = docker_map.get("image_variant")
    if variant is not None and str(variant) not in ALLOWED_IMAGE_VARIANTS:
        allowed = ", ".join(sorted(ALLOWED_IMAGE_VARIANTS))
        raise ConfigError(f"Unsupported docker.image_variant '{variant}'. Allowed: {allowed}.")

    defaults_map = _as_dict(raw.get("defaults"), "defaults")
    release_type = defaults_map.get("release_type")
    if release_type is not None and str(release_type) not in ALLOWED_RELEASE_TYPES:
        allowed = ", ".join(sorted(ALLOWED_RELEASE_TYPES))
        raise ConfigError(
            f"Unsupported defaults.release_type '{release_type}'. Allowed: {allowed}."
        )


def _build_ports_config(mapping: Mapping[str, object]) -> PortsConfig:
    defaults = PortsConfig()
    values: dict[str, int] = {}
    int_keys = (
        "http_start", "db_start", "count", "spacing", "max_attempts", "scan_min", "scan_max",
    )
    for key in int_keys:
        values[key] = _expect_int(mapping.get(key), f"ports.{key}", default=getattr(defaults, key))

    for key in ("http_start", "db_start", "scan_min", "scan_max"):
        _expect_port_number(values[key], f"ports.{key}")
    for key in ("count", "spacing", "max_attempts"):
        if values[key] < 1:
            raise ConfigError(f"ports.{key} must be at least 1. Got {values[key]}.")
    if values["scan_min"] > values["scan_max"]:
        raise ConfigError("ports.scan_min must not exceed ports.scan_max.")

    reserved_raw = mapping.get("reserved")
    reserved: tuple[int, ...]
    if reserved_raw is None:
        reserved = defaults.reserved
    else:
        entries = _as_sequence(reserved_raw, "ports.reserved")
        parsed: list[int] = []
        for index, entry in enumerate(entries):
            port = _expect_int(entry, f"ports.reserved[{index}]", default=0)
            _expect_port_number(port, f"ports.reserved[{index}]")
            parsed.append(port)
        reserved = tuple(parsed)

    return PortsConfig(reserved=reserved, **values)


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    instances_dir = _to_path(raw.get("instances_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    ports = _build_ports_config(_as_dict(raw.get("ports"), "ports"))

    docker_mapping = _as_dict(raw.get("docker"), "docker")
    docker = DockerConfig(
        bin=str(docker_mapping.get("bin", "docker")),
        network=str(docker_mapping.get("network", "redaxo-network")),
        exec_timeout=_expect_positive_float(
            docker_mapping.get("exec_timeout"), "docker.exec_timeout", default=30.0
        ),
        install_timeout=_expect_positive_float(
            docker_mapping.get("install_timeout"), "docker.install_timeout", default=60.0
        ),
        web_image=str(docker_mapping.get("web_image", "friendsofredaxo/redaxo")),
        image_variant=str(docker_mapping.get("image_variant", "stable")),
    )

    tls_mapping = _as_dict(raw.get("tls"), "tls")
    writer_raw = tls_mapping.get("hosts_writer")
    if writer_raw is None:
        hosts_writer: tuple[str, ...] = TLSConfig().hosts_writer
    else:
        hosts_writer = tuple(str(item) for item in _as_sequence(writer_raw, "tls.hosts_writer"))
    warn_expiry_days = _expect_int(
        tls_mapping.get("warn_expiry_days"), "tls.warn_expiry_days", default=30
    )
    if warn_expiry_days < 0:
        raise ConfigError("tls.warn_expiry_days must be non-negative.")
    tls = TLSConfig(
        enabled=bool(tls_mapping.get("enabled", True)),
        mkcert_bin=str(tls_mapping.get("mkcert_bin", "mkcert")),
        hosts_file=_to_path(tls_mapping.get("hosts_file", "/etc/hosts")),
        hosts_writer=hosts_writer,
        warn_expiry_days=warn_expiry_days,
    )

    defaults_mapping = _as_dict(raw.get("defaults"), "defaults")
    defaults = InstanceDefaults(
        php_version=_expect_non_empty(
            defaults_mapping.get("php_version", "8.2"), "defaults.php_version"
        ),
        mariadb_version=_expect_non_empty(
            defaults_mapping.get("mariadb_version", "11.4"), "defaults.mariadb_version"
        ),
        release_type=str(defaults_mapping.get("release_type", "standard")),
        auto_install=bool(defaults_mapping.get("auto_install", True)),
    )

    files_mapping = _as_dict(raw.get("files"), "files")
    files_root = str(files_mapping.get("root", "/var/www/html")).rstrip("/") or "/"
    if not files_root.startswith("/"):
        raise ConfigError("files.root must be an absolute path inside the container.")

    return AppConfig(
        config_file=config_file,
        instances_dir=instances_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        ports=ports,
        docker=docker,
        tls=tls,
        defaults=defaults,
        files=FilesConfig(root=files_root),
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_port_number(value: int, label: str) -> None:
    if not 1 <= value <= 65535:
        raise ConfigError(f"{label} must be between 1 and 65535. Got {value}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_non_empty(value: object, label: str) -> str:
    text = "" if value is None else str(value).strip()
    if not text:
        raise ConfigError(f"{label} must be a non-empty string.")
    return text


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "DEFAULT_RESERVED_PORTS",
    "DockerConfig",
    "FilesConfig",
    "InstanceDefaults",
    "PortsConfig",
    "TLSConfig",
    "load_config",
]
