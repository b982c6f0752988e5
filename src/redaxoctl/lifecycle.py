"""Instance lifecycle management.

States follow ``absent -> creating -> stopped <-> running`` with ``error``
reachable whenever the container engine cannot be queried. Status is never
cached; it is re-derived from disk and the container engine on every call.

``create`` leaves the instance stopped; every generated file is verified before
the first ``start``.
"""
from __future__ import annotations

import logging
import re
import shutil
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path

import yaml

from .compose import ComposeGenerator, RenderedInstance
from .config import PortsConfig
from .credentials import DB_PASSWORD_LENGTH, ROOT_PASSWORD_LENGTH, generate_password
from .hosts import HostsFile, HostsFileError
from .models import (
    Credentials,
    Instance,
    InstanceKind,
    InstanceSpec,
    InstanceState,
    LoginInfo,
    PortSet,
)
from .ports import PortAllocator
from .providers.docker import DockerError, DockerProvider
from .state.store import (
    DB_INIT_DIR_NAME,
    DESCRIPTOR_NAME,
    DOCKERFILE_NAME,
    ENV_NAME,
    SCRIPT_NAME,
    SSL_CONF_NAME,
    SSL_DIR_NAME,
    InstanceStore,
)
from .tls import CertificateProvisioner
from .topology import TopologyResolver, classify_kind, container_names

LOGGER = logging.getLogger(__name__)

NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]*$")
MAX_NAME_LENGTH = 63

STANDARD_DIRS: tuple[str, ...] = ("data/redaxo", "data/mysql", DB_INIT_DIR_NAME, SSL_DIR_NAME)
CUSTOM_DIRS: tuple[str, ...] = ("project/public", "logs", "database", SSL_DIR_NAME)
REPAIRABLE_FILES: tuple[str, ...] = (SCRIPT_NAME, SSL_CONF_NAME, ENV_NAME)
DUMP_SUFFIXES: tuple[str, ...] = (".sql", ".sql.gz", ".sql.bz2", ".sql.xz")

DEFAULT_HTTP_PORT = 8080
DEFAULT_DB_PORT = 3306

ProgressCallback = Callable[[str], None]


class LifecycleError(RuntimeError):
    """Raised when a lifecycle transition cannot be performed."""


class InstanceExistsError(LifecycleError):
    """Raised when creating an instance whose name is taken."""


class InstanceNotFoundError(LifecycleError):
    """Raised when an operation targets a missing instance."""


@dataclass(slots=True)
class RepairReport:
    """Outcome of :meth:`LifecycleManager.repair`."""

    name: str
    removed: list[str] = field(default_factory=list)
    rewritten: list[str] = field(default_factory=list)
    recovered_from_descriptor: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "removed": list(self.removed),
            "rewritten": list(self.rewritten),
            "recovered_from_descriptor": self.recovered_from_descriptor,
        }


def validate_name(name: str) -> None:
    """Raise :class:`LifecycleError` unless *name* is a valid instance name."""
    if not NAME_PATTERN.match(name or ""):
        raise LifecycleError(
            f"Invalid instance name '{name}': use lowercase letters, digits and '-', "
            "starting with a letter or digit."
        )
    if len(name) > MAX_NAME_LENGTH:
        raise LifecycleError(f"Instance name '{name}' exceeds {MAX_NAME_LENGTH} characters.")


def validate_version(label: str, value: str) -> None:
    """Raise :class:`LifecycleError` when *value* is blank.

    Versions are image tags (``8.2``, ``lts``, ``10.11-jammy``) and stay opaque.
    """
    if not (value or "").strip():
        raise LifecycleError(f"{label} version must not be empty.")


def _env_int(env: Mapping[str, str], key: str, default: int | None) -> int | None:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        LOGGER.warning("ignoring non-numeric %s=%r", key, raw)
        return default


class LifecycleManager:
    """Create, start, stop, repair and delete instances."""

    def __init__(
        self,
        store: InstanceStore,
        allocator: PortAllocator,
        provisioner: CertificateProvisioner,
        hosts: HostsFile,
        generator: ComposeGenerator,
        docker: DockerProvider,
        resolver: TopologyResolver,
        *,
        ports: PortsConfig | None = None,
    ) -> None:
        self.store = store
        self.allocator = allocator
        self.provisioner = provisioner
        self.hosts = hosts
        self.generator = generator
        self.docker = docker
        self.resolver = resolver
        self.ports = ports or PortsConfig()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def status(self, name: str) -> InstanceState:
        """Return the current state of *name*, asking the container engine."""
        if not self.store.exists(name):
            return InstanceState.ABSENT
        if not self.store.has_descriptor(name):
            return InstanceState.STOPPED
        try:
            services = self.docker.running_services(self.store.path_for(name))
        except DockerError as exc:
            LOGGER.warning("Unable to query status of %s: %s", name, exc)
            return InstanceState.ERROR
        return InstanceState.RUNNING if services else InstanceState.STOPPED

    def get(self, name: str) -> Instance | None:
        """Return the instance rebuilt from its directory, or ``None``."""
        if not self.store.exists(name):
            return None
        return self._instance_from_env(name, self.store.read_env(name), self.status(name))

    def list(self) -> list[Instance]:
        """Return every instance sorted by name."""
        instances: list[Instance] = []
        for name in self.store.list_names():
            instance = self.get(name)
            if instance is not None:
                instances.append(instance)
        return instances

    def claimed_ports(self, *, skip: str | None = None) -> set[int]:
        """Return ports recorded in the env files of existing instances."""
        claimed: set[int] = set()
        for name in self.store.list_names():
            if name == skip:
                continue
            env = self.store.read_env(name)
            for key in ("HTTP_PORT", "HTTPS_PORT", "MYSQL_PORT"):
                port = _env_int(env, key, None)
                if port is not None:
                    claimed.add(port)
        return claimed

    def login_info(self, name: str) -> LoginInfo:
        """Return URLs and credentials for *name*."""
        instance = self._require(name)
        env = instance.env
        http_url = f"http://localhost:{instance.ports.http}"
        https_url = None
        if instance.tls_enabled and instance.ports.https:
            https_url = f"https://{instance.domain}:{instance.ports.https}"
        running = instance.status is InstanceState.RUNNING

        if instance.kind is InstanceKind.CUSTOM:
            _, db_container = container_names(name, instance.kind)
            return LoginInfo(
                name=name,
                kind=instance.kind,
                running=running,
                frontend_url=http_url,
                backend_url=http_url,
                frontend_url_https=https_url,
                backend_url_https=https_url,
                admin_user=None,
                admin_password=None,
                db_host=db_container,
                db_name=instance.credentials.db_name,
                db_user=instance.credentials.db_user,
                db_password=instance.credentials.db_password,
                db_external_host="localhost",
                db_external_port=instance.ports.db,
                php_version=instance.php_version,
                mariadb_version=instance.mariadb_version,
                release_type=instance.release_type or "custom",
            )

        return LoginInfo(
            name=name,
            kind=instance.kind,
            running=running,
            frontend_url=http_url,
            backend_url=f"{http_url}/redaxo",
            frontend_url_https=https_url,
            backend_url_https=f"{https_url}/redaxo" if https_url else None,
            admin_user="admin",
            admin_password=instance.credentials.db_password,
            db_host=env.get("DB_HOST", "mysql"),
            db_name=instance.credentials.db_name,
            db_user=instance.credentials.db_user,
            db_password=instance.credentials.db_password,
            db_external_host="localhost",
            db_external_port=instance.ports.db,
            php_version=instance.php_version,
            mariadb_version=instance.mariadb_version,
            release_type=instance.release_type or "standard",
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def create(
        self,
        spec: InstanceSpec,
        *,
        pull: bool = True,
        progress: ProgressCallback | None = None,
    ) -> Instance:
        """Create *spec* on disk and leave it stopped."""
        notify = progress or (lambda _message: None)
        validate_name(spec.name)
        validate_version("PHP", spec.php_version)
        validate_version("MariaDB", spec.mariadb_version)
        if self.store.exists(spec.name):
            raise InstanceExistsError(f"Instance '{spec.name}' already exists.")

        notify(InstanceState.CREATING.value)
        tls = spec.tls_enabled and self.provisioner.available()
        if spec.tls_enabled and not tls:
            LOGGER.warning("mkcert not installed; creating %s without TLS", spec.name)
        spec = replace(spec, tls_enabled=tls)

        notify("allocating ports")
        ports = self.allocate_ports(spec.http_port, tls=tls)
        credentials = self.generate_credentials(spec)

        subdirs = CUSTOM_DIRS if spec.kind is InstanceKind.CUSTOM else STANDARD_DIRS
        path = self.store.create_directory(spec.name, subdirs)
        hosts_changed = False
        try:
            if tls:
                notify("issuing certificate")
                issued = self.provisioner.issue(spec.name, path / SSL_DIR_NAME)
                if issued is None:
                    spec = replace(spec, tls_enabled=False)
                    ports = PortSet(http=ports.http, db=ports.db)
                else:
                    self.provisioner.ensure_ca_installed()
                    hosts_changed = self.hosts.ensure_entry(spec.domain)

            notify("writing files")
            rendered = self.generator.render(spec, credentials, ports)
            self._write_rendered(spec.name, rendered)
            self._verify_files(spec.name, rendered)

            if pull:
                notify("fetching images")
                if spec.kind is InstanceKind.CUSTOM:
                    self.docker.compose_build(path, no_cache=False)
                else:
                    self.docker.compose_pull(path)
        except Exception:
            LOGGER.error("create %s failed; removing %s", spec.name, path)
            self.store.remove(spec.name)
            if hosts_changed:
                self._remove_hosts_entry(spec.domain)
            raise

        instance = self.get(spec.name)
        if instance is None:
            raise LifecycleError(f"Instance '{spec.name}' vanished during creation.")
        return instance

    def start(self, name: str) -> InstanceState:
        """Start the containers of *name*."""
        self._require_descriptor(name)
        self.docker.compose_up(self.store.path_for(name))
        return self.status(name)

    def stop(self, name: str) -> InstanceState:
        """Stop the containers of *name* without removing them."""
        self._require_descriptor(name)
        self.docker.compose_stop(self.store.path_for(name))
        return self.status(name)

    def restart(self, name: str) -> InstanceState:
        """Stop and start *name*."""
        self.stop(name)
        return self.start(name)

    def delete(self, name: str) -> bool:
        """Remove *name* and its data; ``False`` when it did not exist.

        Stopping the containers and removing the hosts entry are best effort;
        the directory is removed regardless.
        """
        if not self.store.exists(name):
            return False
        env = self.store.read_env(name)
        kind = classify_kind(name, self.store.read_descriptor(name), env)
        path = self.store.path_for(name)
        if self.store.has_descriptor(name):
            try:
                self.docker.compose_down(path, volumes=True)
            except DockerError as exc:
                LOGGER.warning("Failed to stop %s before deletion: %s", name, exc)
        if env.get("SSL_ENABLED") == "true":
            self._remove_hosts_entry(f"{name}.local")
        self.store.remove(name)
        web, _ = container_names(name, kind)
        self.resolver.clear(web)
        return True

    def repair(self, name: str) -> RepairReport:
        """Rewrite generated files and recreate the containers, ending stopped."""
        if not self.store.exists(name):
            raise InstanceNotFoundError(f"Instance '{name}' does not exist.")
        report = RepairReport(name=name)
        report.removed = self.store.replace_misplaced_directories(name, REPAIRABLE_FILES)

        env = self.store.read_env(name)
        if not env:
            env = self._env_from_descriptor(name)
            report.recovered_from_descriptor = bool(env)
        instance = self._instance_from_env(name, env, InstanceState.STOPPED)
        spec = self._spec_for(instance)
        rendered = self.generator.render(spec, instance.credentials, instance.ports)
        report.rewritten = self._write_rendered(name, rendered, force=True)
        self._verify_files(name, rendered)

        path = self.store.path_for(name)
        self.docker.compose_build(path, no_cache=True)
        self.docker.compose_recreate(path, start=False)
        web, _ = container_names(name, instance.kind)
        self.resolver.clear(web)
        return report

    def setup_ssl(self, name: str) -> bool:
        """Enable TLS for an existing instance; ``False`` when mkcert is missing."""
        instance = self._require(name)
        if not self.provisioner.available():
            LOGGER.warning("mkcert not installed; TLS not enabled for %s", name)
            return False
        was_running = instance.status is InstanceState.RUNNING
        issued = self.provisioner.issue(name, self.store.path_for(name) / SSL_DIR_NAME)
        if issued is None:
            return False
        self.provisioner.ensure_ca_installed()
        self.hosts.ensure_entry(instance.domain)

        https = instance.ports.https
        if https is None:
            exclude = self.claimed_ports(skip=name) | {instance.ports.http, instance.ports.db}
            https = self.allocator.find_port(
                instance.ports.http + self.allocator.spacing, exclude=exclude
            )
        ports = replace(instance.ports, https=https)
        spec = replace(self._spec_for(instance), tls_enabled=True)
        rendered = self.generator.render(spec, instance.credentials, ports)
        self._write_rendered(name, rendered)

        if was_running:
            path = self.store.path_for(name)
            self.docker.compose_stop(path)
            self.docker.compose_up(path)
        return True

    def import_dump(self, name: str, dump: Path) -> Path:
        """Copy an SQL dump into the database init directory of *name*."""
        instance = self._require(name)
        if not dump.is_file():
            raise LifecycleError(f"Dump file {dump} does not exist.")
        if not dump.name.endswith(DUMP_SUFFIXES):
            raise LifecycleError(
                f"Unsupported dump {dump.name}; expected one of {', '.join(DUMP_SUFFIXES)}."
            )
        init_dir = instance.path / (
            "database" if instance.kind is InstanceKind.CUSTOM else DB_INIT_DIR_NAME
        )
        init_dir.mkdir(parents=True, exist_ok=True)
        destination = init_dir / dump.name
        shutil.copy2(dump, destination)
        return destination

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def allocate_ports(self, http_start: int | None, *, tls: bool) -> PortSet:
        """Allocate web (and optional HTTPS) ports plus a database port."""
        claimed = self.claimed_ports()
        start = http_start or self.ports.http_start
        web = self.allocator.allocate(start, 2 if tls else 1, exclude=claimed)
        db = self.allocator.find_port(self.ports.db_start, exclude=claimed | set(web))
        return PortSet(http=web[0], db=db, https=web[1] if tls else None)

    def generate_credentials(self, spec: InstanceSpec) -> Credentials:
        """Return fresh credentials; regular and root passwords are independent."""
        if spec.kind is InstanceKind.CUSTOM:
            return Credentials(
                db_name=spec.name,
                db_user=spec.name,
                db_password=spec.name,
                db_root_password=generate_password(ROOT_PASSWORD_LENGTH),
            )
        return Credentials(
            db_name="redaxo",
            db_user="redaxo",
            db_password=generate_password(DB_PASSWORD_LENGTH),
            db_root_password=generate_password(ROOT_PASSWORD_LENGTH),
        )

    def _require(self, name: str) -> Instance:
        instance = self.get(name)
        if instance is None:
            raise InstanceNotFoundError(f"Instance '{name}' does not exist.")
        return instance

    def _require_descriptor(self, name: str) -> None:
        if not self.store.exists(name):
            raise InstanceNotFoundError(f"Instance '{name}' does not exist.")
        if not self.store.has_descriptor(name):
            raise LifecycleError(
                f"Instance '{name}' has no {DESCRIPTOR_NAME}; run 'instance repair {name}'."
            )

    def _write_rendered(
        self,
        name: str,
        rendered: RenderedInstance,
        *,
        force: bool = False,
    ) -> list[str]:
        files: list[tuple[str, str, int | None]] = [
            (DESCRIPTOR_NAME, rendered.descriptor, None),
            (ENV_NAME, rendered.env_file, 0o600),
            (SCRIPT_NAME, rendered.bootstrap_script, 0o755),
        ]
        if rendered.ssl_vhost is not None:
            files.append((SSL_CONF_NAME, rendered.ssl_vhost, None))
        if rendered.dockerfile is not None:
            files.append((DOCKERFILE_NAME, rendered.dockerfile, None))

        written: list[str] = []
        for filename, content, mode in files:
            changed = self.store.write_text(name, filename, content, mode=mode)
            if changed or force:
                written.append(filename)
        return written

    def _verify_files(self, name: str, rendered: RenderedInstance) -> None:
        expected = [DESCRIPTOR_NAME, ENV_NAME, SCRIPT_NAME]
        if rendered.ssl_vhost is not None:
            expected.append(SSL_CONF_NAME)
        if rendered.dockerfile is not None:
            expected.append(DOCKERFILE_NAME)
        missing = [item for item in expected if not self.store.file_for(name, item).is_file()]
        if missing:
            raise LifecycleError(
                f"Instance '{name}' is missing generated files: {', '.join(missing)}"
            )

    def _remove_hosts_entry(self, domain: str) -> None:
        try:
            self.hosts.remove_entry(domain)
        except HostsFileError as exc:
            LOGGER.warning("Failed to remove hosts entry for %s: %s", domain, exc)

    def _instance_from_env(
        self,
        name: str,
        env: Mapping[str, str],
        status: InstanceState,
    ) -> Instance:
        kind = classify_kind(name, self.store.read_descriptor(name), env)
        tls = env.get("SSL_ENABLED", "false").lower() == "true"
        ports = PortSet(
            http=_env_int(env, "HTTP_PORT", DEFAULT_HTTP_PORT) or DEFAULT_HTTP_PORT,
            db=_env_int(env, "MYSQL_PORT", DEFAULT_DB_PORT) or DEFAULT_DB_PORT,
            https=_env_int(env, "HTTPS_PORT", None) if tls else None,
        )
        default_db = name if kind is InstanceKind.CUSTOM else "redaxo"
        credentials = Credentials(
            db_name=env.get("DB_NAME", default_db),
            db_user=env.get("DB_USER", default_db),
            db_password=env.get("DB_PASSWORD", name if kind is InstanceKind.CUSTOM else ""),
            db_root_password=env.get("DB_ROOT_PASSWORD", ""),
        )
        return Instance(
            name=name,
            path=self.store.path_for(name),
            kind=kind,
            php_version=env.get("PHP_VERSION", "8.2"),
            mariadb_version=env.get("MARIADB_VERSION", "11.4"),
            ports=ports,
            credentials=credentials,
            tls_enabled=tls and ports.https is not None,
            release_type=env.get("RELEASE_TYPE") or None,
            status=status,
            env=dict(env),
        )

    def _spec_for(self, instance: Instance) -> InstanceSpec:
        env = instance.env
        return InstanceSpec(
            name=instance.name,
            kind=instance.kind,
            php_version=instance.php_version,
            mariadb_version=instance.mariadb_version,
            tls_enabled=instance.tls_enabled,
            image_variant=env.get("IMAGE_VARIANT", "stable"),
            release_type=instance.release_type or "standard",
            auto_install=env.get("AUTO_INSTALL", "true").lower() != "false",
            http_port=instance.ports.http,
        )

    def _env_from_descriptor(self, name: str) -> dict[str, str]:
        """Rebuild env values from the compose descriptor when ``.env`` is lost."""
        text = self.store.read_descriptor(name)
        if not text:
            return {}
        try:
            document = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            LOGGER.warning("descriptor of %s is unreadable: %s", name, exc)
            return {}
        if not isinstance(document, dict):
            return {}
        services = document.get("services") or {}
        merged: dict[str, str] = {}
        db_port: int | None = None
        for service_name, service in services.items():
            if not isinstance(service, dict):
                continue
            merged.update(_service_environment(service.get("environment")))
            if service_name in ("mysql", "db"):
                db_port = _published_port(service.get("ports") or [], 3306)

        recovered: dict[str, str] = {}
        if "RELEASE_TYPE" in merged:
            recovered["RELEASE_TYPE"] = merged["RELEASE_TYPE"]
        else:
            recovered["INSTANCE_KIND"] = InstanceKind.CUSTOM.value
        for source, target in (
            ("HTTP_PORT", "HTTP_PORT"),
            ("HTTPS_PORT", "HTTPS_PORT"),
            ("MYSQL_DATABASE", "DB_NAME"),
            ("MYSQL_USER", "DB_USER"),
            ("MYSQL_PASSWORD", "DB_PASSWORD"),
            ("MYSQL_ROOT_PASSWORD", "DB_ROOT_PASSWORD"),
        ):
            if source in merged:
                recovered[target] = merged[source]
        if db_port is not None:
            recovered["MYSQL_PORT"] = str(db_port)
        if "HTTPS_PORT" in recovered:
            recovered["SSL_ENABLED"] = "true"
        LOGGER.warning(
            "recovered %d value(s) for %s from %s", len(recovered), name, DESCRIPTOR_NAME
        )
        return recovered


def _service_environment(raw: object) -> dict[str, str]:
    if isinstance(raw, dict):
        return {str(key): str(value) for key, value in raw.items() if value is not None}
    values: dict[str, str] = {}
    if isinstance(raw, Iterable) and not isinstance(raw, str):
        for item in raw:
            key, sep, value = str(item).partition("=")
            if sep:
                values[key] = value
    return values


def _published_port(entries: Iterable[object], container_port: int) -> int | None:
    suffix = f":{container_port}"
    for entry in entries:
        text = str(entry)
        if text.endswith(suffix):
            host = text[: -len(suffix)].rsplit(":", 1)[-1]
            if host.isdigit():
                return int(host)
    return None


__all__ = [
    "CUSTOM_DIRS",
    "InstanceExistsError",
    "InstanceNotFoundError",
    "LifecycleError",
    "LifecycleManager",
    "NAME_PATTERN",
    "REPAIRABLE_FILES",
    "RepairReport",
    "STANDARD_DIRS",
    "validate_name",
    "validate_version",
]
