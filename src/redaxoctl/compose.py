"""Render the per-instance orchestration files.

Rendering is pure: the generator takes creation parameters, credentials and
ports and returns text. Writing the files is the lifecycle
manager's job.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

import yaml

from .models import Credentials, InstanceKind, InstanceSpec, PortSet
from .templates import TemplateEngine
from .topology import container_names

CERT_MOUNT_PATH = "/etc/apache2/ssl"
TRUST_STORE_PATHS: tuple[str, ...] = (
    "/etc/ssl",
    "/etc/pki",
    "/usr/local/share/ca-certificates",
    "/usr/share/ca-certificates",
)

_DESCRIPTOR_TEMPLATES = {
    InstanceKind.STANDARD: "compose/standard.yml.j2",
    InstanceKind.CUSTOM: "compose/custom.yml.j2",
}
_ENV_TEMPLATES = {
    InstanceKind.STANDARD: "env/standard.env.j2",
    InstanceKind.CUSTOM: "env/custom.env.j2",
}
_DB_HOSTS = {InstanceKind.STANDARD: "mysql", InstanceKind.CUSTOM: "db"}
_DOCUMENT_ROOTS = {
    InstanceKind.STANDARD: "/var/www/html",
    InstanceKind.CUSTOM: "/var/www/html/public",
}


class ComposeError(RuntimeError):
    """Raised when instance files cannot be rendered."""


@dataclass(frozen=True)
class RenderedInstance:
    """Text of every generated instance file."""

    descriptor: str
    bootstrap_script: str
    env_file: str
    ssl_vhost: str | None = None
    dockerfile: str | None = None


def frontend_url(name: str, ports: PortSet, *, tls: bool) -> str:
    """Return the primary URL of an instance."""
    if tls and ports.https:
        return f"https://{name}.local:{ports.https}"
    return f"http://localhost:{ports.http}"


def check_cert_mount(path: str) -> None:
    """Reject certificate mounts that would shadow the container trust store."""
    normalised = path.rstrip("/")
    for store in TRUST_STORE_PATHS:
        if normalised == store or normalised.startswith(store + "/"):
            raise ComposeError(
                f"Certificate mount {path} overlaps the container trust store at {store}."
            )


class ComposeGenerator:
    """Render descriptors, env files and bootstrap scripts from templates."""

    def __init__(
        self,
        templates: TemplateEngine,
        *,
        web_image: str = "friendsofredaxo/redaxo",
        network: str = "redaxo-network",
        cert_mount: str = CERT_MOUNT_PATH,
    ) -> None:
        check_cert_mount(cert_mount)
        self.templates = templates
        self.web_image = web_image
        self.network = network
        self.cert_mount = cert_mount

    def context(
        self,
        spec: InstanceSpec,
        credentials: Credentials,
        ports: PortSet,
    ) -> dict[str, object]:
        """Return the template context shared by every instance file."""
        tls = spec.tls_enabled and ports.https is not None
        web, db = container_names(spec.name, spec.kind)
        if spec.kind is InstanceKind.CUSTOM:
            install_mode = "none"
        else:
            install_mode = "auto" if spec.auto_install else "empty"
        return {
            "name": spec.name,
            "domain": spec.domain,
            "kind": spec.kind.value,
            "php_version": spec.php_version,
            "mariadb_version": spec.mariadb_version,
            "release_type": spec.release_type,
            "image_variant": spec.image_variant,
            "auto_install": spec.auto_install,
            "install_mode": install_mode,
            "web_image": f"{self.web_image}:5-{spec.image_variant}",
            "web_container": web,
            "db_container": db,
            "db_host": _DB_HOSTS[spec.kind],
            "web_root": "/var/www/html",
            "document_root": _DOCUMENT_ROOTS[spec.kind],
            "network": self.network,
            "cert_mount": self.cert_mount,
            "tls_enabled": tls,
            "http_port": ports.http,
            "https_port": ports.https if tls else None,
            "db_port": ports.db,
            "db_name": credentials.db_name,
            "db_user": credentials.db_user,
            "db_password": credentials.db_password,
            "db_root_password": credentials.db_root_password,
            "base_url": frontend_url(spec.name, ports, tls=tls),
        }

    # ------------------------------------------------------------------
    def render(
        self,
        spec: InstanceSpec,
        credentials: Credentials,
        ports: PortSet,
    ) -> RenderedInstance:
        """Render every file of an instance."""
        context = self.context(spec, credentials, ports)
        descriptor = self.render_descriptor(spec.kind, context)
        script = self.templates.render_to_string("scripts/bootstrap.sh.j2", context)
        env_file = self.templates.render_to_string(_ENV_TEMPLATES[spec.kind], context)
        ssl_vhost = None
        if context["tls_enabled"]:
            ssl_vhost = self.templates.render_to_string("apache/ssl-vhost.conf.j2", context)
        dockerfile = None
        if spec.kind is InstanceKind.CUSTOM:
            dockerfile = self.templates.render_to_string("compose/custom.Dockerfile.j2", context)
        return RenderedInstance(
            descriptor=descriptor,
            bootstrap_script=script,
            env_file=env_file,
            ssl_vhost=ssl_vhost,
            dockerfile=dockerfile,
        )

    def render_descriptor(self, kind: InstanceKind, context: Mapping[str, object]) -> str:
        """Render and sanity-check the compose descriptor."""
        text = self.templates.render_to_string(_DESCRIPTOR_TEMPLATES[kind], context)
        try:
            parsed = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ComposeError(f"Rendered descriptor is not valid YAML: {exc}") from exc
        if not isinstance(parsed, dict) or len(parsed.get("services") or {}) != 2:
            raise ComposeError("Rendered descriptor must define exactly two services.")
        return text


__all__ = [
    "CERT_MOUNT_PATH",
    "ComposeError",
    "ComposeGenerator",
    "RenderedInstance",
    "TRUST_STORE_PATHS",
    "check_cert_mount",
    "frontend_url",
]
