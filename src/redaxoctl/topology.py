"""Resolve logical instance names to containers and application layouts.

Container names are a pure function of the instance name and its kind. The
kind itself is recovered from the stored descriptor and environment file, so
existing instances never need to be classified by hand.

The application root inside the web container is detected by checking an
ordered table of ``(base path, marker file)`` rules; the first marker found
wins. When no marker is found the resolver falls back to the most common
layout and reports the result as unconfirmed (``confirmed=False``) instead of
failing, so best-effort tooling keeps working against unusual layouts.

Conclusive resolutions are cached per container name for the life of the
process; a marker check that fails inside docker itself (stopped container, daemon
error) leaves nothing cached. A container's layout only changes when it is
recreated; callers that recreate containers in place must call
:meth:`TopologyResolver.clear`.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from .models import ContainerTopology, InstanceKind
from .providers.docker import DockerError, DockerProvider
from .state.store import InstanceStore

LOGGER = logging.getLogger(__name__)


class TopologyError(RuntimeError):
    """Raised when an instance cannot be mapped to containers."""


@dataclass(frozen=True)
class BasePathRule:
    """A supported application root identified by a marker file."""

    layout: str
    base_path: str
    marker: str
    console: str

    @property
    def marker_path(self) -> str:
        """Absolute path of the marker inside the container."""
        return f"{self.base_path}/{self.marker}"


@dataclass(frozen=True)
class BasePath:
    """Resolved application root of a web container."""

    path: str
    layout: str
    console: str
    confirmed: bool

    @property
    def console_path(self) -> str:
        """Absolute path of the application console script."""
        return f"{self.path}/{self.console}"


BASE_PATH_RULES: tuple[BasePathRule, ...] = (
    BasePathRule("classic", "/var/www/html", "redaxo/bin/console", "redaxo/bin/console"),
    BasePathRule("public", "/var/www/html/public", "redaxo/bin/console", "redaxo/bin/console"),
    BasePathRule("modern", "/var/www", "bin/console", "bin/console"),
)
FALLBACK_RULE = BASE_PATH_RULES[0]


def container_names(name: str, kind: InstanceKind) -> tuple[str, str]:
    """Return ``(web, db)`` container names for instance *name*."""
    if kind is InstanceKind.CUSTOM:
        return f"{name}_web", f"{name}_db"
    return f"redaxo-{name}", f"redaxo-{name}-mysql"


def classify_kind(
    name: str,
    descriptor: str | None,
    env: Mapping[str, str],
) -> InstanceKind:
    """Infer the instance kind from its stored descriptor and env file."""
    if descriptor and f"{name}_web" in descriptor and f"{name}_db" in descriptor:
        return InstanceKind.CUSTOM
    if env.get("INSTANCE_KIND") == InstanceKind.CUSTOM.value:
        return InstanceKind.CUSTOM
    if env.get("RELEASE_TYPE"):
        return InstanceKind.STANDARD
    return InstanceKind.CUSTOM


class TopologyResolver:
    """Map instances to container identities and cache layout detection."""

    def __init__(
        self,
        store: InstanceStore,
        docker: DockerProvider,
        *,
        rules: Sequence[BasePathRule] = BASE_PATH_RULES,
        fallback: BasePathRule = FALLBACK_RULE,
        check_timeout: float | None = 30.0,
    ) -> None:
        """Wire the store and container engine; *rules* are checked in order."""
        self.store = store
        self.docker = docker
        self.rules = tuple(rules)
        self.fallback = fallback
        self.check_timeout = check_timeout
        self._cache: dict[str, BasePath] = {}
        self._lock = threading.Lock()
        self._marker_checks = 0

    @property
    def marker_checks(self) -> int:
        """Number of marker checks executed so far."""
        with self._lock:
            return self._marker_checks

    # ------------------------------------------------------------------
    def kind_of(self, name: str) -> InstanceKind:
        """Return the kind of an existing instance."""
        if not self.store.exists(name):
            raise TopologyError(f"Instance '{name}' does not exist.")
        return classify_kind(name, self.store.read_descriptor(name), self.store.read_env(name))

    def containers(self, name: str) -> tuple[str, str]:
        """Return ``(web, db)`` container names of an existing instance."""
        return container_names(name, self.kind_of(name))

    def resolve(self, name: str) -> ContainerTopology:
        """Resolve *name* to its containers and application root."""
        kind = self.kind_of(name)
        web, db = container_names(name, kind)
        base = self.resolve_from_container(web)
        return ContainerTopology(
            instance=name,
            kind=kind,
            web_container=web,
            db_container=db,
            base_path=base.path,
            base_path_confirmed=base.confirmed,
        )

    def resolve_from_container(self, container: str) -> BasePath:
        """Return the application root of *container*, checking markers on first use.

        Only conclusive detections are cached. A container that is not running
        cannot be inspected and raises :class:`TopologyError`.
        """
        with self._lock:
            cached = self._cache.get(container)
        if cached is not None:
            return cached

        try:
            running = self.docker.is_running(container)
        except DockerError as exc:
            raise TopologyError(f"Container '{container}' could not be inspected: {exc}") from exc
        if not running:
            raise TopologyError(
                f"Container '{container}' is not running; its application root is unknown."
            )

        resolved, conclusive = self._detect(container)
        if conclusive:
            with self._lock:
                self._cache[container] = resolved
        else:
            LOGGER.debug("not caching inconclusive resolution of %s", container)
        return resolved

    def clear(self, container: str | None = None) -> None:
        """Drop the cached resolution for *container* (or every entry)."""
        with self._lock:
            if container is None:
                self._cache.clear()
            else:
                self._cache.pop(container, None)

    # ------------------------------------------------------------------
    def _detect(self, container: str) -> tuple[BasePath, bool]:
        conclusive = True
        for rule in self.rules:
            found = self._check_marker(container, rule.marker_path)
            if found is None:
                conclusive = False
                continue
            if found:
                LOGGER.debug(
                    "container %s uses %s layout at %s", container, rule.layout, rule.base_path
                )
                base = BasePath(rule.base_path, rule.layout, rule.console, confirmed=True)
                return base, conclusive
        LOGGER.warning(
            "No application marker found in %s; assuming %s (unconfirmed)",
            container,
            self.fallback.base_path,
        )
        base = BasePath(
            self.fallback.base_path,
            self.fallback.layout,
            self.fallback.console,
            confirmed=False,
        )
        return base, conclusive

    def _check_marker(self, container: str, path: str) -> bool | None:
        """Return whether *path* exists, or ``None`` when the check itself failed."""
        with self._lock:
            self._marker_checks += 1
        try:
            result = self.docker.exec(container, ["test", "-f", path], timeout=self.check_timeout)
        except DockerError as exc:
            LOGGER.debug("marker check %s in %s failed: %s", path, container, exc)
            return None
        if result.returncode == 0:
            return True
        # test(1) exits 1 silently; anything else comes from docker exec itself.
        stderr = (result.stderr or "").strip()
        if result.returncode == 1 and not stderr:
            return False
        LOGGER.debug(
            "marker check %s in %s inconclusive (exit %s): %s",
            path,
            container,
            result.returncode,
            stderr or "no output",
        )
        return None


__all__ = [
    "BASE_PATH_RULES",
    "BasePath",
    "BasePathRule",
    "FALLBACK_RULE",
    "TopologyError",
    "TopologyResolver",
    "classify_kind",
    "container_names",
]
