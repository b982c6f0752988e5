"""Docker provider wrapping the container engine CLI and its compose plugin."""
from __future__ import annotations

import json
import logging
import re
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

LOGGER = logging.getLogger(__name__)

_PUBLISHED_PORT_RE = re.compile(r":(\d+)(?:-(\d+))?->")


class DockerError(RuntimeError):
    """Raised when a docker invocation fails."""

    def __init__(
        self,
        message: str,
        *,
        command: Sequence[str] | None = None,
        returncode: int | None = None,
        stderr: str = "",
    ) -> None:
        """Capture the failing command alongside its stderr."""
        super().__init__(message)
        self.command = list(command or [])
        self.returncode = returncode
        self.stderr = stderr


def parse_published_ports(output: str) -> set[int]:
    """Extract host ports from ``docker ps --format {{.Ports}}`` output."""
    ports: set[int] = set()
    for match in _PUBLISHED_PORT_RE.finditer(output):
        first = int(match.group(1))
        last = int(match.group(2)) if match.group(2) else first
        ports.update(range(first, last + 1))
    return ports


@dataclass(slots=True)
class DockerProvider:
    """Drive containers and compose projects through the docker CLI."""

    docker_bin: str = "docker"

    # ------------------------------------------------------------------
    # Compose projects
    # ------------------------------------------------------------------
    def compose(
        self,
        project_dir: Path,
        *args: str,
        check: bool = True,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run ``docker compose <args>`` inside *project_dir*."""
        command = [self.docker_bin, "compose", *args]
        return self._run_command(
            command,
            check=check,
            error_prefix=f"docker compose {' '.join(args)}".rstrip(),
            cwd=project_dir,
            timeout=timeout,
        )

    def compose_pull(self, project_dir: Path) -> subprocess.CompletedProcess[str]:
        """Pre-fetch every image referenced by the descriptor."""
        return self.compose(project_dir, "pull")

    def compose_up(self, project_dir: Path) -> subprocess.CompletedProcess[str]:
        """Start the service group detached."""
        return self.compose(project_dir, "up", "-d")

    def compose_stop(self, project_dir: Path) -> subprocess.CompletedProcess[str]:
        """Stop the service group without removing containers."""
        return self.compose(project_dir, "stop")

    def compose_down(
        self,
        project_dir: Path,
        *,
        volumes: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Remove containers (and named volumes) of the service group."""
        args = ["down", "-v"] if volumes else ["down"]
        return self.compose(project_dir, *args)

    def compose_build(
        self,
        project_dir: Path,
        *,
        no_cache: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Build images declared with a ``build`` section."""
        args = ["build", "--no-cache"] if no_cache else ["build"]
        return self.compose(project_dir, *args)

    def compose_recreate(
        self,
        project_dir: Path,
        *,
        start: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Force-recreate containers, leaving them stopped unless *start*."""
        mode = "-d" if start else "--no-start"
        return self.compose(project_dir, "up", mode, "--force-recreate")

    def running_services(self, project_dir: Path) -> list[str]:
        """Return the services of the project that are currently up."""
        result = self.compose(
            project_dir, "ps", "--services", "--filter", "status=running"
        )
        return [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------
    def published_ports(self) -> set[int]:
        """Return host ports published by running containers."""
        result = self._run_command(
            [self.docker_bin, "ps", "--format", "{{.Ports}}"],
            check=True,
            error_prefix="docker ps",
        )
        return parse_published_ports(result.stdout or "")

    def is_running(self, container: str) -> bool:
        """Return ``True`` when *container* exists and is running."""
        result = self._run_command(
            [self.docker_bin, "container", "inspect", container, "--format", "{{.State.Running}}"],
            check=False,
            error_prefix=f"docker container inspect {container}",
        )
        if result.returncode != 0:
            detail = (result.stderr or "").strip()
            LOGGER.debug("container %s not inspectable: %s", container, detail)
            return False
        return (result.stdout or "").strip().lower() == "true"

    def container_env(self, container: str) -> dict[str, str]:
        """Return the configured environment of *container*."""
        result = self._run_command(
            [
                self.docker_bin, "container", "inspect", container,
                "--format", "{{json .Config.Env}}",
            ],
            check=True,
            error_prefix=f"docker container inspect {container}",
        )
        try:
            entries = json.loads((result.stdout or "").strip() or "[]")
        except json.JSONDecodeError as exc:
            raise DockerError(
                f"Unexpected inspect output for {container}: {exc}",
                command=result.args,
            ) from exc
        env: dict[str, str] = {}
        for entry in entries or []:
            key, sep, value = str(entry).partition("=")
            if sep:
                env[key] = value
        return env

    def exec(
        self,
        container: str,
        argv: Sequence[str],
        *,
        stdin: str | None = None,
        user: str | None = None,
        workdir: str | None = None,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Execute *argv* inside *container* and return the completed process.

        A nonzero exit status is not an error here; callers inspect
        ``returncode`` themselves.
        """
        command = [self.docker_bin, "exec"]
        if stdin is not None:
            command.append("-i")
        if user:
            command.extend(["--user", user])
        if workdir:
            command.extend(["--workdir", workdir])
        command.append(container)
        command.extend(argv)
        return self._run_command(
            command,
            check=False,
            error_prefix=f"docker exec {container}",
            stdin=stdin,
            timeout=timeout,
        )

    def network_connect(self, network: str, container: str) -> bool:
        """Connect *container* to *network*; ``False`` if it was already connected."""
        result = self._run_command(
            [self.docker_bin, "network", "connect", network, container],
            check=False,
            error_prefix=f"docker network connect {network} {container}",
        )
        if result.returncode == 0:
            return True
        message = (result.stderr or result.stdout or "").strip()
        if "already exists" in message.lower():
            return False
        raise DockerError(
            f"docker network connect {network} {container} failed "
            f"(exit {result.returncode}): {message or 'no output'}",
            command=result.args,
            returncode=result.returncode,
            stderr=result.stderr or "",
        )

    def version(self) -> str:
        """Return the docker client version string."""
        result = self._run_command(
            [self.docker_bin, "--version"],
            check=True,
            error_prefix="docker --version",
        )
        return (result.stdout or "").strip()

    # ------------------------------------------------------------------
    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        cwd: Path | None = None,
        stdin: str | None = None,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        LOGGER.debug("running %s", " ".join(args))
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
                cwd=str(cwd) if cwd is not None else None,
                input=stdin,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            raise DockerError(f"{args[0]} not found: {exc}", command=args) from exc
        except subprocess.TimeoutExpired as exc:
            raise DockerError(f"{error_prefix} timed out after {timeout}s", command=args) from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise DockerError(
                f"{error_prefix} failed (exit {result.returncode}): {message}",
                command=args,
                returncode=result.returncode,
                stderr=stderr,
            )
        return result


__all__ = ["DockerError", "DockerProvider", "parse_published_ports"]
