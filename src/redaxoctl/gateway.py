"""Run commands, SQL and file operations inside instance containers.

Every entry point first checks that the target container is running and fails
fast with :class:`ContainerNotRunningError` otherwise; no client installation
or other work is attempted against a stopped container. Remote failures are
returned as result envelopes rather than raised.

File paths are joined onto a fixed root inside the container. Paths are not
sandboxed: ``..`` segments and absolute paths are passed through unchanged.
"""
from __future__ import annotations

import logging
import posixpath
import re
import subprocess
import threading
from collections.abc import Sequence
from dataclasses import dataclass

from .models import RemoteCommandResult, RemoteFileResult, RemoteQueryResult
from .providers.docker import DockerError, DockerProvider
from .topology import TopologyError, TopologyResolver

LOGGER = logging.getLogger(__name__)

SQL_CLIENTS: tuple[str, ...] = ("mariadb", "mysql")
NULL_MARKER = "NULL"
IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_$]+$")
WRITE_FILE_SCRIPT = 'mkdir -p "$(dirname "$1")" && cat > "$1"'

_BATCH_ESCAPES = {"n": "\n", "t": "\t", "0": "\0", "\\": "\\"}


class GatewayError(RuntimeError):
    """Raised when a remote operation cannot be attempted."""


class ContainerNotRunningError(GatewayError):
    """Raised when the target container is not up."""


class ClientToolUnavailableError(GatewayError):
    """Raised when no SQL client exists and none could be installed."""

    def __init__(self, message: str, attempted: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.attempted = list(attempted)


@dataclass(frozen=True)
class InstallStrategy:
    """A package-manager command that installs a SQL client."""

    label: str
    argv: tuple[str, ...]


INSTALL_STRATEGIES: tuple[InstallStrategy, ...] = (
    InstallStrategy(
        "apt-get mariadb-client",
        ("sh", "-c", "apt-get update && apt-get install -y mariadb-client"),
    ),
    InstallStrategy(
        "apt-get default-mysql-client",
        ("sh", "-c", "apt-get update && apt-get install -y default-mysql-client"),
    ),
    InstallStrategy("apk mariadb-client", ("apk", "add", "--no-cache", "mariadb-client")),
    InstallStrategy("apk mysql-client", ("apk", "add", "--no-cache", "mysql-client")),
    InstallStrategy("yum mariadb", ("yum", "install", "-y", "mariadb")),
)


@dataclass(frozen=True)
class ConsoleResult:
    """Application console output plus the layout it ran against."""

    result: RemoteCommandResult
    container: str
    base_path: str
    base_path_confirmed: bool

    @property
    def success(self) -> bool:
        """Whether the console command succeeded."""
        return self.result.success

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload = self.result.to_dict()
        payload.update(
            {
                "container": self.container,
                "base_path": self.base_path,
                "base_path_confirmed": self.base_path_confirmed,
            }
        )
        return payload


def _unescape(value: str) -> str:
    if "\\" not in value:
        return value
    chars: list[str] = []
    index = 0
    while index < len(value):
        char = value[index]
        if char == "\\" and index + 1 < len(value):
            chars.append(_BATCH_ESCAPES.get(value[index + 1], value[index + 1]))
            index += 2
            continue
        chars.append(char)
        index += 1
    return "".join(chars)


def parse_query_output(output: str) -> tuple[list[str], list[dict[str, str | None]]]:
    """Parse tab-separated client output into columns and mapping rows.

    The first line is the header. ``NULL`` becomes ``None``; missing trailing
    fields are also ``None``.
    """
    text = output.replace("\r\n", "\n").rstrip("\n")
    if not text:
        return [], []
    lines = text.split("\n")
    columns = [_unescape(column) for column in lines[0].split("\t")]
    rows: list[dict[str, str | None]] = []
    for line in lines[1:]:
        fields = line.split("\t")
        row: dict[str, str | None] = {}
        for index, column in enumerate(columns):
            raw = fields[index] if index < len(fields) else None
            row[column] = None if raw is None or raw == NULL_MARKER else _unescape(raw)
        rows.append(row)
    return columns, rows


def quote_identifier(name: str) -> str:
    """Return *name* as a backtick-quoted SQL identifier."""
    if not IDENTIFIER_PATTERN.match(name or ""):
        raise GatewayError(f"Invalid SQL identifier '{name}'.")
    return f"`{name}`"


def _failure_text(result: subprocess.CompletedProcess[str]) -> str:
    text = (result.stderr or "").strip() or (result.stdout or "").strip()
    return text or f"command exited with status {result.returncode}"


class RemoteExecutionGateway:
    """Execute work inside running containers."""

    def __init__(
        self,
        docker: DockerProvider,
        resolver: TopologyResolver,
        *,
        exec_timeout: float | None = 30.0,
        install_timeout: float | None = 60.0,
        files_root: str = "/var/www/html",
        strategies: Sequence[InstallStrategy] = INSTALL_STRATEGIES,
    ) -> None:
        self.docker = docker
        self.resolver = resolver
        self.exec_timeout = exec_timeout
        self.install_timeout = install_timeout
        self.files_root = files_root
        self.strategies = tuple(strategies)
        self._clients: dict[str, str] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Preconditions
    # ------------------------------------------------------------------
    def require_running(self, container: str) -> None:
        """Raise :class:`ContainerNotRunningError` unless *container* is up."""
        try:
            running = self.docker.is_running(container)
        except DockerError as exc:
            raise ContainerNotRunningError(
                f"Container '{container}' could not be inspected: {exc}"
            ) from exc
        if not running:
            raise ContainerNotRunningError(f"Container '{container}' is not running.")

    def ensure_sql_client(self, container: str) -> str:
        """Return the SQL client binary in *container*, installing one if needed."""
        with self._lock:
            cached = self._clients.get(container)
        if cached is not None:
            return cached

        client = self._find_client(container)
        attempted: list[str] = []
        if client is None:
            for strategy in self.strategies:
                attempted.append(strategy.label)
                LOGGER.info("installing SQL client in %s via %s", container, strategy.label)
                try:
                    result = self.docker.exec(
                        container, list(strategy.argv), timeout=self.install_timeout
                    )
                except DockerError as exc:
                    LOGGER.debug("%s failed in %s: %s", strategy.label, container, exc)
                    continue
                if result.returncode != 0:
                    LOGGER.debug(
                        "%s failed in %s: %s", strategy.label, container, _failure_text(result)
                    )
                    continue
                client = self._find_client(container)
                if client is not None:
                    break
        if client is None:
            tried = ", ".join(attempted) or "none"
            raise ClientToolUnavailableError(
                f"No SQL client available in '{container}'; tried: {tried}",
                attempted,
            )
        with self._lock:
            self._clients[container] = client
        return client

    def _find_client(self, container: str) -> str | None:
        for binary in SQL_CLIENTS:
            try:
                result = self.docker.exec(container, ["which", binary], timeout=self.exec_timeout)
            except DockerError:
                continue
            if result.returncode == 0 and (result.stdout or "").strip():
                return binary
        return None

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    def exec_command(
        self,
        container: str,
        argv: Sequence[str],
        *,
        timeout: float | None = None,
        user: str | None = None,
        workdir: str | None = None,
        stdin: str | None = None,
    ) -> RemoteCommandResult:
        """Run *argv* inside *container*."""
        if not argv:
            return RemoteCommandResult(success=False, error="No command given.")
        try:
            self.require_running(container)
            result = self.docker.exec(
                container,
                list(argv),
                stdin=stdin,
                user=user,
                workdir=workdir,
                timeout=timeout if timeout is not None else self.exec_timeout,
            )
        except (GatewayError, DockerError) as exc:
            return RemoteCommandResult(success=False, error=str(exc))
        if result.returncode != 0:
            return RemoteCommandResult(
                success=False,
                output=result.stdout or "",
                error=_failure_text(result),
                exit_code=result.returncode,
            )
        return RemoteCommandResult(success=True, output=result.stdout or "", exit_code=0)

    def connect_network(self, network: str, container: str) -> RemoteCommandResult:
        """Attach *container* to *network*; an existing attachment is success."""
        try:
            connected = self.docker.network_connect(network, container)
        except DockerError as exc:
            return RemoteCommandResult(success=False, error=str(exc), exit_code=exc.returncode)
        message = "connected" if connected else "already connected"
        return RemoteCommandResult(success=True, output=f"{container} {message} to {network}")

    # ------------------------------------------------------------------
    # SQL
    # ------------------------------------------------------------------
    def exec_query(
        self,
        container: str,
        sql: str,
        *,
        database: str | None = None,
    ) -> RemoteQueryResult:
        """Run *sql* with the container's credentials and parse the rows."""
        try:
            self.require_running(container)
            client = self.ensure_sql_client(container)
            env = self.docker.container_env(container)
        except (GatewayError, DockerError) as exc:
            return RemoteQueryResult(success=False, error=str(exc))

        user, password, default_db = _connection_params(env)
        argv = [client, "--batch", f"--user={user}"]
        if password:
            argv.append(f"--password={password}")
        target_db = database or default_db
        if target_db:
            argv.append(f"--database={target_db}")
        argv.extend(["-e", sql])

        try:
            result = self.docker.exec(container, argv, timeout=self.exec_timeout)
        except DockerError as exc:
            return RemoteQueryResult(success=False, error=str(exc))
        if result.returncode != 0:
            return RemoteQueryResult(
                success=False,
                error=_failure_text(result),
                exit_code=result.returncode,
            )
        columns, rows = parse_query_output(result.stdout or "")
        return RemoteQueryResult(success=True, rows=rows, columns=columns, exit_code=0)

    def list_databases(self, container: str) -> RemoteQueryResult:
        """Return the databases visible to the container's user."""
        return self.exec_query(container, "SHOW DATABASES")

    def list_tables(self, container: str, *, database: str | None = None) -> RemoteQueryResult:
        """Return the tables of *database* (or the container's default)."""
        return self.exec_query(container, "SHOW TABLES", database=database)

    def describe_table(
        self,
        container: str,
        table: str,
        *,
        database: str | None = None,
    ) -> RemoteQueryResult:
        """Return the column definitions of *table*."""
        return self.exec_query(container, f"DESCRIBE {quote_identifier(table)}", database=database)

    def create_database(self, container: str, name: str) -> RemoteQueryResult:
        """Create database *name* with the utf8mb4 character set."""
        statement = (
            f"CREATE DATABASE IF NOT EXISTS {quote_identifier(name)} "
            "CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci"
        )
        return self.exec_query(container, statement)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------
    def resolve_path(self, path: str) -> str:
        """Return *path* joined onto the file root."""
        return posixpath.normpath(posixpath.join(self.files_root, path or "."))

    def read_file(self, container: str, path: str) -> RemoteFileResult:
        """Return the content of *path*."""
        full = self.resolve_path(path)
        return self._file_result(full, self.exec_command(container, ["cat", full]))

    def write_file(self, container: str, path: str, content: str) -> RemoteFileResult:
        """Write *content* to *path*, creating parent directories."""
        full = self.resolve_path(path)
        result = self.exec_command(
            container, ["sh", "-c", WRITE_FILE_SCRIPT, "sh", full], stdin=content
        )
        if not result.success:
            return self._file_result(full, result)
        return RemoteFileResult(success=True, path=full, content=content, exit_code=0)

    def list_files(self, container: str, path: str = ".") -> RemoteFileResult:
        """Return an ``ls -la`` listing of *path*."""
        full = self.resolve_path(path)
        return self._file_result(full, self.exec_command(container, ["ls", "-la", full]))

    def file_exists(self, container: str, path: str) -> bool:
        """Return ``True`` when *path* is a regular file.

        Raises :class:`ContainerNotRunningError` when the container is down.
        """
        self.require_running(container)
        full = self.resolve_path(path)
        try:
            result = self.docker.exec(container, ["test", "-f", full], timeout=self.exec_timeout)
        except DockerError as exc:
            raise GatewayError(str(exc)) from exc
        return result.returncode == 0

    def delete_file(self, container: str, path: str) -> RemoteFileResult:
        """Remove the file at *path*."""
        full = self.resolve_path(path)
        result = self.exec_command(container, ["rm", full])
        if not result.success:
            return self._file_result(full, result)
        return RemoteFileResult(success=True, path=full, exit_code=0)

    @staticmethod
    def _file_result(path: str, result: RemoteCommandResult) -> RemoteFileResult:
        if result.success:
            return RemoteFileResult(
                success=True, path=path, content=result.output, exit_code=result.exit_code
            )
        return RemoteFileResult(
            success=False, path=path, error=result.error, exit_code=result.exit_code
        )

    # ------------------------------------------------------------------
    # Application console
    # ------------------------------------------------------------------
    def console(self, instance: str, command: str, args: Sequence[str] = ()) -> ConsoleResult:
        """Run an application console command in the web container of *instance*."""
        try:
            web, _ = self.resolver.containers(instance)
        except TopologyError as exc:
            failed = RemoteCommandResult(success=False, error=str(exc))
            return ConsoleResult(failed, "", "", base_path_confirmed=False)
        try:
            self.require_running(web)
        except ContainerNotRunningError as exc:
            failed = RemoteCommandResult(success=False, error=str(exc))
            return ConsoleResult(failed, web, "", base_path_confirmed=False)

        try:
            base = self.resolver.resolve_from_container(web)
        except TopologyError as exc:
            failed = RemoteCommandResult(success=False, error=str(exc))
            return ConsoleResult(failed, web, "", base_path_confirmed=False)
        if not base.confirmed:
            LOGGER.warning("running console in %s against unconfirmed base path %s", web, base.path)
        result = self.exec_command(
            web,
            ["php", base.console_path, command, *args],
            timeout=self.exec_timeout,
        )
        return ConsoleResult(result, web, base.path, base_path_confirmed=base.confirmed)


def _connection_params(env: dict[str, str]) -> tuple[str, str, str | None]:
    user = env.get("MYSQL_USER") or env.get("MARIADB_USER")
    password = env.get("MYSQL_PASSWORD") or env.get("MARIADB_PASSWORD")
    database = env.get("MYSQL_DATABASE") or env.get("MARIADB_DATABASE") or None
    if user and password:
        return user, password, database
    root_password = env.get("MYSQL_ROOT_PASSWORD") or env.get("MARIADB_ROOT_PASSWORD") or ""
    return "root", root_password, database


__all__ = [
    "ClientToolUnavailableError",
    "ConsoleResult",
    "ContainerNotRunningError",
    "GatewayError",
    "INSTALL_STRATEGIES",
    "InstallStrategy",
    "RemoteExecutionGateway",
    "SQL_CLIENTS",
    "parse_query_output",
    "quote_identifier",
]
