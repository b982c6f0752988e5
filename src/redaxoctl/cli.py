"""Typer-powered command line interface for ``redaxoctl``.

Each command runs inside a structured operation record. Commands that change
an instance hold the global and per-instance locks for their duration.
"""
from __future__ import annotations

import json
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .compose import ComposeError, ComposeGenerator
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .gateway import ClientToolUnavailableError, GatewayError, RemoteExecutionGateway
from .hosts import HostsFile, HostsFileError
from .lifecycle import InstanceExistsError, LifecycleError, LifecycleManager
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .models import (
    InstanceKind,
    InstanceSpec,
    InstanceState,
    RemoteCommandResult,
    RemoteFileResult,
    RemoteQueryResult,
)
from .ports import ExhaustedError, PortAllocator, PortsError
from .providers import DockerError, DockerProvider, MkcertError, MkcertProvider
from .state import InstanceStore, InstanceStoreError
from .templates import TemplateEngine, TemplateError
from .tls import CertificateError, CertificateProvisioner, CertificateValidator
from .topology import TopologyError, TopologyResolver

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to redaxoctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of a table.",
)

NAME_ARGUMENT = typer.Argument(..., help="Name of the instance.")

app = typer.Typer(
    add_completion=False,
    help="Create and operate local REDAXO development instances.",
)

instances_app = typer.Typer(help="Create, operate and inspect instances.")
db_app = typer.Typer(help="Query the database container of an instance.")
files_app = typer.Typer(help="Read and write files in the web container of an instance.")
ports_app = typer.Typer(help="Inspect host and instance ports.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(instances_app, name="instance")
app.add_typer(db_app, name="db")
app.add_typer(files_app, name="file")
app.add_typer(ports_app, name="ports")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    docker: DockerProvider
    store: InstanceStore
    allocator: PortAllocator
    provisioner: CertificateProvisioner
    hosts: HostsFile
    generator: ComposeGenerator
    resolver: TopologyResolver
    lifecycle: LifecycleManager
    gateway: RemoteExecutionGateway


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    docker = DockerProvider(docker_bin=config.docker.bin)
    store = InstanceStore(config.instances_dir)
    allocator = PortAllocator.from_config(config.ports, docker)
    provisioner = CertificateProvisioner(
        MkcertProvider(mkcert_bin=config.tls.mkcert_bin),
        CertificateValidator(config.tls.warn_expiry_days),
        config.runtime_dir,
    )
    hosts = HostsFile(config.tls.hosts_file, writer=config.tls.hosts_writer)
    generator = ComposeGenerator(
        templates,
        web_image=config.docker.web_image,
        network=config.docker.network,
    )
    resolver = TopologyResolver(store, docker, check_timeout=config.docker.exec_timeout)
    lifecycle = LifecycleManager(
        store,
        allocator,
        provisioner,
        hosts,
        generator,
        docker,
        resolver,
        ports=config.ports,
    )
    gateway = RemoteExecutionGateway(
        docker,
        resolver,
        exec_timeout=config.docker.exec_timeout,
        install_timeout=config.docker.install_timeout,
        files_root=config.files.root,
    )
    runtime = RuntimeContext(
        config=config,
        locks=locks,
        logger=logger,
        templates=templates,
        docker=docker,
        store=store,
        allocator=allocator,
        provisioner=provisioner,
        hosts=hosts,
        generator=generator,
        resolver=resolver,
        lifecycle=lifecycle,
        gateway=gateway,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the redaxoctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"redaxoctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.VALIDATION),
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _provider_error(op: OperationScope, message: str) -> NoReturn:
    _command_error(op, message, rc=int(ExitCode.PROVIDER))


def _exit_code_for(exc: Exception) -> ExitCode:
    if isinstance(exc, (LockTimeoutError, ExhaustedError)):
        return ExitCode.ENVIRONMENT
    if isinstance(exc, DockerError):
        if exc.returncode is None and "not found" in str(exc):
            return ExitCode.ENVIRONMENT
        return ExitCode.PROVIDER
    if isinstance(exc, (LifecycleError, TopologyError, PortsError, GatewayError)):
        return ExitCode.VALIDATION
    return ExitCode.PROVIDER


def _fail(op: OperationScope, action: str, exc: Exception) -> NoReturn:
    """Terminate the command for a raised domain error."""
    errors = [str(exc)]
    if isinstance(exc, ClientToolUnavailableError) and exc.attempted:
        errors.append(f"attempted: {', '.join(exc.attempted)}")
    _command_error(op, f"{action} failed: {exc}", rc=int(_exit_code_for(exc)), errors=errors)


HANDLED_ERRORS: tuple[type[Exception], ...] = (
    LifecycleError,
    TopologyError,
    GatewayError,
    PortsError,
    LockTimeoutError,
    DockerError,
    MkcertError,
    CertificateError,
    HostsFileError,
    InstanceStoreError,
    ComposeError,
    TemplateError,
)


@contextmanager
def _instance_locks(
    runtime: RuntimeContext,
    op: OperationScope,
    names: Sequence[str],
) -> Iterator[None]:
    """Hold the global and per-instance locks, mapping a timeout to an exit code."""
    try:
        with runtime.locks.mutate_instances(names) as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            yield
    except LockTimeoutError as exc:
        _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))


def _require_instance(runtime: RuntimeContext, name: str, op: OperationScope) -> None:
    if not runtime.store.exists(name):
        _command_error(op, f"Instance '{name}' does not exist.")


def _container_for(
    runtime: RuntimeContext,
    name: str,
    op: OperationScope,
    *,
    database: bool,
) -> str:
    _require_instance(runtime, name, op)
    try:
        web, db = runtime.resolver.containers(name)
    except TopologyError as exc:
        _fail(op, "resolve", exc)
    op.add_step("topology.resolve", status="success", detail=db if database else web)
    return db if database else web


def _format_state(state: InstanceState) -> str:
    colours = {
        InstanceState.RUNNING: "green",
        InstanceState.STOPPED: "yellow",
        InstanceState.ERROR: "red",
        InstanceState.ABSENT: "dim",
        InstanceState.CREATING: "cyan",
    }
    return f"[{colours[state]}]{state.value}[/{colours[state]}]"


def _render_query(result: RemoteQueryResult, *, json_output: bool) -> None:
    if json_output:
        console.print_json(data=result.to_dict())
        return
    table = Table(show_header=True, header_style="bold magenta")
    for column in result.columns:
        table.add_column(column)
    if not result.columns:
        table.add_column("Result")
        table.add_row("(no rows)")
    for row in result.rows:
        values = [row.get(column) for column in result.columns]
        table.add_row(*("NULL" if value is None else str(value) for value in values))
    console.print(table)


def _finish_remote(
    op: OperationScope,
    result: RemoteCommandResult | RemoteQueryResult | RemoteFileResult,
    message: str,
) -> None:
    if not result.success:
        _provider_error(op, result.error or message)
    op.success(message, changed=0, context={"exit_code": result.exit_code})


# ----------------------------------------------------------------------
# instance
# ----------------------------------------------------------------------


@instances_app.command("create")
def instance_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to create."),
    kind: InstanceKind = typer.Option(
        InstanceKind.STANDARD,
        "--kind",
        case_sensitive=False,
        help="Instance topology: standard image or custom Dockerfile build.",
    ),
    php_version: str | None = typer.Option(None, "--php", help="PHP version."),
    mariadb_version: str | None = typer.Option(None, "--mariadb", help="MariaDB version."),
    ssl: bool | None = typer.Option(
        None,
        "--ssl/--no-ssl",
        help="Issue a locally-trusted certificate (default from config).",
    ),
    image_variant: str | None = typer.Option(
        None,
        "--image-variant",
        help="Web image variant: stable or edge.",
    ),
    no_auto_install: bool = typer.Option(
        False,
        "--no-auto-install",
        help="Skip the REDAXO setup and serve an empty web root.",
    ),
    http_port: int | None = typer.Option(
        None,
        "--http-port",
        min=1,
        max=65535,
        help="First HTTP port to probe.",
    ),
    no_pull: bool = typer.Option(
        False,
        "--no-pull",
        help="Do not pre-fetch or build container images.",
    ),
) -> None:
    """Create a new instance; it is left stopped."""
    runtime = _get_runtime(ctx)
    defaults = runtime.config.defaults
    variant = image_variant or runtime.config.docker.image_variant
    spec = InstanceSpec(
        name=name,
        kind=kind,
        php_version=php_version or defaults.php_version,
        mariadb_version=mariadb_version or defaults.mariadb_version,
        tls_enabled=runtime.config.tls.enabled if ssl is None else ssl,
        image_variant=variant,
        release_type=defaults.release_type,
        auto_install=defaults.auto_install and not no_auto_install,
        http_port=http_port,
    )
    with runtime.logger.operation(
        "instance create",
        args={
            "name": name,
            "kind": kind.value,
            "php": spec.php_version,
            "mariadb": spec.mariadb_version,
            "ssl": spec.tls_enabled,
            "image_variant": variant,
            "auto_install": spec.auto_install,
            "http_port": http_port,
            "pull": not no_pull,
        },
        target={"kind": "instance", "name": name},
    ) as op:
        if variant not in ("stable", "edge"):
            _command_error(op, f"Unknown image variant '{variant}'; use stable or edge.")
        try:
            docker_version = runtime.docker.version()
        except DockerError as exc:
            _fail(op, "docker preflight", exc)
        op.add_step("docker.version", status="success", detail=docker_version)

        def _progress(message: str) -> None:
            op.add_step("create.progress", status="info", detail=message)
            console.print(f"[dim]{name}: {message}[/dim]")

        with _instance_locks(runtime, op, [name]):
            try:
                instance = runtime.lifecycle.create(spec, pull=not no_pull, progress=_progress)
            except InstanceExistsError as exc:
                _command_error(op, str(exc))
            except HANDLED_ERRORS as exc:
                _fail(op, "instance create", exc)

        warnings: list[str] = []
        if spec.tls_enabled and not instance.tls_enabled:
            warnings.append("mkcert is not installed; instance created without TLS.")
            console.print(f"[yellow]{warnings[0]}[/yellow]")
        ports = instance.ports
        console.print(
            f"[green]Instance '{name}' created[/green] at {instance.path} "
            f"(http {ports.http}, db {ports.db}"
            + (f", https {ports.https}" if ports.https else "")
            + f"). Start it with: redaxoctl instance start {name}"
        )
        context = {"path": str(instance.path), "ports": ports.to_dict()}
        if warnings:
            op.warning(
                "Instance created without TLS.", warnings=warnings, changed=1, context=context
            )
        else:
            op.success("Instance created.", changed=1, context=context)


def _transition(
    ctx: typer.Context,
    name: str,
    command: str,
    action: str,
    past: str,
) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        f"instance {command}",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        with _instance_locks(runtime, op, [name]):
            _require_instance(runtime, name, op)
            try:
                state = getattr(runtime.lifecycle, action)(name)
            except HANDLED_ERRORS as exc:
                _fail(op, f"instance {command}", exc)
            op.add_step(f"compose.{action}", status="success", detail=f"status={state.value}")
            console.print(f"[green]Instance '{name}' {past}[/green] ({_format_state(state)}).")
            op.success(f"Instance {past}.", changed=1, context={"status": state.value})


@instances_app.command("start")
def instance_start(ctx: typer.Context, name: str = NAME_ARGUMENT) -> None:
    """Start the containers of an instance."""
    _transition(ctx, name, "start", "start", "started")


@instances_app.command("stop")
def instance_stop(ctx: typer.Context, name: str = NAME_ARGUMENT) -> None:
    """Stop the containers of an instance."""
    _transition(ctx, name, "stop", "stop", "stopped")


@instances_app.command("restart")
def instance_restart(ctx: typer.Context, name: str = NAME_ARGUMENT) -> None:
    """Stop and start the containers of an instance."""
    _transition(ctx, name, "restart", "restart", "restarted")


@instances_app.command("repair")
def instance_repair(ctx: typer.Context, name: str = NAME_ARGUMENT) -> None:
    """Rewrite generated files and rebuild the containers (left stopped)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance repair",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        with _instance_locks(runtime, op, [name]):
            _require_instance(runtime, name, op)
            try:
                report = runtime.lifecycle.repair(name)
            except HANDLED_ERRORS as exc:
                _fail(op, "instance repair", exc)
        for item in report.removed:
            op.add_step("filesystem.replace_directory", status="success", detail=item)
        op.add_step("files.render", status="success", detail=", ".join(report.rewritten))
        op.add_step("compose.recreate", status="success", detail="--no-start --force-recreate")
        if report.recovered_from_descriptor:
            console.print("[yellow].env was rebuilt from docker-compose.yml.[/yellow]")
        console.print(f"[green]Instance '{name}' repaired[/green]; start it when ready.")
        op.success("Instance repaired.", changed=len(report.rewritten), context=report.to_dict())


@instances_app.command("delete")
def instance_delete(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to delete."),
    yes: bool = typer.Option(
        False,
        "--yes",
        help="Delete without asking for confirmation.",
    ),
) -> None:
    """Stop an instance and remove its directory, including all data."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance delete",
        args={"name": name, "yes": yes},
        target={"kind": "instance", "name": name},
    ) as op:
        with _instance_locks(runtime, op, [name]):
            _require_instance(runtime, name, op)
            confirmed = yes or typer.confirm(
                f"Delete instance '{name}' and all of its data?", default=False
            )
            if not confirmed:
                _command_error(op, "Deletion aborted.")
            try:
                runtime.lifecycle.delete(name)
            except HANDLED_ERRORS as exc:
                _fail(op, "instance delete", exc)
            op.add_step("filesystem.remove", status="success", detail=name)
            console.print(f"[yellow]Instance '{name}' deleted.[/yellow]")
            op.success("Instance deleted.", changed=1)


@instances_app.command("status")
def instance_status(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Report the current state of an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance status",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        state = runtime.lifecycle.status(name)
        if json_output:
            console.print_json(data={"name": name, "status": state.value})
        else:
            console.print(f"{name}: {_format_state(state)}")
        op.success("Reported instance status.", changed=0, context={"status": state.value})


@instances_app.command("list")
def instance_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List instances with their state and ports."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "all"},
    ) as op:
        instances = runtime.lifecycle.list()
        if json_output:
            console.print_json(data={"instances": [item.to_dict() for item in instances]})
            op.success("Reported instance list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Kind")
        table.add_column("Status")
        table.add_column("PHP")
        table.add_column("MariaDB")
        table.add_column("URL")

        if not instances:
            table.add_row("(none)", "", "", "", "", "")
        else:
            for item in instances:
                table.add_row(
                    item.name,
                    item.kind.value,
                    _format_state(item.status),
                    item.php_version,
                    item.mariadb_version,
                    item.base_url,
                )

        console.print(table)
        op.success("Reported instance list.", changed=0)


@instances_app.command("show")
def instance_show(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show details for a single instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance show",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        instance = runtime.lifecycle.get(name)
        if instance is None:
            _command_error(op, f"Instance '{name}' does not exist.")
        data = instance.to_dict()
        try:
            data["topology"] = dict(
                zip(("web_container", "db_container"), runtime.resolver.containers(name))
            )
        except TopologyError as exc:
            _fail(op, "instance show", exc)

        if json_output:
            console.print_json(data=data)
            op.success("Displayed instance details as JSON.", changed=0)
            return

        table = Table(show_header=False)
        for key, value in data.items():
            if value in (None, ""):
                continue
            if isinstance(value, dict):
                rendered = ", ".join(f"{k}={v}" for k, v in value.items() if v is not None)
            else:
                rendered = str(value)
            table.add_row(key.replace("_", " ").title(), rendered)
        console.print(table)
        op.success("Displayed instance details.", changed=0)


@instances_app.command("login-info")
def instance_login_info(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show URLs and credentials of an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance login-info",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            info = runtime.lifecycle.login_info(name)
        except HANDLED_ERRORS as exc:
            _fail(op, "instance login-info", exc)
        if json_output:
            console.print_json(data=info.to_dict())
            op.success("Reported login info as JSON.", changed=0)
            return

        table = Table(show_header=False)
        table.add_row("Status", "running" if info.running else "stopped")
        table.add_row("Frontend", info.frontend_url)
        table.add_row("Backend", info.backend_url)
        if info.frontend_url_https:
            table.add_row("Frontend (HTTPS)", info.frontend_url_https)
            table.add_row("Backend (HTTPS)", info.backend_url_https or "")
        table.add_row("Admin User", info.admin_user or "N/A")
        table.add_row("Admin Password", info.admin_password or "N/A")
        table.add_row("DB Host", info.db_host)
        table.add_row("DB Name", info.db_name)
        table.add_row("DB User", info.db_user)
        table.add_row("DB Password", info.db_password)
        table.add_row("DB External", f"{info.db_external_host}:{info.db_external_port}")
        table.add_row("PHP", info.php_version)
        table.add_row("MariaDB", info.mariadb_version)
        console.print(table)
        op.success("Reported login info.", changed=0)


@instances_app.command("setup-ssl")
def instance_setup_ssl(ctx: typer.Context, name: str = NAME_ARGUMENT) -> None:
    """Issue a certificate and enable HTTPS for an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance setup-ssl",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        with _instance_locks(runtime, op, [name]):
            _require_instance(runtime, name, op)
            try:
                enabled = runtime.lifecycle.setup_ssl(name)
            except HANDLED_ERRORS as exc:
                _fail(op, "instance setup-ssl", exc)
            if not enabled:
                message = "mkcert is not installed; TLS was not enabled."
                console.print(f"[yellow]{message}[/yellow]")
                op.warning(message, warnings=[message], changed=0)
                return
            op.add_step("tls.issue", status="success")
            op.add_step("hosts.ensure", status="success", detail=f"{name}.local")
            console.print(f"[green]TLS enabled for '{name}'.[/green]")
            op.success("TLS enabled.", changed=1)


@instances_app.command("import-dump")
def instance_import_dump(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    dump: Path = typer.Argument(..., exists=True, dir_okay=False, help="SQL dump to import."),
) -> None:
    """Copy an SQL dump into the database init directory."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance import-dump",
        args={"name": name, "dump": str(dump)},
        target={"kind": "instance", "name": name},
    ) as op:
        with _instance_locks(runtime, op, [name]):
            try:
                destination = runtime.lifecycle.import_dump(name, dump)
            except HANDLED_ERRORS as exc:
                _fail(op, "instance import-dump", exc)
            except OSError as exc:
                _command_error(op, f"Copying {dump} failed: {exc}", rc=int(ExitCode.ENVIRONMENT))
            console.print(
                f"[green]Dump copied to {destination}[/green]; it is applied when the "
                "database is initialised from scratch."
            )
            op.success("Dump imported.", changed=1, context={"destination": str(destination)})


@instances_app.command("connect-network")
def instance_connect_network(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    network: str = typer.Argument(..., help="Docker network to join."),
    database: bool = typer.Option(False, "--db", help="Attach the database container."),
) -> None:
    """Attach an instance container to another docker network."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance connect-network",
        args={"name": name, "network": network, "db": database},
        target={"kind": "instance", "name": name},
    ) as op:
        container = _container_for(runtime, name, op, database=database)
        result = runtime.gateway.connect_network(network, container)
        if result.success:
            console.print(f"[green]{result.output}.[/green]")
        _finish_remote(op, result, f"Attached {container} to {network}.")


# ----------------------------------------------------------------------
# exec / console
# ----------------------------------------------------------------------


@app.command("exec", context_settings={"ignore_unknown_options": True})
def exec_command(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    argv: list[str] = typer.Argument(..., help="Command to run (use -- before it)."),
    database: bool = typer.Option(False, "--db", help="Target the database container."),
    user: str | None = typer.Option(None, "--user", help="Run as this container user."),
    workdir: str | None = typer.Option(None, "--workdir", help="Working directory."),
) -> None:
    """Run a command inside an instance container."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "exec",
        args={"name": name, "argv": argv, "db": database},
        target={"kind": "instance", "name": name},
    ) as op:
        container = _container_for(runtime, name, op, database=database)
        result = runtime.gateway.exec_command(container, argv, user=user, workdir=workdir)
        if result.output:
            console.print(result.output, end="", markup=False, highlight=False)
        _finish_remote(op, result, "Command executed.")


@app.command("console", context_settings={"ignore_unknown_options": True})
def console_command(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    command: str = typer.Argument(..., help="Console command, e.g. cache:clear."),
    args: list[str] | None = typer.Argument(None, help="Arguments for the console command."),
) -> None:
    """Run a REDAXO console command in the web container."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "console",
        args={"name": name, "command": command, "args": args or []},
        target={"kind": "instance", "name": name},
    ) as op:
        _require_instance(runtime, name, op)
        outcome = runtime.gateway.console(name, command, args or [])
        if outcome.base_path:
            detail = outcome.base_path
            if not outcome.base_path_confirmed:
                detail += " (guessed)"
            op.add_step("topology.base_path", status="success", detail=detail)
        if outcome.base_path and not outcome.base_path_confirmed:
            console.print(
                f"[yellow]No REDAXO installation detected; assumed {outcome.base_path}.[/yellow]"
            )
        if outcome.result.output:
            console.print(outcome.result.output, end="", markup=False, highlight=False)
        _finish_remote(op, outcome.result, "Console command executed.")


# ----------------------------------------------------------------------
# db
# ----------------------------------------------------------------------


@db_app.command("query")
def db_query(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    sql: str = typer.Argument(..., help="SQL statement to run."),
    database: str | None = typer.Option(None, "--database", help="Database to use."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Run a SQL statement in the database container."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "db query",
        args={"name": name, "database": database, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        container = _container_for(runtime, name, op, database=True)
        result = runtime.gateway.exec_query(container, sql, database=database)
        if result.success:
            _render_query(result, json_output=json_output)
        _finish_remote(op, result, f"Query returned {len(result.rows)} row(s).")


def _db_listing(
    ctx: typer.Context,
    name: str,
    command: str,
    run: str,
    *,
    json_output: bool,
    extra: Sequence[str] = (),
    database: str | None = None,
) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        f"db {command}",
        args={"name": name, "extra": list(extra), "database": database},
        target={"kind": "instance", "name": name},
    ) as op:
        container = _container_for(runtime, name, op, database=True)
        method = getattr(runtime.gateway, run)
        try:
            if database is not None:
                result = method(container, *extra, database=database)
            else:
                result = method(container, *extra)
        except GatewayError as exc:
            _fail(op, f"db {command}", exc)
        if result.success:
            _render_query(result, json_output=json_output)
        _finish_remote(op, result, f"db {command} completed.")


@db_app.command("list")
def db_list(ctx: typer.Context, name: str = NAME_ARGUMENT, json_output: bool = JSON_OPTION) -> None:
    """List databases."""
    _db_listing(ctx, name, "list", "list_databases", json_output=json_output)


@db_app.command("tables")
def db_tables(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    database: str | None = typer.Option(None, "--database", help="Database to inspect."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List tables of the instance database."""
    _db_listing(
        ctx, name, "tables", "list_tables", json_output=json_output, database=database or None
    )


@db_app.command("describe")
def db_describe(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    table: str = typer.Argument(..., help="Table to describe."),
    database: str | None = typer.Option(None, "--database", help="Database to inspect."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Describe the columns of a table."""
    _db_listing(
        ctx,
        name,
        "describe",
        "describe_table",
        json_output=json_output,
        extra=[table],
        database=database or None,
    )


@db_app.command("create")
def db_create(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    database: str = typer.Argument(..., help="Name of the database to create."),
) -> None:
    """Create a database (utf8mb4)."""
    _db_listing(ctx, name, "create", "create_database", json_output=False, extra=[database])


# ----------------------------------------------------------------------
# file
# ----------------------------------------------------------------------


@files_app.command("read")
def file_read(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    path: str = typer.Argument(..., help="Path relative to the web root."),
) -> None:
    """Print a file from the web container."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "file read",
        args={"name": name, "path": path},
        target={"kind": "instance", "name": name},
    ) as op:
        container = _container_for(runtime, name, op, database=False)
        result = runtime.gateway.read_file(container, path)
        if result.success:
            console.print(result.content, end="", markup=False, highlight=False)
        _finish_remote(op, result, f"Read {result.path}.")


@files_app.command("write")
def file_write(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    path: str = typer.Argument(..., help="Path relative to the web root."),
    source: Path | None = typer.Option(
        None,
        "--from",
        exists=True,
        dir_okay=False,
        help="Local file to upload (default: read stdin).",
    ),
) -> None:
    """Write a file into the web container."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "file write",
        args={"name": name, "path": path, "from": str(source) if source else "-"},
        target={"kind": "instance", "name": name},
    ) as op:
        container = _container_for(runtime, name, op, database=False)
        if source is not None:
            content = source.read_text(encoding="utf-8")
        else:
            content = typer.get_text_stream("stdin").read()
        result = runtime.gateway.write_file(container, path, content)
        if not result.success:
            _provider_error(op, result.error or "write failed")
        console.print(f"[green]Wrote {len(content)} characters to {result.path}.[/green]")
        op.success(f"Wrote {result.path}.", changed=1)


@files_app.command("ls")
def file_ls(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    path: str = typer.Argument(".", help="Directory relative to the web root."),
) -> None:
    """List a directory in the web container."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "file ls",
        args={"name": name, "path": path},
        target={"kind": "instance", "name": name},
    ) as op:
        container = _container_for(runtime, name, op, database=False)
        result = runtime.gateway.list_files(container, path)
        if result.success:
            console.print(result.content, end="", markup=False, highlight=False)
        _finish_remote(op, result, f"Listed {result.path}.")


@files_app.command("rm")
def file_rm(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    path: str = typer.Argument(..., help="File relative to the web root."),
) -> None:
    """Delete a file in the web container."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "file rm",
        args={"name": name, "path": path},
        target={"kind": "instance", "name": name},
    ) as op:
        container = _container_for(runtime, name, op, database=False)
        result = runtime.gateway.delete_file(container, path)
        if not result.success:
            _provider_error(op, result.error or "delete failed")
        console.print(f"[yellow]Removed {result.path}.[/yellow]")
        op.success(f"Removed {result.path}.", changed=1)


@files_app.command("exists")
def file_exists(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    path: str = typer.Argument(..., help="Path relative to the web root."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Report whether a file exists in the web container."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "file exists",
        args={"name": name, "path": path},
        target={"kind": "instance", "name": name},
    ) as op:
        container = _container_for(runtime, name, op, database=False)
        full = runtime.gateway.resolve_path(path)
        try:
            exists = runtime.gateway.file_exists(container, path)
        except GatewayError as exc:
            _provider_error(op, str(exc))
        if json_output:
            console.print_json(data={"path": full, "exists": exists})
        else:
            console.print(f"{full}: {'exists' if exists else 'missing'}")
        op.success(f"Checked {full}.", changed=0, context={"path": full, "exists": exists})


# ----------------------------------------------------------------------
# ports / config
# ----------------------------------------------------------------------


@ports_app.command("list")
def ports_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List instance ports and host ports in use within the scan range."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "ports list",
        args={"json": json_output},
        target={"kind": "ports"},
    ) as op:
        entries = [
            {"name": item.name, **item.ports.to_dict()} for item in runtime.lifecycle.list()
        ]
        ports_config = runtime.config.ports
        in_use = runtime.allocator.in_use(ports_config.scan_min, ports_config.scan_max)
        if json_output:
            console.print_json(data={"instances": entries, "in_use": in_use})
            op.success("Reported ports as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Instance", style="bold")
        table.add_column("HTTP")
        table.add_column("HTTPS")
        table.add_column("DB")
        if not entries:
            table.add_row("(none)", "", "", "")
        for entry in entries:
            table.add_row(
                str(entry["name"]),
                str(entry["http"]),
                "" if entry["https"] is None else str(entry["https"]),
                str(entry["db"]),
            )
        console.print(table)
        rendered = ", ".join(str(port) for port in in_use) or "(none)"
        console.print(
            f"Host ports in use ({ports_config.scan_min}-{ports_config.scan_max}): {rendered}"
        )
        op.success("Reported ports.", changed=0)


@ports_app.command("find")
def ports_find(
    ctx: typer.Context,
    start: int | None = typer.Option(
        None, "--start", min=1, max=65535, help="First port to probe."
    ),
    count: int | None = typer.Option(None, "--count", min=1, help="Number of ports."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Find free ports without reserving them."""
    runtime = _get_runtime(ctx)
    first = start or runtime.config.ports.http_start
    wanted = count or runtime.config.ports.count
    with runtime.logger.operation(
        "ports find",
        args={"start": first, "count": wanted},
        target={"kind": "ports"},
    ) as op:
        try:
            found = runtime.allocator.allocate(
                first, wanted, exclude=runtime.lifecycle.claimed_ports()
            )
        except PortsError as exc:
            _fail(op, "ports find", exc)
        if json_output:
            console.print_json(data={"ports": found})
        else:
            console.print(" ".join(str(port) for port in found))
        op.success(f"Found {len(found)} free port(s).", changed=0, context={"ports": found})


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


__all__ = ["app"]
