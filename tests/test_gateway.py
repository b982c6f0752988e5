"""Tests for the remote execution gateway."""
from __future__ import annotations

import pytest

from redaxoctl.gateway import (
    INSTALL_STRATEGIES,
    ClientToolUnavailableError,
    ContainerNotRunningError,
    GatewayError,
    parse_query_output,
    quote_identifier,
)
from redaxoctl.models import InstanceKind, InstanceSpec
from redaxoctl.providers.docker import DockerError
from redaxoctl.topology import BASE_PATH_RULES
from tests.fakes import Harness, completed

DB = "redaxo-demo-mysql"
WEB = "redaxo-demo"


def test_parse_query_output_maps_null_and_escapes() -> None:
    """The header names the columns; NULL becomes None and escapes are decoded."""
    output = "id\tname\tnote\n1\tAlpha\tNULL\n2\tline\\nbreak\n"

    columns, rows = parse_query_output(output)

    assert columns == ["id", "name", "note"]
    assert rows == [
        {"id": "1", "name": "Alpha", "note": None},
        {"id": "2", "name": "line\nbreak", "note": None},
    ]
    assert parse_query_output("") == ([], [])


def test_quote_identifier_rejects_injection() -> None:
    """Only plain identifiers are quoted."""
    assert quote_identifier("rex_article") == "`rex_article`"
    with pytest.raises(GatewayError):
        quote_identifier("users`; DROP TABLE x")


def test_stopped_container_fails_fast(harness: Harness) -> None:
    """No exec is attempted against a container that is not running."""
    query = harness.gateway.exec_query(DB, "SELECT 1")
    command = harness.gateway.exec_command(WEB, ["ls"])
    read = harness.gateway.read_file(WEB, "index.php")

    assert query.success is False
    assert "not running" in (query.error or "")
    assert command.success is False
    assert read.success is False
    assert harness.engine.execs == []
    with pytest.raises(ContainerNotRunningError):
        harness.gateway.file_exists(WEB, "index.php")


def test_exec_query_uses_container_credentials(harness: Harness) -> None:
    """Queries run with the container's credentials and parse into rows."""
    harness.engine.running_containers.add(DB)
    harness.engine.environments[DB] = {
        "MYSQL_USER": "redaxo",
        "MYSQL_PASSWORD": "s3cret",
        "MYSQL_DATABASE": "redaxo",
    }

    result = harness.gateway.exec_query(DB, "SELECT 1")

    assert result.success is True
    assert result.rows == [{"1": "1"}]
    _, argv, _ = harness.engine.execs[-1]
    assert argv == [
        "mariadb", "--batch", "--user=redaxo", "--password=s3cret", "--database=redaxo",
        "-e", "SELECT 1",
    ]


def test_exec_query_falls_back_to_root(harness: Harness) -> None:
    """Without an application user the root password is used."""
    harness.engine.running_containers.add(DB)
    harness.engine.environments[DB] = {"MYSQL_ROOT_PASSWORD": "rootpw"}

    harness.gateway.exec_query(DB, "SELECT 1", database="other")

    _, argv, _ = harness.engine.execs[-1]
    assert "--user=root" in argv
    assert "--password=rootpw" in argv
    assert "--database=other" in argv


def test_sql_errors_are_returned_not_raised(harness: Harness) -> None:
    """A failing statement yields a failure envelope with the client's message."""
    harness.engine.running_containers.add(DB)

    result = harness.gateway.exec_query(DB, "SELEC broken")

    assert result.success is False
    assert "ERROR 1064" in (result.error or "")
    assert result.exit_code == 1


def test_sql_client_is_cached(harness: Harness) -> None:
    """The client lookup happens once per container."""
    harness.engine.running_containers.add(DB)

    harness.gateway.exec_query(DB, "SELECT 1")
    harness.gateway.exec_query(DB, "SELECT 1")

    lookups = [argv for _, argv, _ in harness.engine.execs if argv[0] == "which"]
    assert lookups == [["which", "mariadb"]]


def test_mysql_client_is_used_when_mariadb_is_missing(harness: Harness) -> None:
    """The mysql binary is accepted as a fallback client."""
    harness.engine.running_containers.add(DB)
    harness.engine.binaries[DB] = {"mysql"}

    assert harness.gateway.ensure_sql_client(DB) == "mysql"


def test_install_strategies_run_in_order(harness: Harness) -> None:
    """Strategies are tried in order until a client appears."""
    harness.engine.running_containers.add(DB)
    harness.engine.binaries[DB] = set()

    def installer(container: str, argv: list[str], stdin: str | None) -> object:
        if argv[0] == "apk" and argv[-1] == "mariadb-client":
            harness.engine.binaries[DB] = {"mariadb"}
            return completed(argv)
        if argv[0] in ("sh", "apk", "yum"):
            return completed(argv, 1, stderr="command not found")
        return None

    harness.engine.handler = installer  # type: ignore[assignment]

    assert harness.gateway.ensure_sql_client(DB) == "mariadb"

    installs = [
        argv for _, argv, _ in harness.engine.execs if argv[0] in ("sh", "apk", "yum")
    ]
    assert installs == [list(strategy.argv) for strategy in INSTALL_STRATEGIES[:3]]


def test_client_unavailable_lists_attempts(harness: Harness) -> None:
    """When every strategy fails the error names each one tried."""
    harness.engine.running_containers.add(DB)
    harness.engine.binaries[DB] = set()

    def failing(container: str, argv: list[str], stdin: str | None) -> object:
        if argv[0] == "yum":
            raise DockerError("docker exec timed out")
        if argv[0] in ("sh", "apk"):
            return completed(argv, 127, stderr="not found")
        return None

    harness.engine.handler = failing  # type: ignore[assignment]

    with pytest.raises(ClientToolUnavailableError) as excinfo:
        harness.gateway.ensure_sql_client(DB)

    assert excinfo.value.attempted == [strategy.label for strategy in INSTALL_STRATEGIES]
    assert excinfo.value.attempted[0] == "apt-get mariadb-client"
    result = harness.gateway.exec_query(DB, "SELECT 1")
    assert result.success is False
    assert "tried" in (result.error or "")


def test_schema_helpers_build_statements(harness: Harness) -> None:
    """Schema helpers quote identifiers and pick the database."""
    harness.engine.running_containers.add(DB)
    harness.engine.query_output.update(
        {
            "SHOW DATABASES": "Database\nredaxo\n",
            "SHOW TABLES": "Tables_in_redaxo\nrex_article\n",
            "DESCRIBE `rex_article`": "Field\tType\nid\tint(10)\n",
        }
    )

    assert harness.gateway.list_databases(DB).rows == [{"Database": "redaxo"}]
    assert harness.gateway.list_tables(DB).rows == [{"Tables_in_redaxo": "rex_article"}]
    described = harness.gateway.describe_table(DB, "rex_article")
    assert described.columns == ["Field", "Type"]
    created = harness.gateway.create_database(DB, "shop")
    assert created.success is False
    _, argv, _ = harness.engine.execs[-1]
    assert argv[-1].startswith("CREATE DATABASE IF NOT EXISTS `shop`")


def test_file_operations(harness: Harness) -> None:
    """Files are written, listed, read and deleted below the file root."""
    harness.engine.running_containers.add(WEB)
    gateway = harness.gateway

    written = gateway.write_file(WEB, "assets/site.css", "body {}\n")
    listing = gateway.list_files(WEB, "assets")
    read = gateway.read_file(WEB, "assets/site.css")

    assert written.success is True
    assert written.path == "/var/www/html/assets/site.css"
    assert harness.engine.execs[0][2] == "body {}\n"
    assert listing.content.splitlines() == ["site.css"]
    assert read.content == "body {}\n"
    assert gateway.file_exists(WEB, "assets/site.css") is True

    assert gateway.delete_file(WEB, "assets/site.css").success is True
    assert gateway.file_exists(WEB, "assets/site.css") is False
    missing = gateway.read_file(WEB, "assets/site.css")
    assert missing.success is False
    assert "No such file" in (missing.error or "")


def test_resolve_path_does_not_sandbox(harness: Harness) -> None:
    """Relative and absolute paths are joined onto the root without confinement."""
    gateway = harness.gateway

    assert gateway.resolve_path("") == "/var/www/html"
    assert gateway.resolve_path("../../../etc/passwd") == "/etc/passwd"
    assert gateway.resolve_path("/tmp/x") == "/tmp/x"


def test_exec_command_reports_exit_codes(harness: Harness) -> None:
    """Nonzero exits are failure envelopes carrying output and exit code."""
    harness.engine.running_containers.add(WEB)
    harness.engine.handler = lambda container, argv, stdin: completed(  # type: ignore[assignment]
        argv, 2, stdout="partial", stderr="boom"
    )

    result = harness.gateway.exec_command(WEB, ["false"])

    assert result.success is False
    assert result.output == "partial"
    assert result.error == "boom"
    assert result.exit_code == 2
    assert harness.gateway.exec_command(WEB, []).success is False


def test_console_reports_confirmed_base_path(harness: Harness) -> None:
    """A detected marker is reported as a confirmed base path."""
    harness.lifecycle.create(InstanceSpec(name="demo"), pull=False)
    harness.lifecycle.start("demo")
    harness.engine.markers[WEB] = {BASE_PATH_RULES[1].marker_path}

    outcome = harness.gateway.console("demo", "cache:clear")

    assert outcome.success is True
    assert outcome.container == WEB
    assert outcome.base_path == BASE_PATH_RULES[1].base_path
    assert outcome.base_path_confirmed is True
    _, argv, _ = harness.engine.execs[-1]
    rule = BASE_PATH_RULES[1]
    assert argv == ["php", f"{rule.base_path}/{rule.console}", "cache:clear"]


def test_console_flags_unconfirmed_base_path(harness: Harness) -> None:
    """Without a marker the fallback path is used and flagged."""
    harness.lifecycle.create(InstanceSpec(name="shop", kind=InstanceKind.CUSTOM), pull=False)
    harness.lifecycle.start("shop")

    outcome = harness.gateway.console("shop", "package:list", ["--json"])

    assert outcome.container == "shop_web"
    assert outcome.base_path_confirmed is False
    assert outcome.to_dict()["base_path_confirmed"] is False
    _, argv, _ = harness.engine.execs[-1]
    assert argv[-2:] == ["package:list", "--json"]


def test_console_fails_for_stopped_or_missing_instance(harness: Harness) -> None:
    """Stopped or unknown instances produce failure envelopes."""
    harness.lifecycle.create(InstanceSpec(name="demo"), pull=False)

    stopped = harness.gateway.console("demo", "cache:clear")
    missing = harness.gateway.console("ghost", "cache:clear")

    assert stopped.success is False
    assert "not running" in (stopped.result.error or "")
    assert missing.success is False
    assert harness.engine.execs == []


def test_connect_network(harness: Harness) -> None:
    """Network attachment is delegated to the engine."""
    result = harness.gateway.connect_network("shared", WEB)

    assert result.success is True
    assert ("network", "shared", WEB) in harness.engine.calls
