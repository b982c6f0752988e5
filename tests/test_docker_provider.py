"""Tests for the docker provider wrapper."""
from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from redaxoctl.providers.docker import DockerError, DockerProvider, parse_published_ports


class Recorder:
    """Capture subprocess.run invocations and replay scripted results."""

    def __init__(self, *results: tuple[int, str, str]) -> None:
        self.results = list(results) or [(0, "", "")]
        self.calls: list[tuple[list[str], dict[str, object]]] = []

    def __call__(self, args: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        self.calls.append((list(args), kwargs))
        code, stdout, stderr = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        return subprocess.CompletedProcess(args, code, stdout=stdout, stderr=stderr)


def _install(monkeypatch: pytest.MonkeyPatch, recorder: Recorder) -> None:
    monkeypatch.setattr("redaxoctl.providers.docker.subprocess.run", recorder)


def test_parse_published_ports_handles_ranges_and_ipv6() -> None:
    """Host ports, ranges and IPv6 bindings are all extracted."""
    output = (
        "0.0.0.0:8080->80/tcp, :::8080->80/tcp\n"
        "0.0.0.0:3307->3306/tcp\n"
        "\n"
        "0.0.0.0:9100-9102->9100-9102/tcp\n"
        "3306/tcp\n"
    )

    assert parse_published_ports(output) == {8080, 3307, 9100, 9101, 9102}


def test_compose_commands_run_in_project_directory(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Compose subcommands run with the project directory as cwd."""
    recorder = Recorder()
    _install(monkeypatch, recorder)
    provider = DockerProvider(docker_bin="docker")

    provider.compose_up(tmp_path)
    provider.compose_down(tmp_path, volumes=True)
    provider.compose_build(tmp_path, no_cache=True)
    provider.compose_recreate(tmp_path, start=False)

    argvs = [call[0] for call in recorder.calls]
    assert argvs == [
        ["docker", "compose", "up", "-d"],
        ["docker", "compose", "down", "-v"],
        ["docker", "compose", "build", "--no-cache"],
        ["docker", "compose", "up", "--no-start", "--force-recreate"],
    ]
    assert all(call[1]["cwd"] == str(tmp_path) for call in recorder.calls)


def test_compose_failure_raises_with_stderr(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A nonzero compose exit raises DockerError carrying the return code."""
    _install(monkeypatch, Recorder((1, "", "no such service: web")))

    with pytest.raises(DockerError, match="no such service") as excinfo:
        DockerProvider().compose_pull(tmp_path)

    assert excinfo.value.returncode == 1
    assert excinfo.value.command[:3] == ["docker", "compose", "pull"]


def test_missing_binary_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    """A missing docker binary becomes a DockerError without a return code."""

    def missing(args: list[str], **_: object) -> subprocess.CompletedProcess[str]:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr("redaxoctl.providers.docker.subprocess.run", missing)

    with pytest.raises(DockerError, match="not found") as excinfo:
        DockerProvider(docker_bin="docker-missing").version()
    assert excinfo.value.returncode is None


def test_timeout_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    """Timeouts are reported as DockerError."""

    def slow(args: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        raise subprocess.TimeoutExpired(args, 5)

    monkeypatch.setattr("redaxoctl.providers.docker.subprocess.run", slow)

    with pytest.raises(DockerError, match="timed out"):
        DockerProvider().exec("redaxo-demo", ["sleep", "60"], timeout=5)


def test_running_services_parses_lines(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Running services are read from compose ps output."""
    _install(monkeypatch, Recorder((0, "redaxo\nmysql\n\n", "")))

    assert DockerProvider().running_services(tmp_path) == ["redaxo", "mysql"]


def test_exec_builds_flags_and_passes_stdin(monkeypatch: pytest.MonkeyPatch) -> None:
    """exec adds -i for stdin plus user and workdir flags, and never raises on exit codes."""
    recorder = Recorder((3, "", "boom"))
    _install(monkeypatch, recorder)

    result = DockerProvider().exec(
        "redaxo-demo", ["cat"], stdin="data", user="www-data", workdir="/var/www/html"
    )

    args, kwargs = recorder.calls[0]
    assert args == [
        "docker", "exec", "-i", "--user", "www-data", "--workdir", "/var/www/html",
        "redaxo-demo", "cat",
    ]
    assert kwargs["input"] == "data"
    assert result.returncode == 3


def test_is_running_and_container_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Inspect output drives is_running and container_env."""
    _install(
        monkeypatch,
        Recorder(
            (0, "true\n", ""),
            (1, "", "Error: No such container: ghost"),
            (0, '["MYSQL_USER=redaxo","MYSQL_PASSWORD=a=b","PATH=/usr/bin"]\n', ""),
        ),
    )
    provider = DockerProvider()

    assert provider.is_running("redaxo-demo") is True
    assert provider.is_running("ghost") is False
    assert provider.container_env("redaxo-demo-mysql") == {
        "MYSQL_USER": "redaxo",
        "MYSQL_PASSWORD": "a=b",
        "PATH": "/usr/bin",
    }


def test_network_connect_treats_existing_attachment_as_noop(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """An 'already exists' failure means the container was attached already."""
    _install(
        monkeypatch,
        Recorder(
            (0, "", ""),
            (1, "", "Error response from daemon: endpoint with name x already exists"),
            (1, "", "Error response from daemon: network shared not found"),
        ),
    )
    provider = DockerProvider()

    assert provider.network_connect("shared", "redaxo-demo") is True
    assert provider.network_connect("shared", "redaxo-demo") is False
    with pytest.raises(DockerError, match="network shared not found"):
        provider.network_connect("shared", "redaxo-demo")
