"""Tests for hosts-file management."""
from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from redaxoctl.hosts import HostsFile, HostsFileError


def test_ensure_entry_is_idempotent(tmp_path: Path) -> None:
    """Ensuring twice leaves exactly one loopback line."""
    path = tmp_path / "hosts"
    path.write_text("127.0.0.1 localhost\n", encoding="utf-8")
    hosts = HostsFile(path)

    assert hosts.ensure_entry("demo.local") is True
    assert hosts.ensure_entry("demo.local") is False

    lines = path.read_text(encoding="utf-8").splitlines()
    assert lines == ["127.0.0.1 localhost", "127.0.0.1 demo.local"]


def test_ensure_entry_collapses_duplicates(tmp_path: Path) -> None:
    """Duplicate or oddly spaced entries collapse into one canonical line."""
    path = tmp_path / "hosts"
    path.write_text("127.0.0.1\tdemo.local\n127.0.0.1   demo.local \n", encoding="utf-8")
    hosts = HostsFile(path)

    assert hosts.ensure_entry("demo.local") is True
    assert path.read_text(encoding="utf-8") == "127.0.0.1 demo.local\n"


def test_matching_is_anchored_to_the_full_name(tmp_path: Path) -> None:
    """Entries for longer names sharing a prefix are never touched."""
    path = tmp_path / "hosts"
    path.write_text(
        "127.0.0.1 foobar.local\n127.0.0.1 foo.local.bak\n# 127.0.0.1 foo.local\n",
        encoding="utf-8",
    )
    hosts = HostsFile(path)

    assert hosts.has_entry("foo.local") is False
    assert hosts.remove_entry("foo.local") is False
    hosts.ensure_entry("foo.local")
    assert hosts.remove_entry("foo.local") is True

    assert path.read_text(encoding="utf-8").splitlines() == [
        "127.0.0.1 foobar.local",
        "127.0.0.1 foo.local.bak",
        "# 127.0.0.1 foo.local",
    ]


def test_missing_file_is_created(tmp_path: Path) -> None:
    """A missing hosts file reads as empty and is created on write."""
    hosts = HostsFile(tmp_path / "hosts")

    assert hosts.read_lines() == []
    assert hosts.ensure_entry("demo.local") is True
    assert hosts.has_entry("demo.local") is True


def test_privileged_writer_receives_content_on_stdin(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """The writer command gets the file path as argument and content on stdin."""
    calls: list[tuple[list[str], str]] = []

    def fake_run(args: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        calls.append((args, str(kwargs["input"])))
        return subprocess.CompletedProcess(args, 0, stdout="", stderr="")

    monkeypatch.setattr("redaxoctl.hosts.subprocess.run", fake_run)
    path = tmp_path / "hosts"
    hosts = HostsFile(path, writer=("sudo", "tee"))

    hosts.ensure_entry("demo.local")

    assert calls == [(["sudo", "tee", str(path)], "127.0.0.1 demo.local\n")]


def test_writer_failure_raises(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """A failing writer surfaces its stderr."""

    def fake_run(args: list[str], **_: object) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(
            args, 1, stdout="", stderr="sudo: a password is required"
        )

    monkeypatch.setattr("redaxoctl.hosts.subprocess.run", fake_run)
    hosts = HostsFile(tmp_path / "hosts", writer=("sudo", "tee"))

    with pytest.raises(HostsFileError, match="password is required"):
        hosts.ensure_entry("demo.local")
