"""Tests for the per-instance directory store."""
from __future__ import annotations

from pathlib import Path

import pytest

from redaxoctl.state.store import (
    DESCRIPTOR_NAME,
    ENV_NAME,
    SCRIPT_NAME,
    InstanceStore,
    InstanceStoreError,
    parse_env,
)


def test_parse_env_skips_comments_and_strips_quotes() -> None:
    """Comments, blanks and malformed lines are ignored; quotes are stripped."""
    text = (
        "# REDAXO Instance: demo\n"
        "\n"
        "HTTP_PORT=8080\n"
        "DB_PASSWORD='s3cret'\n"
        'BASE_URL="http://localhost:8080"\n'
        "EMPTY=\n"
        "not a pair\n"
        "URL=http://x/?a=b\n"
    )

    assert parse_env(text) == {
        "HTTP_PORT": "8080",
        "DB_PASSWORD": "s3cret",
        "BASE_URL": "http://localhost:8080",
        "EMPTY": "",
        "URL": "http://x/?a=b",
    }


def test_create_directory_refuses_existing(tmp_path: Path) -> None:
    """Creating an instance directory twice fails."""
    store = InstanceStore(tmp_path / "instances")

    path = store.create_directory("demo", ("data/redaxo", "ssl"))

    assert (path / "data" / "redaxo").is_dir()
    assert store.exists("demo")
    with pytest.raises(InstanceStoreError, match="already exists"):
        store.create_directory("demo")


def test_write_text_reports_changes_and_mode(tmp_path: Path) -> None:
    """Writes are skipped when content is unchanged and honour the mode."""
    store = InstanceStore(tmp_path)
    store.create_directory("demo")

    assert store.write_text("demo", SCRIPT_NAME, "#!/bin/bash\n", mode=0o755) is True
    assert store.write_text("demo", SCRIPT_NAME, "#!/bin/bash\n", mode=0o755) is False
    script = store.file_for("demo", SCRIPT_NAME)
    assert oct(script.stat().st_mode & 0o777) == "0o755"


def test_write_text_rejects_directory_in_place_of_file(tmp_path: Path) -> None:
    """A directory where a file belongs blocks the write until repaired."""
    store = InstanceStore(tmp_path)
    store.create_directory("demo")
    store.file_for("demo", SCRIPT_NAME).mkdir()

    with pytest.raises(InstanceStoreError, match="run repair"):
        store.write_text("demo", SCRIPT_NAME, "#!/bin/bash\n")

    assert store.replace_misplaced_directories("demo", (SCRIPT_NAME, ENV_NAME)) == [SCRIPT_NAME]
    assert store.write_text("demo", SCRIPT_NAME, "#!/bin/bash\n") is True


def test_list_names_and_remove(tmp_path: Path) -> None:
    """Listing is sorted and ignores hidden entries and files."""
    store = InstanceStore(tmp_path)
    for name in ("beta", "alpha"):
        store.create_directory(name)
    (tmp_path / ".cache").mkdir()
    (tmp_path / "notes.txt").write_text("x")

    assert store.list_names() == ["alpha", "beta"]
    assert store.read_descriptor("alpha") is None
    assert store.has_descriptor("alpha") is False
    assert store.remove("alpha") is True
    assert store.remove("alpha") is False
    assert store.list_names() == ["beta"]


def test_missing_root_lists_nothing(tmp_path: Path) -> None:
    """A store whose root does not exist yet is simply empty."""
    store = InstanceStore(tmp_path / "absent")

    assert store.list_names() == []
    assert store.read_env("demo") == {}
    store.ensure_root()
    assert (tmp_path / "absent").is_dir()
    assert not store.file_for("demo", DESCRIPTOR_NAME).exists()
