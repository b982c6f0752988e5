"""Tests for the structured operation log."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from redaxoctl.logging import OPERATIONS_LOG_NAME, StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    text = logger.operations_log.read_text(encoding="utf-8")
    return [json.loads(line) for line in text.splitlines() if line.strip()]


def test_operation_appends_one_record_per_command(tmp_path: Path) -> None:
    """Each operation produces a single JSON line with steps and result."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "instance start", args={"name": "demo"}, target={"kind": "instance"}
    ) as op:
        op.set_lock_wait_ms(7)
        op.add_step("compose.up", detail="status=running")
        op.success("Instance started.", changed=1)
    with logger.operation("instance list"):
        pass

    records = _records(logger)
    assert logger.operations_log == tmp_path / "logs" / OPERATIONS_LOG_NAME
    assert [record["command"] for record in records] == ["instance start", "instance list"]
    first = records[0]
    assert first["args"] == {"name": "demo"}
    assert first["lock_wait_ms"] == 7
    assert first["steps"][0]["name"] == "compose.up"  # type: ignore[index]
    assert first["result"]["changed"] == 1  # type: ignore[index]
    assert records[1]["result"]["message"] == "instance list completed."  # type: ignore[index]


def test_operation_records_aborts(tmp_path: Path) -> None:
    """An exception escaping the scope is logged as an error and re-raised."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValueError):
        with logger.operation("instance create"):
            raise ValueError("broken")

    result = _records(logger)[0]["result"]
    assert result["status"] == "error"  # type: ignore[index]
    assert result["rc"] == 1  # type: ignore[index]
    assert "broken" in result["message"]  # type: ignore[index,operator]


def test_warning_sanitises_context(tmp_path: Path) -> None:
    """Warnings keep their lists and stringify unknown context values."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("instance create", args={"path": Path("demo")}) as op:
        op.warning(
            "created without TLS",
            warnings=("mkcert missing",),
            changed=1,
            context={"path": Path("/srv/demo"), "ports": {8080, 8081}},
        )

    record = _records(logger)[0]
    assert record["args"] == {"path": "demo"}
    result = record["result"]
    assert result["status"] == "warning"  # type: ignore[index]
    assert result["warnings"] == ["mkcert missing"]  # type: ignore[index]
    assert result["context"]["path"] == "/srv/demo"  # type: ignore[index]
    assert isinstance(result["context"]["ports"], str)  # type: ignore[index]


def test_error_defaults_error_list(tmp_path: Path) -> None:
    """Errors default to the message when no list is given."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("db query") as op:
        op.error("container down", rc=4)

    result = _records(logger)[0]["result"]
    assert result["errors"] == ["container down"]  # type: ignore[index]
    assert result["rc"] == 4  # type: ignore[index]


def test_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """The logger turns itself off when its directory cannot be created."""
    log_dir = tmp_path / "logs"
    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)  # type: ignore[arg-type]

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("instance list") as op:
        op.success("done")


def test_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A failed write disables later writes without raising."""
    logger = StructuredLogger(tmp_path / "logs")
    original_open = Path.open

    def failing_open(self: Path, *args: object, **kwargs: object) -> object:
        if self == logger.operations_log:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)  # type: ignore[arg-type]

    monkeypatch.setattr(Path, "open", failing_open)

    with logger.operation("instance list") as op:
        op.success("done")
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("instance list") as op:
        op.success("done again")
