"""Failure-mode tests for the structured logging subsystem."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from tenantctl.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    path = logger._operations_log_path  # type: ignore[attr-defined]
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)  # type: ignore[arg-type]

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("instances list", args={"json": True}) as op:
        op.success("done", changed=0)


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger._operations_log_path  # type: ignore[attr-defined]

    original_open = Path.open

    def fail_once(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)  # type: ignore[call-overload]

    monkeypatch.setattr(Path, "open", fail_once)

    with logger.operation("instances list") as op:
        op.success("done", changed=0)

    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("instances status") as op:
        op.success("done", changed=0)


def test_operation_records_steps_and_result(tmp_path: Path) -> None:
    """Steps are persisted in order alongside the final result."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "instances create",
        args={"name": "alpha", "template": "demo"},
        target={"kind": "instance", "data": Path("/srv/tenants/alpha-demo/data")},
    ) as op:
        op.add_step("ports.allocate", status="ok")
        op.add_step("runtime.provision", status="failed", detail="compose up failed")
        op.success("Instance created.", changed=4, context={"port": 14000})

    (record,) = _records(logger)
    assert record["command"] == "instances create"
    assert record["args"] == {"name": "alpha", "template": "demo"}
    assert record["target"] == {"kind": "instance", "data": "/srv/tenants/alpha-demo/data"}
    steps = record["steps"]
    assert isinstance(steps, list)
    assert [(step["name"], step["status"]) for step in steps] == [
        ("ports.allocate", "ok"),
        ("runtime.provision", "failed"),
    ]
    assert steps[1]["detail"] == "compose up failed"
    assert "detail" not in steps[0]
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "success"
    assert result["changed"] == 4
    assert result["context"] == {"port": 14000}
    assert isinstance(record["duration_ms"], int)


def test_operation_defaults_to_success(tmp_path: Path) -> None:
    """A scope closed without an explicit result is recorded as successful."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("config show"):
        pass

    (record,) = _records(logger)
    assert record["result"]["status"] == "success"  # type: ignore[index]


def test_operation_records_unhandled_errors(tmp_path: Path) -> None:
    """Exceptions escaping the scope are logged as errors and re-raised."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(RuntimeError, match="boom"):
        with logger.operation("instances delete"):
            raise RuntimeError("boom")

    (record,) = _records(logger)
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "error"
    assert result["rc"] == 1
    assert result["errors"] == ["RuntimeError('boom')"]


def test_operation_scope_warning_sanitises_context(tmp_path: Path) -> None:
    """Warnings should be recorded with JSON-safe context values."""
    logger = StructuredLogger(tmp_path / "logs")

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    with logger.operation("instances backup", args={"path": Path("foo")}) as op:
        op.warning(
            "warned",
            warnings=("note",),
            errors=("err",),
            changed=1,
            backups=["alpha-demo.tar.gz"],
            context={"path": Path("/var/lib"), "obj": Custom()},
        )

    (record,) = _records(logger)
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "warning"
    assert result["warnings"] == ["note"]
    assert result["errors"] == ["err"]
    assert result["backups"] == ["alpha-demo.tar.gz"]
    assert result["context"] == {"path": "/var/lib", "obj": "<custom>"}


def test_operation_scope_error_defaults_error_list(tmp_path: Path) -> None:
    """Errors should default to the message when not provided."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("instances stop") as op:
        op.error("boom", errors=None, context={"value": {1, 2}})

    (record,) = _records(logger)
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "error"
    assert result["errors"] == ["boom"]
    assert result["context"] == {"value": "{1, 2}"}
