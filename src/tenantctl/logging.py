"""Structured operation logging for tenantctl.

Every CLI command opens an :class:`OperationScope` through
:meth:`StructuredLogger.operation`. When the scope closes a single JSON object
is appended to ``operations.jsonl`` in the configured log directory. The log is
an audit trail, never a dependency: when the directory cannot be created or a
write fails the logger disables itself and commands carry on.
"""
from __future__ import annotations

import json
import logging
import secrets
import time
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitise(value: object) -> object:
    """Return a JSON-safe rendition of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


@dataclass(slots=True)
class OperationScope:
    """Mutable record of a single command invocation."""

    command: str
    args: Mapping[str, object]
    target: Mapping[str, object]
    op_id: str
    started_at: str
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None
    _started_monotonic: float = field(default_factory=time.monotonic)

    def add_step(self, name: str, *, status: str, detail: str | None = None) -> None:
        """Record a provisioning step and its outcome."""
        step: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail is not None:
            step["detail"] = detail
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] = (),
        backups: Iterable[str] = (),
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._finish(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            errors=(),
            backups=backups,
            context=context,
            rc=0,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] = (),
        errors: Iterable[str] = (),
        changed: int = 0,
        backups: Iterable[str] = (),
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._finish(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            backups=backups,
            context=context,
            rc=0,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._finish(
            "error",
            message,
            changed=0,
            warnings=(),
            errors=list(errors) if errors is not None else [message],
            backups=(),
            context=context,
            rc=rc,
        )

    def to_record(self) -> dict[str, object]:
        """Return the JSON-serialisable record for this operation."""
        duration_ms = int((time.monotonic() - self._started_monotonic) * 1000)
        return {
            "op_id": self.op_id,
            "command": self.command,
            "args": _sanitise(dict(self.args)),
            "target": _sanitise(dict(self.target)),
            "started_at": self.started_at,
            "finished_at": _now_iso(),
            "duration_ms": duration_ms,
            "steps": self.steps,
            "result": self.result,
        }

    # ------------------------------------------------------------------
    def _finish(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        warnings: Iterable[str],
        errors: Iterable[str],
        backups: Iterable[str],
        context: Mapping[str, object] | None,
        rc: int,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": [str(item) for item in warnings],
            "errors": [str(item) for item in errors],
            "backups": [str(item) for item in backups],
            "context": _sanitise(dict(context or {})),
            "rc": rc,
        }


class StructuredLogger:
    """Append operation records to ``operations.jsonl``."""

    def __init__(self, log_dir: Path) -> None:
        self.log_dir = Path(log_dir)
        self._operations_log_path = self.log_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Operation log disabled; cannot create %s: %s", self.log_dir, exc)
            self._enabled = False

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Open a scope for *command* and persist it on exit."""
        scope = OperationScope(
            command=command,
            args=dict(args or {}),
            target=dict(target or {}),
            op_id=f"{datetime.now(tz=UTC):%Y%m%dT%H%M%S}-{secrets.token_hex(3)}",
            started_at=_now_iso(),
        )
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(f"Unhandled error: {exc}", errors=[repr(exc)])
            raise
        finally:
            if scope.result is None:
                scope.success("Operation completed.")
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
        except OSError as exc:
            LOGGER.warning("Operation log disabled after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
