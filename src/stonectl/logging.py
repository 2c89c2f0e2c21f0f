"""Structured operation logging for stonectl commands.

Each CLI operation produces a single JSON record appended to
``<logs_dir>/operations.jsonl``. A record carries the operation name, its
arguments and target, the ordered steps that ran, and the final result. The
logger never breaks a command: when the log directory cannot be created or a
write fails it disables itself and carries on silently.
"""
from __future__ import annotations

import json
import os
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

OPERATIONS_LOG_NAME = "operations.jsonl"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitise(value: object) -> object:
    """Return a JSON-safe copy of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


class OperationScope:
    """Accumulates steps and the final result for one operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise the scope for *command*."""
        self.command = command
        self.op_id = uuid.uuid4().hex[:12]
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._started = time.monotonic()
        self.started_at = _now_iso()

    def add_step(self, name: str, *, status: str, detail: str | None = None) -> None:
        """Record a named step with its outcome."""
        step: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail:
            step["detail"] = detail
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            backups=backups,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=list(warnings or [message]),
            errors=list(errors or []),
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors or [message]),
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int | None = None,
        warnings: list[str] | None = None,
        errors: list[str] | None = None,
        backups: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message}
        if changed is not None:
            result["changed"] = changed
        if warnings is not None:
            result["warnings"] = warnings
        if errors is not None:
            result["errors"] = errors
        if backups is not None:
            result["backups"] = list(backups)
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitise(context)
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON record describing this operation."""
        duration_ms = int((time.monotonic() - self._started) * 1000)
        return {
            "ts": self.started_at,
            "op_id": self.op_id,
            "command": self.command,
            "args": _sanitise(self.args),
            "target": _sanitise(self.target),
            "steps": self.steps,
            "result": self.result or {"status": "unknown"},
            "duration_ms": duration_ms,
        }


class StructuredLogger:
    """Append operation records to ``operations.jsonl`` under *log_dir*."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare the log directory, disabling the logger when it is unusable."""
        self.log_dir = Path(log_dir).expanduser()
        self._operations_log_path = self.log_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it when the block exits."""
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(f"{type(exc).__name__}: {exc}")
            raise
        finally:
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
            os.chmod(self._operations_log_path, 0o640)
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
