"""Structured operations log for stackctl.

Every mutating (and most read-only) command records a single JSON line in
``<logs_dir>/operations.jsonl`` describing what ran, against which target,
the steps it performed and how it ended. Logging is best-effort: when the
log directory cannot be prepared or a write fails, the logger disables itself
and commands continue unaffected.
"""
from __future__ import annotations

import json
import secrets
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

OPERATIONS_LOG_NAME = "operations.jsonl"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    """Return a JSON-safe rendition of *value*."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


@dataclass(slots=True)
class OperationScope:
    """Mutable record for one logged operation."""

    command: str
    args: Mapping[str, object]
    target: Mapping[str, object] | None
    op_id: str = field(default_factory=lambda: secrets.token_hex(6))
    started_at: str = field(default_factory=_now_iso)
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None
    lock_wait_ms: int | None = None
    _start: float = field(default_factory=time.perf_counter)

    def add_step(self, step_id: str, *, status: str = "success", detail: str | None = None) -> None:
        """Append a step to the operation record."""
        step: dict[str, object] = {"id": step_id, "status": status, "at": _now_iso()}
        if detail:
            step["detail"] = detail
        self.steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its locks."""
        self.lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self.result = {"status": "success", "message": message, "changed": changed}
        if context:
            self.result["context"] = _sanitize(context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self.result = {
            "status": "warning",
            "message": message,
            "changed": changed,
            "warnings": list(warnings or [message]),
        }
        if errors:
            self.result["errors"] = list(errors)
        if backups:
            self.result["backups"] = list(backups)
        if context:
            self.result["context"] = _sanitize(context)

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self.result = {
            "status": "error",
            "message": message,
            "rc": rc,
            "errors": list(errors or [message]),
        }
        if warnings:
            self.result["warnings"] = list(warnings)
        if context:
            self.result["context"] = _sanitize(context)

    def to_record(self) -> dict[str, object]:
        """Return the JSON record for this operation."""
        record: dict[str, object] = {
            "op_id": self.op_id,
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target) if self.target else None,
            "started_at": self.started_at,
            "finished_at": _now_iso(),
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
            "steps": list(self.steps),
            "result": self.result or {"status": "success", "message": "", "changed": 0},
        }
        if self.lock_wait_ms is not None:
            record["lock_wait_ms"] = self.lock_wait_ms
        return record


class StructuredLogger:
    """Append operation records to the JSONL operations log."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory, disabling logging when unavailable."""
        self._logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self._logs_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Return the path of the JSONL operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(command=command, args=dict(args or {}), target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                # typer.Exit carries an exit_code; anything else is an unhandled error.
                code = getattr(exc, "exit_code", None)
                if code in (0, None) and type(exc).__name__ == "Exit":
                    scope.success("Command exited.", changed=0)
                else:
                    scope.error(str(exc) or type(exc).__name__, rc=int(code or 1))
            self._write(scope)
            raise
        self._write(scope)

    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        try:
            line = json.dumps(scope.to_record(), sort_keys=False)
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
