"""Persisted operation records, one JSON document per operation id.

``stackctl instance restart --no-wait`` returns an id that a later
``stackctl operation status`` (a different process) must resolve, so the
tracker mirrors every status change to ``<state dir>/operations/<id>.json``::

    {"recorded_at": 1760870400.0, "operation": {"operation_id": ..., "status": ...}}
"""
from __future__ import annotations

import json
import os
import re
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..errors import StackError

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


class OperationStoreError(StackError):
    """Raised when an operation record cannot be read or written."""


@dataclass(frozen=True)
class OperationStore:
    """Directory of operation records keyed by operation id."""

    root: Path

    def path_for(self, operation_id: str) -> Path:
        """Return the record path for *operation_id*."""
        if not _SAFE_ID.match(operation_id):
            raise OperationStoreError(f"Invalid operation id '{operation_id}'.")
        return self.root / f"{operation_id}.json"

    def save(self, payload: Mapping[str, Any], *, recorded_at: float) -> None:
        """Write the latest status of an operation atomically."""
        path = self.path_for(str(payload["operation_id"]))
        self.root.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(
                    {"recorded_at": recorded_at, "operation": dict(payload)},
                    handle,
                    indent=2,
                    default=str,
                )
                handle.write("\n")
            os.replace(tmp_path, path)
        except OSError as exc:
            raise OperationStoreError(f"Failed to write {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def load(self, operation_id: str) -> dict[str, Any] | None:
        """Return the stored status of *operation_id*, or ``None`` when unknown."""
        if not _SAFE_ID.match(operation_id):
            return None
        envelope = self._read(self.path_for(operation_id))
        if envelope is None:
            return None
        return dict(envelope["operation"])

    def list_records(self) -> list[dict[str, Any]]:
        """Return every stored operation, oldest first."""
        if not self.root.is_dir():
            return []
        records = []
        for path in sorted(self.root.glob("*.json")):
            envelope = self._read(path)
            if envelope is not None:
                records.append(dict(envelope["operation"]))
        return sorted(records, key=lambda record: str(record.get("started_at", "")))

    def purge(self, cutoff: float) -> int:
        """Delete finished records last written before *cutoff*; return how many."""
        if not self.root.is_dir():
            return 0
        removed = 0
        for path in self.root.glob("*.json"):
            envelope = self._read(path)
            if envelope is None or not envelope["operation"].get("completed"):
                continue
            recorded_at = envelope.get("recorded_at")
            if isinstance(recorded_at, int | float) and recorded_at < cutoff:
                path.unlink(missing_ok=True)
                removed += 1
        return removed

    @staticmethod
    def _read(path: Path) -> dict[str, Any] | None:
        try:
            envelope = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            raise OperationStoreError(f"Operation record corrupted ({path}): {exc}") from exc
        if not isinstance(envelope, dict) or not isinstance(envelope.get("operation"), dict):
            raise OperationStoreError(f"Operation record {path} has an unexpected shape.")
        return envelope


__all__ = ["OperationStore", "OperationStoreError"]
