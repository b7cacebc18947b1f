"""Per-instance run timestamps and the last diagnostic, shared across processes.

Each CLI invocation builds a fresh engine, so the cooldown and the
"last diagnostic" cache live in a small JSON document under the state
directory instead of only in memory::

    {"<instance id>": {"last_run": 1760870400.0,
                       "cached_at": 1760870401.5,
                       "diagnostic": {...}}}

Timestamps are wall-clock seconds since the epoch.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from .history import HistoryError

RUNS_FILE = "diagnostic-runs.json"


class DiagnosticRunStore:
    """JSON-file record of the last run and cached diagnostic per instance."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def _load(self) -> dict[str, dict[str, Any]]:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            raise HistoryError(f"Diagnostic run state corrupted ({self.path}): {exc}") from exc
        if not isinstance(raw, dict):
            raise HistoryError(f"Diagnostic run state {self.path} must contain a JSON object.")
        return {str(key): value for key, value in raw.items() if isinstance(value, dict)}

    def _store(self, runs: Mapping[str, Mapping[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=f".{self.path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(runs, handle, indent=2)
                handle.write("\n")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise HistoryError(f"Failed to write {self.path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def last_run(self, instance_id: str) -> float | None:
        """Return when *instance_id* was last diagnosed, if ever."""
        with self._lock:
            value = self._load().get(instance_id, {}).get("last_run")
        return float(value) if isinstance(value, int | float) else None

    def record_run(self, instance_id: str, at: float) -> None:
        """Remember that a run for *instance_id* started or finished at *at*."""
        with self._lock:
            runs = self._load()
            runs.setdefault(instance_id, {})["last_run"] = at
            self._store(runs)

    def cache(self, instance_id: str, at: float, diagnostic: Mapping[str, Any]) -> None:
        """Store *diagnostic* as the latest result for *instance_id*."""
        with self._lock:
            runs = self._load()
            entry = runs.setdefault(instance_id, {})
            entry["cached_at"] = at
            entry["diagnostic"] = dict(diagnostic)
            self._store(runs)

    def cached(self, instance_id: str) -> tuple[float, dict[str, Any]] | None:
        """Return ``(cached_at, diagnostic)`` for *instance_id*, if stored."""
        with self._lock:
            entry = self._load().get(instance_id, {})
        cached_at = entry.get("cached_at")
        diagnostic = entry.get("diagnostic")
        if not isinstance(cached_at, int | float) or not isinstance(diagnostic, dict):
            return None
        return float(cached_at), diagnostic

    def forget(self, instance_id: str) -> bool:
        """Drop everything stored for *instance_id*."""
        with self._lock:
            runs = self._load()
            removed = runs.pop(instance_id, None) is not None
            if removed:
                self._store(runs)
        return removed

    def prune(self, cutoff: float) -> int:
        """Drop cached diagnostics stored before *cutoff*; return how many."""
        removed = 0
        with self._lock:
            runs = self._load()
            for entry in runs.values():
                cached_at = entry.get("cached_at")
                if isinstance(cached_at, int | float) and cached_at < cutoff:
                    entry.pop("cached_at", None)
                    entry.pop("diagnostic", None)
                    removed += 1
            if removed:
                self._store(runs)
        return removed


__all__ = ["DiagnosticRunStore", "RUNS_FILE"]
