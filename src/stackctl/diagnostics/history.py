"""Persistent diagnostic history with trend and uptime statistics."""

from __future__ import annotations

import json
import os
import tempfile
import threading
import uuid
from collections import Counter
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from ..errors import StackError
from .models import Diagnostic

HISTORY_FILE = "diagnostic-history.json"
TREND_THRESHOLD = 10
UPTIME_HEALTHY_RATIO = 0.7
TOP_ISSUES = 10


class HistoryError(StackError):
    """Raised when the history document cannot be read or written."""


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def _parse_timestamp(value: object) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def entry_score(entry: Mapping[str, Any]) -> float:
    """Return the percentage of healthy checks recorded in a history entry."""
    results = entry.get("results")
    if not isinstance(results, Mapping) or not results:
        return 0.0
    healthy = sum(
        1 for result in results.values() if isinstance(result, Mapping) and result.get("healthy")
    )
    return healthy / len(results) * 100


class DiagnosticHistory:
    """JSON-file history of diagnostics, newest first, capped per instance."""

    def __init__(
        self,
        path: Path,
        *,
        limit: int = 100,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.path = path
        self.limit = limit
        self._now = now
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------
    def _load(self) -> dict[str, list[dict[str, Any]]]:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            raise HistoryError(f"Diagnostic history corrupted ({self.path}): {exc}") from exc
        if not isinstance(raw, dict):
            raise HistoryError(f"Diagnostic history {self.path} must contain a JSON object.")
        return {
            str(key): [entry for entry in value if isinstance(entry, dict)]
            for key, value in raw.items()
            if isinstance(value, list)
        }

    def _store(self, history: Mapping[str, list[dict[str, Any]]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=f".{self.path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(history, handle, indent=2)
                handle.write("\n")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise HistoryError(f"Failed to write {self.path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def save(self, diagnostic: Diagnostic | Mapping[str, Any]) -> dict[str, Any]:
        """Prepend *diagnostic* to its instance's history and return the entry."""
        payload = diagnostic.to_dict() if isinstance(diagnostic, Diagnostic) else dict(diagnostic)
        instance_id = str(payload.get("instance_id", ""))
        entry = {
            **payload,
            "id": uuid.uuid4().hex[:8],
            "saved_at": self._now().isoformat(timespec="seconds"),
        }
        with self._lock:
            history = self._load()
            entries = history.setdefault(instance_id, [])
            entries.insert(0, entry)
            del entries[self.limit :]
            self._store(history)
        return entry

    def get(self, instance_id: str, limit: int = 10) -> list[dict[str, Any]]:
        """Return up to *limit* entries for *instance_id*, newest first."""
        with self._lock:
            return self._load().get(instance_id, [])[:limit]

    def forget(self, instance_id: str) -> int:
        """Drop every entry for *instance_id*; return how many were removed."""
        with self._lock:
            history = self._load()
            removed = history.pop(instance_id, [])
            if removed:
                self._store(history)
        return len(removed)

    def stats(self, instance_id: str, days: int = 7) -> dict[str, Any]:
        """Summarise the last *days* of history for *instance_id*."""
        cutoff = self._now() - timedelta(days=days)
        with self._lock:
            entries = self._load().get(instance_id, [])
        recent = [
            entry
            for entry in entries
            if (moment := _parse_timestamp(entry.get("timestamp"))) is not None and moment > cutoff
        ]
        return {
            "instance_id": instance_id,
            "period_days": days,
            "total_diagnostics": len(recent),
            "health_trend": health_trend(recent),
            "most_common_issues": most_common_issues(recent),
            "uptime": uptime(recent),
            "generated_at": self._now().isoformat(timespec="seconds"),
        }

    def clean(self, max_age_days: int = 30) -> int:
        """Remove entries older than *max_age_days*; return how many were removed."""
        cutoff = self._now() - timedelta(days=max_age_days)
        removed = 0
        with self._lock:
            history = self._load()
            for instance_id, entries in history.items():
                kept = [
                    entry
                    for entry in entries
                    if (moment := _parse_timestamp(entry.get("timestamp"))) is not None
                    and moment > cutoff
                ]
                removed += len(entries) - len(kept)
                history[instance_id] = kept
            if removed:
                self._store(history)
        return removed


def health_trend(entries: list[Mapping[str, Any]]) -> dict[str, Any]:
    """Compare the oldest and newest scores of *entries* (newest first)."""
    if len(entries) < 2:
        return {"trend": "insufficient_data"}
    scores = [entry_score(entry) for entry in reversed(entries)]
    change = scores[-1] - scores[0]
    trend = "stable"
    if change > TREND_THRESHOLD:
        trend = "improving"
    elif change < -TREND_THRESHOLD:
        trend = "declining"
    return {
        "trend": trend,
        "current_score": round(scores[-1]),
        "previous_score": round(scores[0]),
        "change": round(change),
        "scores": [round(value, 1) for value in scores],
    }


def most_common_issues(entries: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Return the most frequent ``check: issue`` strings across *entries*."""
    counter: Counter[str] = Counter()
    for entry in entries:
        results = entry.get("results")
        if not isinstance(results, Mapping):
            continue
        for check, result in results.items():
            if not isinstance(result, Mapping):
                continue
            for issue in result.get("issues") or ():
                counter[f"{check}: {issue}"] += 1
    return [{"issue": issue, "count": count} for issue, count in counter.most_common(TOP_ISSUES)]


def uptime(entries: list[Mapping[str, Any]]) -> dict[str, Any]:
    """Return the share of runs in which at least 70% of checks were healthy."""
    if not entries:
        return {"uptime": 0, "healthy_diagnostics": 0, "total_diagnostics": 0}
    healthy = sum(1 for entry in entries if entry_score(entry) >= UPTIME_HEALTHY_RATIO * 100)
    return {
        "uptime": round(healthy / len(entries) * 100),
        "healthy_diagnostics": healthy,
        "total_diagnostics": len(entries),
    }


__all__ = [
    "DiagnosticHistory",
    "HISTORY_FILE",
    "HistoryError",
    "entry_score",
    "health_trend",
    "most_common_issues",
    "uptime",
]
