"""Check execution harness and the per-instance diagnostic engine."""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
import traceback
from collections.abc import Callable, Mapping, Sequence
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..config import DiagnosticsConfig, RuntimeConfig
from ..errors import ContainerRuntimeError, RateLimited
from ..providers.endpoints import EndpointError, EndpointProber
from ..providers.runtime import ContainerRuntime
from ..stack import StackLayout
from .checks import collect_checks
from .history import DiagnosticHistory, HistoryError
from .models import (
    CheckContext,
    CheckDefinition,
    CheckOptions,
    CheckResult,
    CheckStatus,
    Diagnostic,
    build_diagnostic,
)
from .runs import DiagnosticRunStore

if TYPE_CHECKING:
    from ..state.registry import InstanceRegistry

logger = logging.getLogger(__name__)


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds")


def _anon_key(instance: Mapping[str, Any]) -> str:
    credentials = instance.get("credentials")
    if isinstance(credentials, Mapping):
        return str(credentials.get("anon_key", ""))
    return ""


def _coerce_result(check: CheckDefinition, result: CheckResult, duration_ms: int) -> CheckResult:
    coerced = result
    if result.id != check.id:
        coerced = replace(coerced, id=check.id)
    if result.duration_ms is None:
        coerced = replace(coerced, duration_ms=duration_ms)
    return coerced


def _unexpected_failure(check: CheckDefinition, exc: Exception, duration_ms: int) -> CheckResult:
    logger.warning("Diagnostic check %s crashed: %s", check.id, exc)
    return CheckResult(
        id=check.id,
        status=CheckStatus.RED,
        message=f"Check '{check.id}' raised an unexpected error: {exc}",
        details={"exception": repr(exc), "traceback": traceback.format_exc()},
        issues=(str(exc),),
        duration_ms=duration_ms,
    )


def _run_single_check(check: CheckDefinition, context: CheckContext) -> CheckResult:
    start = time.perf_counter()
    try:
        result = check.run(context)
    except Exception as exc:  # noqa: BLE001 - checks are isolated from each other
        return _unexpected_failure(check, exc, _duration_ms(start))
    return _coerce_result(check, result, _duration_ms(start))


def run_checks(context: CheckContext, checks: Sequence[CheckDefinition]) -> list[CheckResult]:
    """Execute checks with bounded concurrency, preserving their order."""
    if not checks:
        return []

    max_workers = max(1, context.options.max_concurrency)
    if max_workers == 1:
        return [_run_single_check(check, context) for check in checks]

    results: list[CheckResult | None] = [None] * len(checks)
    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_index: dict[concurrent.futures.Future[CheckResult], int] = {}
        for index, check in enumerate(checks):
            future = executor.submit(_run_single_check, check, context)
            future_to_index[future] = index

        for future in concurrent.futures.as_completed(future_to_index):
            results[future_to_index[future]] = future.result()

    return [result for result in results if result is not None]


class DiagnosticEngine:
    """Run, rate-limit and cache diagnostics per instance.

    With a :class:`DiagnosticRunStore` attached, the cooldown and the cached
    diagnostic survive the process, so separate CLI invocations share them.
    """

    def __init__(
        self,
        registry: InstanceRegistry,
        runtime: ContainerRuntime,
        prober: EndpointProber,
        stacks_dir: Path,
        *,
        settings: DiagnosticsConfig | None = None,
        runtime_settings: RuntimeConfig | None = None,
        history: DiagnosticHistory | None = None,
        checks: Sequence[CheckDefinition] | None = None,
        runs: DiagnosticRunStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Store collaborators, tunables and the (injectable) wall clock."""
        self._registry = registry
        self._runtime = runtime
        self._prober = prober
        self._stacks_dir = stacks_dir
        self._settings = settings or DiagnosticsConfig()
        runtime_settings = runtime_settings or RuntimeConfig()
        self._options = CheckOptions(
            max_concurrency=self._settings.max_concurrency,
            request_timeout=self._settings.request_timeout,
            inspect_timeout=runtime_settings.inspect_timeout,
            exec_timeout=runtime_settings.exec_timeout,
            disk_warn_bytes=self._settings.disk_warn_bytes,
        )
        self._history = history
        self._runs = runs
        self._checks = tuple(checks) if checks is not None else tuple(collect_checks())
        self._clock = clock
        self._lock = threading.Lock()
        self._last_run: dict[str, float] = {}
        self._cache: dict[str, tuple[float, Diagnostic]] = {}

    @property
    def history(self) -> DiagnosticHistory | None:
        """Return the attached history store, if any."""
        return self._history

    def context_for(self, instance: Mapping[str, Any]) -> CheckContext:
        """Build the check context for a registry entry."""
        return CheckContext(
            instance=instance,
            layout=StackLayout.from_instance(self._stacks_dir, instance),
            runtime=self._runtime,
            prober=self._prober,
            options=self._options,
        )

    def run(
        self,
        instance_id: str,
        *,
        save_history: bool = True,
        enforce_cooldown: bool = True,
    ) -> Diagnostic:
        """Run every check against *instance_id*.

        Raises :class:`~stackctl.errors.NotFoundError` for unknown instances and
        :class:`~stackctl.errors.RateLimited` inside the cooldown window. The
        run is recorded for rate limiting even when it fails. Internal
        verification runs pass ``enforce_cooldown=False``.
        """
        instance = self._registry.require_instance(instance_id)
        with self._lock:
            now = self._clock()
            previous = self._previous_run(instance_id)
            if enforce_cooldown and previous is not None:
                elapsed = now - previous
                if elapsed < self._settings.cooldown:
                    raise RateLimited(instance_id, self._settings.cooldown - elapsed)
            self._record_run(instance_id, now)

        start = time.perf_counter()
        try:
            results = run_checks(self.context_for(instance), self._checks)
            diagnostic = build_diagnostic(
                instance_id,
                results,
                timestamp=_now_iso(),
                duration_ms=_duration_ms(start),
            )
        finally:
            with self._lock:
                self._record_run(instance_id, self._clock())

        with self._lock:
            cached_at = self._clock()
            self._cache[instance_id] = (cached_at, diagnostic)
            if self._runs is not None:
                try:
                    self._runs.cache(instance_id, cached_at, diagnostic.to_dict())
                except HistoryError as exc:
                    logger.warning("Could not persist diagnostic for %s: %s", instance_id, exc)
        if save_history and self._history is not None:
            try:
                self._history.save(diagnostic)
            except (OSError, HistoryError) as exc:
                logger.warning("Could not save diagnostic history for %s: %s", instance_id, exc)
        return diagnostic

    def last(self, instance_id: str) -> Diagnostic | None:
        """Return the cached diagnostic for *instance_id* while it is fresh.

        The in-process cache wins; the persisted copy covers diagnostics
        produced by an earlier invocation.
        """
        with self._lock:
            now = self._clock()
            cached = self._cache.get(instance_id)
            if cached is not None:
                cached_at, diagnostic = cached
                return diagnostic if now - cached_at < self._settings.cache_ttl else None
            if self._runs is None:
                return None
            try:
                stored = self._runs.cached(instance_id)
            except HistoryError as exc:
                logger.warning("Could not read cached diagnostic for %s: %s", instance_id, exc)
                return None
        if stored is None:
            return None
        cached_at, payload = stored
        if now - cached_at >= self._settings.cache_ttl:
            return None
        return Diagnostic.from_dict(payload)

    def cleanup_cache(self) -> int:
        """Drop expired cache entries; return how many in-process entries were removed."""
        with self._lock:
            now = self._clock()
            expired = [
                instance_id
                for instance_id, (cached_at, _diagnostic) in self._cache.items()
                if now - cached_at >= self._settings.cache_ttl
            ]
            for instance_id in expired:
                del self._cache[instance_id]
            if self._runs is not None:
                try:
                    self._runs.prune(now - self._settings.cache_ttl)
                except HistoryError as exc:
                    logger.warning("Could not prune persisted diagnostics: %s", exc)
        return len(expired)

    def forget(self, instance_id: str) -> None:
        """Drop cache and rate-limit state for a deleted instance."""
        with self._lock:
            self._cache.pop(instance_id, None)
            self._last_run.pop(instance_id, None)
            if self._runs is not None:
                try:
                    self._runs.forget(instance_id)
                except HistoryError as exc:
                    logger.warning(
                        "Could not drop persisted diagnostics of %s: %s", instance_id, exc
                    )

    def _previous_run(self, instance_id: str) -> float | None:
        previous = self._last_run.get(instance_id)
        if previous is not None or self._runs is None:
            return previous
        try:
            return self._runs.last_run(instance_id)
        except HistoryError as exc:
            logger.warning("Could not read last run of %s: %s", instance_id, exc)
            return None

    def _record_run(self, instance_id: str, at: float) -> None:
        self._last_run[instance_id] = at
        if self._runs is None:
            return
        try:
            self._runs.record_run(instance_id, at)
        except HistoryError as exc:
            logger.warning("Could not persist last run of %s: %s", instance_id, exc)

    def quick_check(self, instance_id: str) -> dict[str, Any]:
        """Probe containers and the critical services only.

        Not rate limited and not cached. Healthy means every container runs
        and auth, rest and the database all answer.
        """
        instance = self._registry.require_instance(instance_id)
        context = self.context_for(instance)
        running = 0
        expected = context.layout.containers()
        for name in expected:
            try:
                state = self._runtime.inspect(name, timeout=self._options.inspect_timeout)
            except ContainerRuntimeError:
                continue
            if state.running:
                running += 1

        critical_services = {
            "auth": self._http_ok(context, "/auth/v1/health", strict=True),
            "rest": self._http_ok(
                context,
                "/rest/v1/",
                headers={"apikey": _anon_key(instance)},
            ),
            "database": self._database_ok(context),
        }
        containers_ok = running == len(expected)
        return {
            "timestamp": _now_iso(),
            "instance_id": instance_id,
            "healthy": containers_ok and all(critical_services.values()),
            "containers": {"running": running, "expected": len(expected)},
            "critical_services": critical_services,
        }

    def _http_ok(
        self,
        context: CheckContext,
        path: str,
        *,
        headers: Mapping[str, str] | None = None,
        strict: bool = False,
    ) -> bool:
        try:
            status_code = self._prober.http_status(
                f"{context.base_url}{path}",
                headers=headers,
                timeout=self._options.request_timeout,
            )
        except EndpointError:
            return False
        if strict:
            return 200 <= status_code < 300
        return status_code < 500

    def _database_ok(self, context: CheckContext) -> bool:
        try:
            completed = self._runtime.exec(
                context.layout.container("db"),
                ["pg_isready", "-U", "postgres", "-h", "localhost"],
                timeout=self._options.exec_timeout,
            )
        except ContainerRuntimeError:
            return False
        return completed.returncode == 0


__all__ = ["DiagnosticEngine", "run_checks"]
