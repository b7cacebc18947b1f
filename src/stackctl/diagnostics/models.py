"""Data models and aggregation helpers for instance diagnostics."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..providers.endpoints import EndpointProber
    from ..providers.runtime import ContainerRuntime
    from ..stack import StackLayout


class CheckStatus(str, Enum):
    """High-level outcome for a diagnostic check."""

    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the status represents a failure."""
        return self is CheckStatus.RED

    @property
    def is_warning(self) -> bool:
        """Return ``True`` when the status represents a warning."""
        return self is CheckStatus.YELLOW


# Checks whose outcome counts towards ``overall_healthy``; disk usage is informational.
COUNTED_CHECKS: tuple[str, ...] = (
    "container_status",
    "service_health",
    "database_connection",
    "auth_service",
    "network_connectivity",
)
HEALTHY_RATIO = 0.8


@dataclass(slots=True, frozen=True)
class CheckOptions:
    """Runtime tunables for executing diagnostic checks."""

    max_concurrency: int = 6
    request_timeout: float = 5.0
    inspect_timeout: float = 10.0
    exec_timeout: float = 10.0
    disk_warn_bytes: int = 5 * 1024**3
    host: str = "localhost"


@dataclass(slots=True, frozen=True)
class CheckContext:
    """Everything a check needs to probe one instance."""

    instance: Mapping[str, Any]
    layout: StackLayout
    runtime: ContainerRuntime
    prober: EndpointProber
    options: CheckOptions

    @property
    def instance_id(self) -> str:
        """Return the probed instance id."""
        return self.layout.instance_id

    def port(self, role: str) -> int | None:
        """Return the allocated port for *role*, if any."""
        ports = self.instance.get("ports")
        if not isinstance(ports, Mapping):
            return None
        value = ports.get(role)
        return int(value) if isinstance(value, int) else None

    @property
    def base_url(self) -> str:
        """Return the gateway base URL used for HTTP probes."""
        return f"http://{self.options.host}:{self.port('gateway_http')}"


@dataclass(slots=True, frozen=True)
class CheckResult:
    """Outcome of running a check."""

    id: str
    status: CheckStatus
    message: str
    details: Mapping[str, Any] = field(default_factory=dict)
    issues: Sequence[str] = field(default_factory=tuple)
    duration_ms: int | None = None

    @property
    def healthy(self) -> bool:
        """Return ``True`` unless the check failed."""
        return not self.status.is_failure

    def to_dict(self) -> dict[str, Any]:
        """Return a serialisable representation."""
        return {
            "healthy": self.healthy,
            "status": self.status.value,
            "message": self.message,
            "details": dict(self.details),
            "issues": list(self.issues),
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, check_id: str, payload: Mapping[str, Any]) -> CheckResult:
        """Rebuild a result from :meth:`to_dict` output."""
        details = payload.get("details")
        return cls(
            id=check_id,
            status=CheckStatus(payload.get("status", CheckStatus.RED.value)),
            message=str(payload.get("message", "")),
            details=dict(details) if isinstance(details, Mapping) else {},
            issues=tuple(str(issue) for issue in payload.get("issues") or ()),
            duration_ms=payload.get("duration_ms"),
        )


@dataclass(slots=True, frozen=True)
class CheckDefinition:
    """Metadata + callable for a check."""

    id: str
    run: Callable[[CheckContext], CheckResult]


@dataclass(slots=True, frozen=True)
class CriticalIssue:
    """A diagnosed problem the repair planner can act on."""

    severity: str
    category: str
    message: str
    resolution: str

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {
            "severity": self.severity,
            "category": self.category,
            "message": self.message,
            "resolution": self.resolution,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> CriticalIssue:
        return cls(
            severity=str(payload["severity"]),
            category=str(payload["category"]),
            message=str(payload.get("message", "")),
            resolution=str(payload.get("resolution", "")),
        )


@dataclass(slots=True, frozen=True)
class Diagnostic:
    """Scored health report for one instance."""

    instance_id: str
    timestamp: str
    results: Mapping[str, CheckResult]
    overall_healthy: bool
    critical_issues: Sequence[CriticalIssue]
    health_score: int
    duration_ms: int | None = None

    @property
    def critical_count(self) -> int:
        """Return the number of critical issues."""
        return len(self.critical_issues)

    def categories(self) -> set[str]:
        """Return the categories of all critical issues."""
        return {issue.category for issue in self.critical_issues}

    def to_dict(self) -> dict[str, Any]:
        """Return a serialisable representation."""
        return {
            "instance_id": self.instance_id,
            "timestamp": self.timestamp,
            "overall_healthy": self.overall_healthy,
            "health_score": self.health_score,
            "duration_ms": self.duration_ms,
            "results": {name: result.to_dict() for name, result in self.results.items()},
            "critical_issues": [issue.to_dict() for issue in self.critical_issues],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Diagnostic:
        """Rebuild a diagnostic persisted with :meth:`to_dict`."""
        results = payload.get("results")
        issues = payload.get("critical_issues")
        return cls(
            instance_id=str(payload["instance_id"]),
            timestamp=str(payload.get("timestamp", "")),
            results={
                str(check_id): CheckResult.from_dict(str(check_id), result)
                for check_id, result in (results.items() if isinstance(results, Mapping) else ())
                if isinstance(result, Mapping)
            },
            overall_healthy=bool(payload.get("overall_healthy")),
            critical_issues=tuple(
                CriticalIssue.from_dict(issue)
                for issue in (issues if isinstance(issues, list) else ())
                if isinstance(issue, Mapping)
            ),
            health_score=int(payload.get("health_score", 0)),
            duration_ms=payload.get("duration_ms"),
        )


def extract_critical_issues(results: Mapping[str, CheckResult]) -> list[CriticalIssue]:
    """Map failing checks onto critical issues, in a fixed order."""
    issues: list[CriticalIssue] = []

    containers = results.get("container_status")
    if containers is not None and not containers.healthy:
        not_running = containers.details.get("not_running")
        count = len(not_running) if isinstance(not_running, Sequence) else 0
        issues.append(
            CriticalIssue(
                severity="critical",
                category="infrastructure",
                message=f"{count} containers are not running",
                resolution="Restart the instance containers",
            )
        )

    auth = results.get("auth_service")
    if auth is not None and not auth.healthy:
        issues.append(
            CriticalIssue(
                severity="critical",
                category="authentication",
                message="Authentication service problems",
                resolution="Restart the auth service",
            )
        )

    database = results.get("database_connection")
    if database is not None and not database.healthy:
        issues.append(
            CriticalIssue(
                severity="critical",
                category="database",
                message="Database unreachable",
                resolution="Restart the database container",
            )
        )

    services = results.get("service_health")
    if services is not None and not services.healthy:
        failing = services.details.get("failing")
        if isinstance(failing, Sequence) and failing:
            issues.append(
                CriticalIssue(
                    severity="high",
                    category="services",
                    message=f"Services with problems: {', '.join(failing)}",
                    resolution="Restart the failing services",
                )
            )

    return issues


def is_overall_healthy(results: Mapping[str, CheckResult]) -> bool:
    """Return ``True`` when at least 80% of the counted checks passed."""
    counted = [results[name] for name in COUNTED_CHECKS if name in results]
    if not counted:
        return False
    passed = sum(1 for result in counted if result.healthy)
    return passed / len(counted) >= HEALTHY_RATIO


def score(results: Iterable[CheckResult]) -> int:
    """Return the percentage of healthy results."""
    collected = list(results)
    if not collected:
        return 0
    healthy = sum(1 for result in collected if result.healthy)
    return round(healthy / len(collected) * 100)


def build_diagnostic(
    instance_id: str,
    results: Sequence[CheckResult],
    *,
    timestamp: str,
    duration_ms: int | None = None,
) -> Diagnostic:
    """Create a full Diagnostic from check results."""
    by_id = {result.id: result for result in results}
    return Diagnostic(
        instance_id=instance_id,
        timestamp=timestamp,
        results=by_id,
        overall_healthy=is_overall_healthy(by_id),
        critical_issues=tuple(extract_critical_issues(by_id)),
        health_score=score(by_id.values()),
        duration_ms=duration_ms,
    )


__all__ = [
    "COUNTED_CHECKS",
    "CheckContext",
    "CheckDefinition",
    "CheckOptions",
    "CheckResult",
    "CheckStatus",
    "CriticalIssue",
    "Diagnostic",
    "HEALTHY_RATIO",
    "build_diagnostic",
    "extract_critical_issues",
    "is_overall_healthy",
    "score",
]
