"""Subsystem checks run by the diagnostic engine."""

from __future__ import annotations

import shutil
from collections.abc import Mapping, Sequence

import jwt

from ..backups import probe_volume
from ..credentials import verify_token
from ..errors import ContainerRuntimeError
from ..providers.endpoints import EndpointError
from .models import CheckContext, CheckDefinition, CheckResult, CheckStatus

# name -> (path, send apikey header)
SERVICE_ENDPOINTS: dict[str, tuple[str, bool]] = {
    "gateway": ("/", False),
    "auth": ("/auth/v1/health", False),
    "rest": ("/rest/v1/", True),
    "studio": ("/", False),
}
NETWORK_PORTS: tuple[str, ...] = ("gateway_http", "database", "analytics")
DISK_SUBDIRS: tuple[str, ...] = ("db", "storage", "logs")


def collect_checks() -> Sequence[CheckDefinition]:
    """Return every check run by a full diagnostic, in report order."""
    return (
        CheckDefinition("container_status", check_container_status),
        CheckDefinition("service_health", check_service_health),
        CheckDefinition("database_connection", check_database_connection),
        CheckDefinition("auth_service", check_auth_service),
        CheckDefinition("disk_usage", check_disk_usage),
        CheckDefinition("network_connectivity", check_network_connectivity),
    )


def _credential(context: CheckContext, key: str) -> str:
    credentials = context.instance.get("credentials")
    if not isinstance(credentials, Mapping):
        return ""
    value = credentials.get(key)
    return value if isinstance(value, str) else ""


def _anon_key(context: CheckContext) -> str:
    return _credential(context, "anon_key")


def _is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


# ---------------------------------------------------------------------------
# Containers
# ---------------------------------------------------------------------------


def check_container_status(context: CheckContext) -> CheckResult:
    """Every expected container must exist and be running."""
    containers: dict[str, dict[str, object]] = {}
    not_running: list[str] = []
    issues: list[str] = []
    for name in context.layout.containers():
        try:
            state = context.runtime.inspect(name, timeout=context.options.inspect_timeout)
        except ContainerRuntimeError as exc:
            containers[name] = {"name": name, "exists": None, "running": False, "error": str(exc)}
            not_running.append(name)
            issues.append(f"Could not inspect {name}: {exc}")
            continue
        containers[name] = state.to_dict()
        if not state.exists:
            not_running.append(name)
            issues.append(f"Container {name} not found")
        elif not state.running:
            not_running.append(name)
            issues.append(f"Container {name} is {state.status}")

    expected = len(containers)
    details = {
        "containers": containers,
        "expected": expected,
        "running": expected - len(not_running),
        "not_running": not_running,
    }
    if not_running:
        return CheckResult(
            id="container_status",
            status=CheckStatus.RED,
            message=f"{len(not_running)} of {expected} containers are not running.",
            details=details,
            issues=tuple(issues),
        )
    return CheckResult(
        id="container_status",
        status=CheckStatus.GREEN,
        message=f"All {expected} containers are running.",
        details=details,
    )


# ---------------------------------------------------------------------------
# HTTP services
# ---------------------------------------------------------------------------


def check_service_health(context: CheckContext) -> CheckResult:
    """Each HTTP service must answer through the gateway without a 5xx."""
    services: dict[str, dict[str, object]] = {}
    failing: list[str] = []
    issues: list[str] = []
    for service, (path, needs_key) in SERVICE_ENDPOINTS.items():
        url = f"{context.base_url}{path}"
        headers = {"apikey": _anon_key(context)} if needs_key else None
        try:
            status_code = context.prober.http_status(
                url, headers=headers, timeout=context.options.request_timeout
            )
        except EndpointError as exc:
            services[service] = {"url": url, "healthy": False, "error": str(exc)}
            failing.append(service)
            issues.append(f"{service} unreachable: {exc}")
            continue
        healthy = status_code < 500
        services[service] = {"url": url, "healthy": healthy, "status_code": status_code}
        if not healthy:
            failing.append(service)
            issues.append(f"{service} answered HTTP {status_code}")

    details = {"services": services, "failing": failing}
    if failing:
        return CheckResult(
            id="service_health",
            status=CheckStatus.RED,
            message=f"Services with problems: {', '.join(failing)}.",
            details=details,
            issues=tuple(issues),
        )
    return CheckResult(
        id="service_health",
        status=CheckStatus.GREEN,
        message="All HTTP services are answering.",
        details=details,
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


def check_database_connection(context: CheckContext) -> CheckResult:
    """The database container must accept connections."""
    container = context.layout.container("db")
    details: dict[str, object] = {"container": container, "port": context.port("database")}
    try:
        completed = context.runtime.exec(
            container,
            ["pg_isready", "-U", "postgres", "-h", "localhost"],
            timeout=context.options.exec_timeout,
        )
    except ContainerRuntimeError as exc:
        details["error"] = str(exc)
        return CheckResult(
            id="database_connection",
            status=CheckStatus.RED,
            message=f"Database readiness probe failed: {exc}",
            details=details,
            issues=(str(exc),),
        )
    output = (completed.stdout or completed.stderr or "").strip()
    details["output"] = output
    details["returncode"] = completed.returncode
    if completed.returncode != 0:
        return CheckResult(
            id="database_connection",
            status=CheckStatus.RED,
            message="Database is not accepting connections.",
            details=details,
            issues=(output or f"pg_isready exited with {completed.returncode}",),
        )
    return CheckResult(
        id="database_connection",
        status=CheckStatus.GREEN,
        message="Database is accepting connections.",
        details=details,
    )


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


def check_auth_service(context: CheckContext) -> CheckResult:
    """Health endpoint, settings endpoint and stored tokens must all check out."""
    timeout = context.options.request_timeout
    details: dict[str, object] = {}
    issues: list[str] = []

    for key, path, headers in (
        ("health_endpoint", "/auth/v1/health", None),
        ("settings_endpoint", "/auth/v1/settings", {"apikey": _anon_key(context)}),
    ):
        try:
            status_code = context.prober.http_status(
                f"{context.base_url}{path}", headers=headers, timeout=timeout
            )
        except EndpointError as exc:
            details[key] = {"ok": False, "error": str(exc)}
            issues.append(f"{path} unreachable: {exc}")
            continue
        ok = _is_success(status_code)
        details[key] = {"ok": ok, "status_code": status_code}
        if not ok:
            issues.append(f"{path} answered HTTP {status_code}")

    secret = _credential(context, "jwt_secret")
    token = _anon_key(context)
    if not secret or not token:
        details["jwt"] = {"ok": False, "error": "missing signing secret or token"}
        issues.append("Signing secret or anon token missing")
    else:
        try:
            verify_token(token, secret)
        except jwt.PyJWTError as exc:
            details["jwt"] = {"ok": False, "error": str(exc)}
            issues.append(f"Stored anon token does not verify: {exc}")
        else:
            details["jwt"] = {"ok": True}

    if issues:
        return CheckResult(
            id="auth_service",
            status=CheckStatus.RED,
            message="Authentication service problems detected.",
            details=details,
            issues=tuple(issues),
        )
    return CheckResult(
        id="auth_service",
        status=CheckStatus.GREEN,
        message="Authentication service is healthy.",
        details=details,
    )


# ---------------------------------------------------------------------------
# Disk
# ---------------------------------------------------------------------------


def check_disk_usage(context: CheckContext) -> CheckResult:
    """Report the volume footprint; large volumes and low free space warn."""
    volume_path = context.layout.volume_path
    if not volume_path.is_dir():
        return CheckResult(
            id="disk_usage",
            status=CheckStatus.RED,
            message=f"Volume directory {volume_path} not found.",
            details={"volume_path": str(volume_path), "volume_exists": False},
            issues=(f"Volume directory {volume_path} not found",),
        )

    probe = probe_volume(volume_path)
    directories = probe["directories"]
    sizes = {
        name: directories[name].get("size_bytes", 0)
        for name in DISK_SUBDIRS
        if name in directories
    }
    usage = shutil.disk_usage(volume_path)
    total = usage.total or 1
    percent_free = (usage.free / total) * 100
    details = {
        "volume_path": str(volume_path),
        "volume_exists": True,
        "volume_size_bytes": probe["total_size_estimate"],
        "directory_sizes": sizes,
        "free_bytes": usage.free,
        "percent_free": round(percent_free, 2),
    }

    issues: list[str] = []
    if probe["total_size_estimate"] > context.options.disk_warn_bytes:
        issues.append("Volume size exceeds the configured warning threshold")
    if percent_free < 5:
        return CheckResult(
            id="disk_usage",
            status=CheckStatus.RED,
            message="Disk free space below 5%.",
            details=details,
            issues=tuple([*issues, "Disk free space below 5%"]),
        )
    if issues:
        return CheckResult(
            id="disk_usage",
            status=CheckStatus.YELLOW,
            message="Volume is larger than the warning threshold.",
            details=details,
            issues=tuple(issues),
        )
    return CheckResult(
        id="disk_usage",
        status=CheckStatus.GREEN,
        message="Disk usage within acceptable limits.",
        details=details,
    )


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------


def check_network_connectivity(context: CheckContext) -> CheckResult:
    """Published ports must accept TCP connections and localhost must resolve."""
    host = context.options.host
    timeout = context.options.request_timeout
    ports: dict[str, dict[str, object]] = {}
    issues: list[str] = []
    for role in NETWORK_PORTS:
        port = context.port(role)
        if port is None:
            ports[role] = {"port": None, "accessible": False}
            issues.append(f"No {role} port allocated")
            continue
        accessible = context.prober.tcp_open(host, port, timeout=timeout)
        ports[role] = {"port": port, "accessible": accessible}
        if not accessible:
            issues.append(f"Port {port} ({role}) is not accessible")

    details: dict[str, object] = {"ports": ports}
    try:
        details["dns"] = {"host": host, "resolved": True, "address": context.prober.resolve(host)}
    except EndpointError as exc:
        details["dns"] = {"host": host, "resolved": False, "error": str(exc)}
        issues.append(f"DNS lookup for {host} failed")

    if issues:
        return CheckResult(
            id="network_connectivity",
            status=CheckStatus.RED,
            message="Network connectivity problems detected.",
            details=details,
            issues=tuple(issues),
        )
    return CheckResult(
        id="network_connectivity",
        status=CheckStatus.GREEN,
        message="Published ports are reachable.",
        details=details,
    )


__all__ = [
    "NETWORK_PORTS",
    "SERVICE_ENDPOINTS",
    "check_auth_service",
    "check_container_status",
    "check_database_connection",
    "check_disk_usage",
    "check_network_connectivity",
    "check_service_health",
    "collect_checks",
]
