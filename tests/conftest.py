"""Shared fixtures: an in-memory container runtime and endpoint prober."""

from __future__ import annotations

import subprocess
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit

import pytest

from stackctl.backups import BackupManager, BackupsRegistry
from stackctl.config import AppConfig, RuntimeConfig, load_config
from stackctl.diagnostics import RUNS_FILE, DiagnosticEngine, DiagnosticHistory, DiagnosticRunStore
from stackctl.errors import ContainerRuntimeError
from stackctl.locking import LeaseTable, LockManager
from stackctl.manager import InstanceManager
from stackctl.orchestrator import OperationTracker, Orchestrator, SafeOperations
from stackctl.ports import PortAllocator
from stackctl.providers import ContainerState, FileProvisioner, InstanceStatusProvider
from stackctl.providers.endpoints import EndpointError
from stackctl.stack import SERVICES, container_name
from stackctl.state import InstanceRegistry
from stackctl.templates import TemplateEngine


class FakeRuntime:
    """Container runtime double tracking container state in memory.

    ``fail_next(method, exc)`` queues an exception raised by the next call to
    *method*; queue several to fail consecutive calls.
    """

    def __init__(self) -> None:
        self.available = True
        self.db_ready = True
        self.known: set[str] = set()
        self.running: set[str] = set()
        self.calls: list[tuple[str, tuple[str, ...]]] = []
        self._failures: dict[str, list[Exception]] = {}

    def fail_next(self, method: str, exc: Exception | None = None, *, times: int = 1) -> None:
        error = exc or ContainerRuntimeError(f"simulated {method} failure")
        self._failures.setdefault(method, []).extend([error] * times)

    def _maybe_fail(self, method: str) -> None:
        queued = self._failures.get(method)
        if queued:
            raise queued.pop(0)

    def _require_known(self, method: str, names: Sequence[str]) -> None:
        missing = [name for name in names if name not in self.known]
        if missing:
            raise ContainerRuntimeError(
                f"docker {method} failed (exit 1): Error response from daemon: "
                f"No such container: {missing[0]}"
            )

    def bring_up(self, instance_id: str) -> None:
        names = {container_name(service, instance_id) for service in SERVICES}
        self.known |= names
        self.running |= names

    # Protocol --------------------------------------------------------
    def is_available(self) -> bool:
        return self.available

    def list_containers(self, prefix: str | None = None) -> list[str]:
        return sorted(name for name in self.known if prefix is None or name.startswith(prefix))

    def inspect(self, name: str, *, timeout: float | None = None) -> ContainerState:
        self._maybe_fail("inspect")
        if name not in self.known:
            return ContainerState(name=name, exists=False)
        running = name in self.running
        return ContainerState(
            name=name,
            exists=True,
            running=running,
            status="running" if running else "exited",
        )

    def start(self, names: Sequence[str], *, timeout: float | None = None) -> None:
        self.calls.append(("start", tuple(names)))
        self._maybe_fail("start")
        self.known |= set(names)
        self.running |= set(names)

    def stop(self, names: Sequence[str], *, timeout: float | None = None) -> None:
        self.calls.append(("stop", tuple(names)))
        self._maybe_fail("stop")
        self._require_known("stop", names)
        self.running -= set(names)

    def kill(self, names: Sequence[str], *, timeout: float | None = None) -> None:
        self.calls.append(("kill", tuple(names)))
        self._maybe_fail("kill")
        self._require_known("kill", names)
        self.running -= set(names)

    def restart(self, names: Sequence[str], *, timeout: float | None = None) -> None:
        self.calls.append(("restart", tuple(names)))
        self._maybe_fail("restart")
        self._require_known("restart", names)
        self.running |= set(names)

    def exec(
        self,
        name: str,
        command: Sequence[str],
        *,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        self._maybe_fail("exec")
        ready = self.db_ready and name in self.running
        return subprocess.CompletedProcess(
            args=list(command),
            returncode=0 if ready else 2,
            stdout="accepting connections" if ready else "no response",
            stderr="",
        )

    def compose_up(self, manifest: Path, env_file: Path, project: str) -> None:
        self.calls.append(("compose_up", (project,)))
        self._maybe_fail("compose_up")
        self.bring_up(project.removeprefix("stack-"))

    def compose_down(self, manifest: Path, env_file: Path, project: str) -> None:
        self.calls.append(("compose_down", (project,)))
        self._maybe_fail("compose_down")
        instance_id = project.removeprefix("stack-")
        names = {container_name(service, instance_id) for service in SERVICES}
        self.known -= names
        self.running -= names


class FakeProber:
    """Endpoint prober answering from in-memory tables keyed by URL path."""

    def __init__(self) -> None:
        self.default_status = 200
        self.statuses: dict[str, int] = {}
        self.unreachable: set[str] = set()
        self.closed_ports: set[int] = set()
        self.dns_ok = True
        self.requests: list[tuple[str, dict[str, str] | None]] = []

    def http_status(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        timeout: float,
    ) -> int:
        path = urlsplit(url).path or "/"
        self.requests.append((url, dict(headers) if headers else None))
        if path in self.unreachable:
            raise EndpointError(f"connection refused: {url}")
        return self.statuses.get(path, self.default_status)

    def tcp_open(self, host: str, port: int, *, timeout: float) -> bool:
        return port not in self.closed_ports

    def resolve(self, host: str) -> str:
        if not self.dns_ok:
            raise EndpointError(f"cannot resolve {host}")
        return "127.0.0.1"


class FakeClock:
    """Monotonic clock advanced explicitly by tests."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class Stack:
    """Every collaborator wired together against fakes."""

    config: AppConfig
    registry: InstanceRegistry
    ports: PortAllocator
    runtime: FakeRuntime
    prober: FakeProber
    clock: FakeClock
    backups: BackupManager
    diagnostics: DiagnosticEngine
    manager: InstanceManager
    operations: SafeOperations
    tracker: OperationTracker
    orchestrator: Orchestrator

    def create(self, name: str = "demo") -> dict[str, object]:
        return self.manager.create(name)


@pytest.fixture()
def app_config(tmp_path: Path) -> AppConfig:
    """Configuration rooted entirely under ``tmp_path``."""
    return load_config(
        config_file=tmp_path / "absent.yml",
        env={},
        overrides={
            "state_dir": str(tmp_path / "state"),
            "logs_dir": str(tmp_path / "logs"),
            "runtime_dir": str(tmp_path / "run"),
            "stacks_dir": str(tmp_path / "stacks"),
            "max_instances": 5,
        },
    )


@pytest.fixture()
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture()
def fake_prober() -> FakeProber:
    return FakeProber()


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def stack(
    app_config: AppConfig,
    fake_runtime: FakeRuntime,
    fake_prober: FakeProber,
    fake_clock: FakeClock,
) -> Iterator[Stack]:
    """A fully wired control plane whose runtime and network are simulated."""
    clock = fake_clock
    locks = LockManager(app_config.runtime_dir, default_timeout=2.0)
    registry = InstanceRegistry(app_config.registry_dir, locks=locks)
    registry.ensure_root()
    ports = PortAllocator(app_config.ports.ranges, max_attempts=app_config.ports.max_attempts)
    runtime_settings = RuntimeConfig(health_wait=0.05)
    backups = BackupManager(
        registry,
        BackupsRegistry(app_config.backups.root, app_config.backups.retention),
        fake_runtime,
        app_config.stacks_dir,
    )
    diagnostics = DiagnosticEngine(
        registry,
        fake_runtime,
        fake_prober,
        app_config.stacks_dir,
        settings=app_config.diagnostics,
        runtime_settings=runtime_settings,
        history=DiagnosticHistory(app_config.state_dir / "history.json"),
        runs=DiagnosticRunStore(app_config.state_dir / RUNS_FILE),
        clock=clock,
    )
    manager = InstanceManager(
        app_config,
        registry,
        ports,
        FileProvisioner(TemplateEngine.with_overrides(None), fake_runtime, app_config.stacks_dir),
        InstanceStatusProvider(fake_runtime, timeout=1.0),
        backups=backups.backups,
        diagnostics=diagnostics,
    )
    operations = SafeOperations(
        registry,
        backups,
        diagnostics,
        fake_runtime,
        app_config.stacks_dir,
        runtime_settings=runtime_settings,
        leases=LeaseTable(),
        sleep=lambda _seconds: None,
        poll_interval=0.0,
    )
    tracker = OperationTracker(max_workers=2, wait_timeout=5.0, retention=60.0)
    stack = Stack(
        config=app_config,
        registry=registry,
        ports=ports,
        runtime=fake_runtime,
        prober=fake_prober,
        clock=clock,
        backups=backups,
        diagnostics=diagnostics,
        manager=manager,
        operations=operations,
        tracker=tracker,
        orchestrator=Orchestrator(operations, tracker),
    )
    yield stack
    tracker.shutdown(wait=True)
