"""Docker CLI provider for managing instance containers."""
from __future__ import annotations

import json
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from ..errors import ContainerRuntimeError, OperationTimeout


@dataclass(frozen=True)
class ContainerState:
    """Point-in-time state of one container."""

    name: str
    exists: bool
    running: bool = False
    status: str = "missing"
    image: str | None = None
    health: str | None = None
    mounts: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "exists": self.exists,
            "running": self.running,
            "status": self.status,
            "image": self.image,
            "health": self.health,
            "mounts": list(self.mounts),
        }


class ContainerRuntime(Protocol):
    """Primitives the control plane needs from a container runtime."""

    def is_available(self) -> bool:
        """Return ``True`` when the runtime daemon answers."""
        ...

    def list_containers(self, prefix: str | None = None) -> list[str]:
        """Return container names, optionally filtered by *prefix*."""
        ...

    def inspect(self, name: str, *, timeout: float | None = None) -> ContainerState:
        """Return the state of container *name*."""
        ...

    def start(self, names: Sequence[str], *, timeout: float | None = None) -> None:
        """Start the named containers."""
        ...

    def stop(self, names: Sequence[str], *, timeout: float | None = None) -> None:
        """Gracefully stop the named containers."""
        ...

    def kill(self, names: Sequence[str], *, timeout: float | None = None) -> None:
        """Force-stop the named containers."""
        ...

    def restart(self, names: Sequence[str], *, timeout: float | None = None) -> None:
        """Restart the named containers."""
        ...

    def exec(
        self,
        name: str,
        command: Sequence[str],
        *,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run *command* inside container *name* and capture its output."""
        ...

    def compose_up(self, manifest: Path, env_file: Path, project: str) -> None:
        """Create and start a stack from its manifest."""
        ...

    def compose_down(self, manifest: Path, env_file: Path, project: str) -> None:
        """Stop and remove a stack's containers."""
        ...


@dataclass(slots=True)
class DockerRuntime:
    """Drive the docker CLI with bounded, timeout-guarded calls."""

    docker_bin: str = "docker"
    inspect_timeout: float = 10.0
    stop_timeout: float = 30.0
    kill_timeout: float = 15.0
    start_timeout: float = 60.0
    exec_timeout: float = 10.0

    def is_available(self) -> bool:
        """Return ``True`` when ``docker version`` reaches the daemon."""
        try:
            self._docker(
                ["version", "--format", "{{.Server.Version}}"],
                timeout=self.inspect_timeout,
            )
        except ContainerRuntimeError:
            return False
        return True

    def list_containers(self, prefix: str | None = None) -> list[str]:
        """Return all container names (running or not), filtered by *prefix*."""
        result = self._docker(
            ["ps", "-a", "--format", "{{.Names}}"],
            timeout=self.inspect_timeout,
        )
        names = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if prefix:
            names = [name for name in names if name.startswith(prefix)]
        return names

    def inspect(self, name: str, *, timeout: float | None = None) -> ContainerState:
        """Return the state of *name*; a missing container is not an error."""
        result = self._docker(
            ["inspect", name],
            timeout=timeout or self.inspect_timeout,
            check=False,
        )
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "").lower()
            if "no such" in message:
                return ContainerState(name=name, exists=False)
            raise ContainerRuntimeError(
                f"docker inspect {name} failed (exit {result.returncode}): "
                f"{(result.stderr or '').strip() or 'no output'}"
            )
        return _parse_inspect(name, result.stdout)

    def start(self, names: Sequence[str], *, timeout: float | None = None) -> None:
        """Start the named containers."""
        if names:
            self._docker(["start", *names], timeout=timeout or self.start_timeout)

    def stop(self, names: Sequence[str], *, timeout: float | None = None) -> None:
        """Stop the named containers, giving them *timeout* seconds to exit."""
        if not names:
            return
        grace = timeout or self.stop_timeout
        # docker itself kills after -t seconds; the subprocess budget adds a margin.
        self._docker(["stop", "-t", str(int(grace)), *names], timeout=grace + 5)

    def kill(self, names: Sequence[str], *, timeout: float | None = None) -> None:
        """Kill the named containers."""
        if names:
            self._docker(["kill", *names], timeout=timeout or self.kill_timeout)

    def restart(self, names: Sequence[str], *, timeout: float | None = None) -> None:
        """Restart the named containers."""
        if not names:
            return
        grace = timeout or self.stop_timeout
        self._docker(["restart", "-t", str(int(grace)), *names], timeout=grace + 5)

    def exec(
        self,
        name: str,
        command: Sequence[str],
        *,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run *command* inside *name*; non-zero exits are returned, not raised."""
        return self._docker(
            ["exec", name, *command],
            timeout=timeout or self.exec_timeout,
            check=False,
        )

    def compose_up(self, manifest: Path, env_file: Path, project: str) -> None:
        """Run ``docker compose up -d`` for a stack."""
        self._docker(
            [
                "compose",
                "-f",
                str(manifest),
                "--env-file",
                str(env_file),
                "-p",
                project,
                "up",
                "-d",
            ],
            timeout=self.start_timeout * 5,
        )

    def compose_down(self, manifest: Path, env_file: Path, project: str) -> None:
        """Run ``docker compose down`` for a stack."""
        self._docker(
            ["compose", "-f", str(manifest), "--env-file", str(env_file), "-p", project, "down"],
            timeout=self.stop_timeout * 3,
        )

    # ------------------------------------------------------------------
    def _docker(
        self,
        args: Sequence[str],
        *,
        timeout: float,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.docker_bin, *args]
        error_prefix = f"{self.docker_bin} {args[0]}" if args else self.docker_bin
        return self._run_command(command, check=check, error_prefix=error_prefix, timeout=timeout)

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        timeout: float,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603
                list(args),
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            raise ContainerRuntimeError(f"{args[0]} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise OperationTimeout(
                f"{error_prefix} timed out after {timeout:.0f}s",
                timeout=timeout,
            ) from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise ContainerRuntimeError(
                f"{error_prefix} failed (exit {result.returncode}): {message}"
            )
        return result


def _parse_inspect(name: str, output: str) -> ContainerState:
    try:
        payload = json.loads(output or "[]")
    except json.JSONDecodeError as exc:
        raise ContainerRuntimeError(
            f"Unparseable docker inspect output for {name}: {exc}"
        ) from exc
    if isinstance(payload, list):
        payload = payload[0] if payload else {}
    if not isinstance(payload, Mapping) or not payload:
        return ContainerState(name=name, exists=False)

    state = payload.get("State")
    state = state if isinstance(state, Mapping) else {}
    health = state.get("Health")
    config = payload.get("Config")
    mounts_raw = payload.get("Mounts")
    mounts: list[str] = []
    if isinstance(mounts_raw, list):
        for mount in mounts_raw:
            if isinstance(mount, Mapping):
                source = mount.get("Source") or mount.get("Name")
                destination = mount.get("Destination")
                mounts.append(f"{source}:{destination}")
    return ContainerState(
        name=name,
        exists=True,
        running=bool(state.get("Running")),
        status=str(state.get("Status") or "unknown"),
        image=str(config.get("Image")) if isinstance(config, Mapping) else None,
        health=str(health.get("Status")) if isinstance(health, Mapping) else None,
        mounts=tuple(mounts),
    )


def stop_with_escalation(
    runtime: ContainerRuntime,
    names: Sequence[str],
    *,
    timeout: float,
    kill_timeout: float | None = None,
) -> str:
    """Stop *names* gracefully, killing them if the graceful stop times out.

    Returns ``"stopped"`` or ``"killed"``; an empty *names* is a no-op.
    """
    if not names:
        return "stopped"
    try:
        runtime.stop(names, timeout=timeout)
    except OperationTimeout:
        runtime.kill(names, timeout=kill_timeout)
        return "killed"
    return "stopped"


def existing_containers(
    runtime: ContainerRuntime,
    names: Sequence[str],
    *,
    timeout: float | None = None,
) -> list[str]:
    """Return the subset of *names* the runtime knows about, in order.

    docker rejects a whole stop or restart call when one name is missing, so
    callers narrow their targets first.
    """
    return [name for name in names if runtime.inspect(name, timeout=timeout).exists]


def snapshot_containers(
    runtime: ContainerRuntime,
    names: Sequence[str],
    *,
    timeout: float | None = None,
) -> dict[str, dict[str, object]]:
    """Return ``name -> state`` for *names*, recording probe errors per container."""
    snapshot: dict[str, dict[str, object]] = {}
    for name in names:
        try:
            snapshot[name] = runtime.inspect(name, timeout=timeout).to_dict()
        except ContainerRuntimeError as exc:
            snapshot[name] = {"name": name, "exists": None, "running": False, "error": str(exc)}
    return snapshot


__all__ = [
    "ContainerRuntime",
    "ContainerState",
    "DockerRuntime",
    "existing_containers",
    "snapshot_containers",
    "stop_with_escalation",
]
