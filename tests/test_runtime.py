"""Tests covering the docker CLI provider and instance status probing."""
from __future__ import annotations

import json
import subprocess
from typing import TYPE_CHECKING

import pytest

from stackctl.errors import ContainerRuntimeError, OperationTimeout
from stackctl.providers import (
    DockerRuntime,
    InstanceStatusProvider,
    existing_containers,
    snapshot_containers,
    stop_with_escalation,
)
from stackctl.stack import container_name

if TYPE_CHECKING:
    from conftest import FakeRuntime


class _Result:
    def __init__(self, stdout: str = "", stderr: str = "", returncode: int = 0) -> None:
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = returncode


def _inspect_payload(running: bool) -> str:
    return json.dumps(
        [
            {
                "State": {
                    "Running": running,
                    "Status": "running" if running else "exited",
                    "Health": {"Status": "healthy"},
                },
                "Config": {"Image": "supabase/postgres:15.1.0.147"},
                "Mounts": [{"Source": "/srv/volumes/db", "Destination": "/var/lib/postgresql"}],
            }
        ]
    )


def test_inspect_parses_state(monkeypatch: pytest.MonkeyPatch) -> None:
    """inspect should map docker's JSON onto ContainerState."""
    seen: list[list[str]] = []

    def _run(args: list[str], **kwargs: object) -> _Result:
        seen.append(args)
        return _Result(stdout=_inspect_payload(True))

    monkeypatch.setattr("subprocess.run", _run)

    state = DockerRuntime().inspect("supabase-db-a1")

    assert seen == [["docker", "inspect", "supabase-db-a1"]]
    assert state.exists is True
    assert state.running is True
    assert state.health == "healthy"
    assert state.image == "supabase/postgres:15.1.0.147"
    assert state.mounts == ("/srv/volumes/db:/var/lib/postgresql",)


def test_inspect_missing_container(monkeypatch: pytest.MonkeyPatch) -> None:
    """A 'no such object' answer is a missing container, not an error."""
    monkeypatch.setattr(
        "subprocess.run",
        lambda *args, **kwargs: _Result(stderr="Error: No such object: x", returncode=1),
    )

    state = DockerRuntime().inspect("x")

    assert state.exists is False
    assert state.status == "missing"


def test_inspect_other_failures_raise(monkeypatch: pytest.MonkeyPatch) -> None:
    """Daemon errors surface as ContainerRuntimeError."""
    monkeypatch.setattr(
        "subprocess.run",
        lambda *args, **kwargs: _Result(stderr="Cannot connect to the daemon", returncode=1),
    )

    with pytest.raises(ContainerRuntimeError, match="Cannot connect"):
        DockerRuntime().inspect("x")


def test_timeouts_become_operation_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    """A subprocess timeout is reported with the budget that was exceeded."""

    def _timeout(args: list[str], **kwargs: object) -> _Result:
        raise subprocess.TimeoutExpired(args, kwargs["timeout"])

    monkeypatch.setattr("subprocess.run", _timeout)

    with pytest.raises(OperationTimeout) as excinfo:
        DockerRuntime().stop(["a", "b"], timeout=10)

    assert excinfo.value.timeout == 15
    assert "docker stop timed out" in str(excinfo.value)


def test_missing_binary_is_a_runtime_error(monkeypatch: pytest.MonkeyPatch) -> None:
    """An absent docker binary makes the runtime unavailable."""

    def _raise_file_not_found(*args: object, **kwargs: object) -> None:
        raise FileNotFoundError()

    monkeypatch.setattr("subprocess.run", _raise_file_not_found)

    assert DockerRuntime().is_available() is False
    with pytest.raises(ContainerRuntimeError):
        DockerRuntime().start(["a"])


def test_exec_returns_non_zero_results(monkeypatch: pytest.MonkeyPatch) -> None:
    """exec hands back failing exit codes instead of raising."""
    monkeypatch.setattr(
        "subprocess.run", lambda *args, **kwargs: _Result(stdout="no response", returncode=2)
    )

    result = DockerRuntime().exec("supabase-db-a1", ["pg_isready", "-U", "postgres"])

    assert result.returncode == 2


def test_stop_with_escalation_kills_after_timeout(fake_runtime: FakeRuntime) -> None:
    """A stop that times out is escalated to a kill."""
    fake_runtime.known.add("c1")
    fake_runtime.running.add("c1")
    fake_runtime.fail_next("stop", OperationTimeout("slow", timeout=30))

    outcome = stop_with_escalation(fake_runtime, ["c1"], timeout=30)

    assert outcome == "killed"
    assert [call for call, _names in fake_runtime.calls] == ["stop", "kill"]
    assert "c1" not in fake_runtime.running


def test_stop_with_escalation_propagates_other_errors(fake_runtime: FakeRuntime) -> None:
    """Only timeouts escalate; other failures propagate."""
    fake_runtime.fail_next("stop")

    with pytest.raises(ContainerRuntimeError):
        stop_with_escalation(fake_runtime, ["c1"], timeout=30)

def test_existing_containers_skips_missing_names(monkeypatch: pytest.MonkeyPatch) -> None:
    """Only containers docker can inspect are handed to stop, so one gap never fails it."""
    seen: list[list[str]] = []

    def _run(args: list[str], **kwargs: object) -> _Result:
        seen.append(args)
        if args[1] == "inspect" and args[2] == "supabase-auth-a1":
            return _Result(stderr="Error: No such object: supabase-auth-a1", returncode=1)
        if args[1] == "stop" and "supabase-auth-a1" in args:
            return _Result(
                stderr="Error response from daemon: No such container: supabase-auth-a1",
                returncode=1,
            )
        if args[1] == "inspect":
            return _Result(stdout=_inspect_payload(True))
        return _Result()

    monkeypatch.setattr("subprocess.run", _run)
    runtime = DockerRuntime()
    names = ["supabase-db-a1", "supabase-auth-a1", "supabase-rest-a1"]

    present = existing_containers(runtime, names)
    outcome = stop_with_escalation(runtime, present, timeout=10)

    assert present == ["supabase-db-a1", "supabase-rest-a1"]
    assert outcome == "stopped"
    assert seen[-1] == ["docker", "stop", "-t", "10", "supabase-db-a1", "supabase-rest-a1"]


def test_stop_of_missing_container_fails_the_whole_call(monkeypatch: pytest.MonkeyPatch) -> None:
    """docker stop with an unknown name exits non-zero and is reported as such."""
    monkeypatch.setattr(
        "subprocess.run",
        lambda *args, **kwargs: _Result(
            stderr="Error response from daemon: No such container: supabase-auth-a1",
            returncode=1,
        ),
    )

    with pytest.raises(ContainerRuntimeError, match="No such container"):
        DockerRuntime().stop(["supabase-db-a1", "supabase-auth-a1"], timeout=10)


def test_stop_with_escalation_ignores_empty_target(fake_runtime: FakeRuntime) -> None:
    """Nothing to stop means no runtime call at all."""
    assert stop_with_escalation(fake_runtime, [], timeout=30) == "stopped"
    assert fake_runtime.calls == []



def test_snapshot_records_probe_errors(fake_runtime: FakeRuntime) -> None:
    """A failing inspect is recorded for that container only."""
    fake_runtime.bring_up("a1")
    names = [container_name("db", "a1"), container_name("auth", "a1")]
    fake_runtime.fail_next("inspect", ContainerRuntimeError("hiccup"))

    snapshot = snapshot_containers(fake_runtime, names)

    assert snapshot[names[0]]["error"] == "hiccup"
    assert snapshot[names[1]]["running"] is True


@pytest.mark.parametrize(
    ("setup", "expected"),
    [
        ("running", "running"),
        ("exited", "stopped"),
        ("missing", "stopped"),
    ],
)
def test_status_provider_reads_primary_container(
    fake_runtime: FakeRuntime, setup: str, expected: str
) -> None:
    """The studio container decides whether an instance is running."""
    name = container_name("studio", "a1")
    if setup != "missing":
        fake_runtime.known.add(name)
    if setup == "running":
        fake_runtime.running.add(name)

    status = InstanceStatusProvider(fake_runtime).status({"id": "a1", "status": "running"})

    assert status.state == expected


def test_status_provider_keeps_last_known_when_unavailable(fake_runtime: FakeRuntime) -> None:
    """A runtime outage never reads as a stopped stack."""
    fake_runtime.available = False
    provider = InstanceStatusProvider(fake_runtime)

    assert provider.status({"id": "a1", "status": "running"}).state == "running"
    assert provider.status({"id": "a1"}).state == "unavailable"


def test_status_provider_reports_probe_errors(fake_runtime: FakeRuntime) -> None:
    """A failing inspect yields the error state."""
    fake_runtime.fail_next("inspect", OperationTimeout("inspect timed out", timeout=10))

    status = InstanceStatusProvider(fake_runtime).status({"id": "a1"})

    assert status.state == "error"
    assert "timed out" in status.detail
