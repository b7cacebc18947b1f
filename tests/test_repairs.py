"""Tests for repair planning, execution and the success heuristic."""
from __future__ import annotations

from typing import TYPE_CHECKING

from stackctl.diagnostics import (
    CheckResult,
    CheckStatus,
    Diagnostic,
    build_diagnostic,
    execute_plan,
    plan_repairs,
    repair_improved,
)
from stackctl.diagnostics.repairs import summarise_plan
from stackctl.errors import ContainerRuntimeError
from stackctl.stack import StackLayout

if TYPE_CHECKING:
    from pathlib import Path

    from conftest import FakeRuntime


def _result(check_id: str, healthy: bool, **details: object) -> CheckResult:
    return CheckResult(
        id=check_id,
        status=CheckStatus.GREEN if healthy else CheckStatus.RED,
        message="",
        details=details,
    )


def _diagnostic(
    *,
    containers: bool = True,
    services: bool = True,
    database: bool = True,
    auth: bool = True,
    network: bool = True,
) -> Diagnostic:
    return build_diagnostic(
        "a1",
        [
            _result("container_status", containers, not_running=[] if containers else ["x"]),
            _result("service_health", services, failing=[] if services else ["rest"]),
            _result("database_connection", database),
            _result("auth_service", auth),
            _result("disk_usage", True),
            _result("network_connectivity", network),
        ],
        timestamp="2026-10-19T12:00:00+00:00",
    )


def test_plan_follows_fixed_category_order() -> None:
    """Each failing category yields one action, infrastructure first."""
    diagnostic = _diagnostic(containers=False, services=False, database=False, auth=False)

    plan = plan_repairs(diagnostic)

    assert [action.type for action in plan.actions] == [
        "restart_containers",
        "restart_database",
        "restart_auth_service",
        "restart_failed_services",
    ]
    assert plan.critical_count == 2
    assert plan.estimated_time == 165
    assert plan.to_dict()["actions"][1]["services"] == ["db"]


def test_healthy_diagnostic_plans_nothing() -> None:
    """No critical issues means an empty, falsy plan."""
    plan = plan_repairs(_diagnostic())

    assert not plan
    assert plan.to_dict() == {"actions": [], "critical_count": 0, "estimated_time": 0}


def test_summarise_plan_lines() -> None:
    """Human-readable summaries flag critical actions."""
    plan = plan_repairs(_diagnostic(database=False, auth=False))

    assert summarise_plan(plan.actions) == [
        "restart_database: Restart the database container (~45s, critical)",
        "restart_auth_service: Restart the auth container (~30s)",
    ]


def test_execute_plan_restarts_named_containers(
    tmp_path: Path, fake_runtime: FakeRuntime
) -> None:
    """Service-scoped actions restart only their containers."""
    layout = StackLayout(tmp_path, "a1", "compose.yml", ".env", "volumes")
    fake_runtime.bring_up("a1")
    plan = plan_repairs(_diagnostic(database=False, auth=False))

    execution = execute_plan(plan, fake_runtime, layout)

    assert execution.aborted is False
    assert execution.succeeded == 2
    restarted = [names for call, names in fake_runtime.calls if call == "restart"]
    assert restarted == [(layout.container("db"),), (layout.container("auth"),)]


def test_failing_critical_action_aborts(tmp_path: Path, fake_runtime: FakeRuntime) -> None:
    """A critical failure stops the plan before later actions run."""
    layout = StackLayout(tmp_path, "a1", "compose.yml", ".env", "volumes")
    fake_runtime.bring_up("a1")
    plan = plan_repairs(_diagnostic(containers=False, auth=False))
    fake_runtime.fail_next("restart", ContainerRuntimeError("no daemon"))

    execution = execute_plan(plan, fake_runtime, layout)

    assert execution.aborted is True
    assert "restart_containers" in (execution.error or "")
    assert len(execution.results) == 1
    assert execution.results[0]["containers"] == layout.containers()


def test_failing_optional_action_continues(tmp_path: Path, fake_runtime: FakeRuntime) -> None:
    """A non-critical failure is recorded and the next action still runs."""
    layout = StackLayout(tmp_path, "a1", "compose.yml", ".env", "volumes")
    fake_runtime.bring_up("a1")
    plan = plan_repairs(_diagnostic(auth=False, services=False))
    fake_runtime.fail_next("restart")

    execution = execute_plan(plan, fake_runtime, layout)

    assert execution.aborted is False
    assert [result["success"] for result in execution.results] == [False, True]
    assert execution.to_dict()["succeeded"] == 1


def test_repair_improved_heuristic() -> None:
    """Healthy-after or fewer critical issues counts as improvement."""
    before = _diagnostic(containers=False, auth=False)
    fewer = _diagnostic(auth=False)
    same = _diagnostic(containers=False, database=False)
    healthy = _diagnostic(network=False)

    assert repair_improved(before, fewer) is True
    assert repair_improved(before, same) is False
    assert repair_improved(before, healthy) is True


def test_broken_signing_key_plans_credential_rotation() -> None:
    """Tokens that fail verification swap the auth restart for a key rotation."""
    diagnostic = build_diagnostic(
        "a1",
        [
            _result("container_status", True, not_running=[]),
            _result("auth_service", False, jwt={"ok": False, "error": "Signature failed"}),
        ],
        timestamp="2026-10-19T12:00:00+00:00",
    )

    plan = plan_repairs(diagnostic)

    assert [action.type for action in plan.actions] == ["regenerate_credentials"]
    assert plan.actions[0].critical is True
    assert plan.actions[0].services == ("db", "auth", "rest", "kong")


def test_missing_containers_are_recreated_from_manifest(
    tmp_path: Path, fake_runtime: FakeRuntime
) -> None:
    """A removed container is brought back by compose instead of a failing restart."""
    layout = StackLayout(tmp_path, "a1", "compose.yml", ".env", "volumes")
    layout.manifest_path.write_text("services: {}\n", encoding="utf-8")
    fake_runtime.bring_up("a1")
    fake_runtime.known.discard(layout.container("db"))
    fake_runtime.running.discard(layout.container("db"))
    plan = plan_repairs(_diagnostic(database=False, auth=False))

    execution = execute_plan(plan, fake_runtime, layout)

    assert execution.aborted is False
    assert execution.results[0]["recreated"] == [layout.container("db")]
    assert ("compose_up", (layout.project,)) in fake_runtime.calls
    restarted = [names for call, names in fake_runtime.calls if call == "restart"]
    assert restarted == [(layout.container("auth"),)]
    assert layout.container("db") in fake_runtime.running


def test_missing_containers_without_manifest_abort(
    tmp_path: Path, fake_runtime: FakeRuntime
) -> None:
    """Without a manifest a missing container cannot be recreated."""
    layout = StackLayout(tmp_path, "a1", "compose.yml", ".env", "volumes")
    plan = plan_repairs(_diagnostic(database=False))

    execution = execute_plan(plan, fake_runtime, layout)

    assert execution.aborted is True
    assert "missing" in (execution.results[0]["error"] or "")
    assert not any(call == "restart" for call, _names in fake_runtime.calls)


def test_prepare_step_runs_before_its_action(tmp_path: Path, fake_runtime: FakeRuntime) -> None:
    """A prepare step runs ahead of the restart; its failure fails the action."""
    layout = StackLayout(tmp_path, "a1", "compose.yml", ".env", "volumes")
    fake_runtime.bring_up("a1")
    plan = plan_repairs(_diagnostic(database=False, auth=False))
    order: list[str] = []

    def _prepare_auth() -> None:
        order.append(f"prepare:{len(fake_runtime.calls)}")
        raise OSError("env file is read-only")

    execution = execute_plan(
        plan, fake_runtime, layout, prepare={"restart_auth_service": _prepare_auth}
    )

    assert order == ["prepare:1"]
    assert [result["success"] for result in execution.results] == [True, False]
    assert "read-only" in execution.results[1]["error"]
    restarted = [names for call, names in fake_runtime.calls if call == "restart"]
    assert restarted == [(layout.container("db"),)]
