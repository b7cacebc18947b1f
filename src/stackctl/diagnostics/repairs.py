"""Repair planning and execution driven by diagnostic critical issues."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from ..errors import ContainerRuntimeError, StackError
from ..providers.runtime import ContainerRuntime, existing_containers
from ..stack import StackLayout
from .models import Diagnostic

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RepairAction:
    """Single corrective action derived from a critical issue."""

    type: str
    description: str
    critical: bool
    estimated_time: int
    services: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        """Return a serialisable representation."""
        return {
            "type": self.type,
            "description": self.description,
            "critical": self.critical,
            "estimated_time": self.estimated_time,
            "services": list(self.services),
        }


@dataclass(slots=True, frozen=True)
class RepairPlan:
    """Ordered actions plus summary figures."""

    actions: tuple[RepairAction, ...]

    @property
    def critical_count(self) -> int:
        """Return how many actions abort the plan when they fail."""
        return sum(1 for action in self.actions if action.critical)

    @property
    def estimated_time(self) -> int:
        """Return the summed estimate in seconds."""
        return sum(action.estimated_time for action in self.actions)

    def __bool__(self) -> bool:
        return bool(self.actions)

    def to_dict(self) -> dict[str, Any]:
        """Return a serialisable representation."""
        return {
            "actions": [action.to_dict() for action in self.actions],
            "critical_count": self.critical_count,
            "estimated_time": self.estimated_time,
        }


# Service names resolve to container names through StackLayout.container().
# An empty service tuple means every container of the stack.
ACTIONS_BY_CATEGORY: dict[str, RepairAction] = {
    "infrastructure": RepairAction(
        type="restart_containers",
        description="Restart all instance containers",
        critical=True,
        estimated_time=60,
    ),
    "database": RepairAction(
        type="restart_database",
        description="Restart the database container",
        critical=True,
        estimated_time=45,
        services=("db",),
    ),
    "authentication": RepairAction(
        type="restart_auth_service",
        description="Restart the auth container",
        critical=False,
        estimated_time=30,
        services=("auth",),
    ),
    "services": RepairAction(
        type="restart_failed_services",
        description="Restart the HTTP service containers",
        critical=False,
        estimated_time=30,
        services=("kong", "rest"),
    ),
}
_CATEGORY_ORDER = ("infrastructure", "database", "authentication", "services")

# Planned in place of the auth restart when the stored tokens no longer verify.
REGENERATE_CREDENTIALS = RepairAction(
    type="regenerate_credentials",
    description="Rotate the signing secret and re-issue the access tokens",
    critical=True,
    estimated_time=90,
    services=("db", "auth", "rest", "kong"),
)


def signing_key_broken(diagnostic: Diagnostic) -> bool:
    """Return ``True`` when the auth check reports tokens that fail to verify."""
    result = diagnostic.results.get("auth_service")
    if result is None:
        return False
    jwt_detail = result.details.get("jwt")
    return isinstance(jwt_detail, Mapping) and jwt_detail.get("ok") is False


def plan_repairs(diagnostic: Diagnostic) -> RepairPlan:
    """Return one action per distinct critical-issue category, in fixed order."""
    categories = diagnostic.categories()
    actions: list[RepairAction] = []
    for category in _CATEGORY_ORDER:
        if category not in categories:
            continue
        if category == "authentication" and signing_key_broken(diagnostic):
            actions.append(REGENERATE_CREDENTIALS)
        else:
            actions.append(ACTIONS_BY_CATEGORY[category])
    return RepairPlan(actions=tuple(actions))


@dataclass(slots=True)
class RepairExecution:
    """Per-action outcomes of one plan execution."""

    results: list[dict[str, Any]] = field(default_factory=list)
    aborted: bool = False
    error: str | None = None

    @property
    def succeeded(self) -> int:
        """Return how many actions completed."""
        return sum(1 for result in self.results if result["success"])

    def to_dict(self) -> dict[str, Any]:
        """Return a serialisable representation."""
        return {
            "results": list(self.results),
            "aborted": self.aborted,
            "error": self.error,
            "succeeded": self.succeeded,
        }


def restart_containers(
    runtime: ContainerRuntime,
    layout: StackLayout,
    names: Sequence[str],
    *,
    timeout: float | None = None,
) -> dict[str, list[str]]:
    """Restart the existing *names*; recreate missing ones from the manifest.

    Returns ``{"restarted": [...], "recreated": [...]}``. Missing containers
    with no manifest on disk raise :class:`ContainerRuntimeError`.
    """
    present = existing_containers(runtime, names)
    missing = [name for name in names if name not in present]
    if missing and not layout.manifest_path.exists():
        raise ContainerRuntimeError(
            f"Containers {', '.join(missing)} are missing and "
            f"{layout.manifest_path.name} is not available to recreate them."
        )
    if present:
        runtime.restart(present, timeout=timeout)
    if missing:
        runtime.compose_up(layout.manifest_path, layout.env_path, layout.project)
    return {"restarted": present, "recreated": missing}


def execute_plan(
    plan: RepairPlan,
    runtime: ContainerRuntime,
    layout: StackLayout,
    *,
    timeout: float | None = None,
    prepare: Mapping[str, Callable[[], None]] | None = None,
) -> RepairExecution:
    """Apply *plan* in order.

    A failing critical action stops the plan immediately; a failing
    non-critical action is recorded and execution continues. *prepare*
    maps an action type to a step run before that action's restart.
    """
    execution = RepairExecution()
    hooks = prepare or {}
    for action in plan.actions:
        names = (
            [layout.container(service) for service in action.services]
            if action.services
            else layout.containers()
        )
        start = time.perf_counter()
        try:
            hook = hooks.get(action.type)
            if hook is not None:
                hook()
            outcome = restart_containers(runtime, layout, names, timeout=timeout)
        except (StackError, OSError) as exc:
            logger.warning(
                "Repair action %s failed for %s: %s", action.type, layout.instance_id, exc
            )
            execution.results.append(
                {
                    "type": action.type,
                    "success": False,
                    "critical": action.critical,
                    "containers": names,
                    "error": str(exc),
                    "duration_ms": int((time.perf_counter() - start) * 1000),
                }
            )
            if action.critical:
                execution.aborted = True
                execution.error = f"Critical repair action {action.type} failed: {exc}"
                break
            continue
        execution.results.append(
            {
                "type": action.type,
                "success": True,
                "critical": action.critical,
                "containers": names,
                "recreated": outcome["recreated"],
                "duration_ms": int((time.perf_counter() - start) * 1000),
            }
        )
    return execution


def repair_improved(before: Diagnostic, after: Diagnostic) -> bool:
    """Heuristic repair-success predicate.

    Returns ``True`` when the instance is now healthy or has strictly fewer
    critical issues than before. This is a heuristic: an instance can pass it
    while still degraded, and callers must not treat it as proof of repair.
    """
    if after.overall_healthy:
        return True
    return after.critical_count < before.critical_count


def summarise_plan(actions: Sequence[RepairAction]) -> list[str]:
    """Return one human-readable line per action."""
    return [
        f"{action.type}: {action.description} (~{action.estimated_time}s"
        f"{', critical' if action.critical else ''})"
        for action in actions
    ]


__all__ = [
    "ACTIONS_BY_CATEGORY",
    "RepairAction",
    "RepairExecution",
    "RepairPlan",
    "REGENERATE_CREDENTIALS",
    "execute_plan",
    "plan_repairs",
    "repair_improved",
    "restart_containers",
    "signing_key_broken",
    "summarise_plan",
]
