"""Safe operations: backup, mutate, verify and roll back on failure.

Every mutating workflow (restart, repair, credential rotation, configuration
change, restore) runs under a per-instance lease and follows the same protocol::

    validate -> backup -> capture pre-state -> mutate -> verify
                                   on failure -> restore backup -> re-verify

Results are plain dictionaries that always distinguish four outcomes:
success, success with a restart still required, failure rolled back
(``rollback_performed``), and failure whose rollback also failed
(``manual_intervention_required``).
"""
from __future__ import annotations

import concurrent.futures
import copy
import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .backups import BackupManager
from .config import RuntimeConfig
from .config_fields import (
    MASK,
    ConfigField,
    apply_to_entry,
    editable_config,
    get_field,
    validate_value,
)
from .credentials import SIGNING_ENV_VARS, rotate_signing_credentials, tokens_valid
from .diagnostics import DiagnosticEngine, execute_plan, plan_repairs, repair_improved
from .diagnostics.repairs import REGENERATE_CREDENTIALS
from .envfile import read_env_file, set_env_var
from .errors import (
    CriticalRecoveryFailure,
    ManualInterventionRequired,
    NotFoundError,
    StackError,
    ValidationError,
)
from .locking import LeaseTable
from .providers.runtime import (
    ContainerRuntime,
    existing_containers,
    snapshot_containers,
    stop_with_escalation,
)
from .stack import StackLayout
from .state import InstanceRegistry, OperationStore, OperationStoreError

logger = logging.getLogger(__name__)

RESTART_CATEGORIES = frozenset({"infrastructure", "authentication", "database"})
CRITICAL_VOLUME_DIRS = ("db", "storage")
EMERGENCY_STOP_TIMEOUT = 15.0


class VerificationFailed(StackError):
    """Raised when a mutation completed but the instance did not come back healthy."""


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds")


def _iso(moment: float) -> str:
    return datetime.fromtimestamp(moment, tz=UTC).isoformat(timespec="seconds")


def operation_identifier(kind: str, instance_id: str, *, now: float | None = None) -> str:
    """Return ``{kind}_{instance_id}_{epoch_ms}``."""
    moment = time.time() if now is None else now
    return f"{kind}_{instance_id}_{int(moment * 1000)}"


class SafeOperations:
    """Orchestrate mutating workflows for instances."""

    def __init__(
        self,
        registry: InstanceRegistry,
        backups: BackupManager,
        diagnostics: DiagnosticEngine,
        runtime: ContainerRuntime,
        stacks_dir: Path,
        *,
        runtime_settings: RuntimeConfig | None = None,
        leases: LeaseTable | None = None,
        sleep: Callable[[float], None] = time.sleep,
        poll_interval: float = 5.0,
    ) -> None:
        self.registry = registry
        self.backups = backups
        self.diagnostics = diagnostics
        self.runtime = runtime
        self.stacks_dir = stacks_dir
        self.settings = runtime_settings or RuntimeConfig()
        self.leases = leases or LeaseTable()
        self._sleep = sleep
        self._poll_interval = poll_interval

    # ------------------------------------------------------------------
    # Restart
    # ------------------------------------------------------------------
    def safe_restart(
        self,
        instance_id: str,
        *,
        force: bool = False,
        reason: str = "manual",
        skip_backup: bool = False,
        operation_id: str | None = None,
    ) -> dict[str, Any]:
        """Restart *instance_id* with backup and rollback.

        Healthy instances are left alone unless *force* is set.
        An instance flagged for manual intervention is refused unless *force*
        is set; a successful forced restart clears the flag.
        """
        entry = self.registry.require_instance(instance_id)
        if not force:
            self._refuse_if_flagged(entry)
        op_id = operation_id or operation_identifier("restart", instance_id)
        with self.leases.hold(instance_id, op_id):
            pre_state = self.capture_state(instance_id)
            if not force and not self.needs_restart(instance_id, pre_state):
                return {
                    "success": True,
                    "message": "Restart not needed; instance is healthy.",
                    "restart_performed": False,
                    "operation_id": op_id,
                    "state_check": pre_state,
                }

            backup_id = None
            if not skip_backup:
                backup_id = self.backups.create_backup(instance_id, f"pre_restart_{reason}")[
                    "backup_id"
                ]
            try:
                self._restart_stack(instance_id)
                post_health = self._require_healthy(instance_id, "after restart")
                self._mark_running(instance_id, restarted=True)
            except (StackError, OSError) as exc:
                if backup_id is None:
                    raise
                return self._rollback_or_escalate(
                    instance_id,
                    backup_id,
                    exc,
                    {"restart_performed": False, "operation_id": op_id},
                    restart=True,
                )
            return {
                "success": True,
                "message": "Restart completed.",
                "restart_performed": True,
                "backup_created": backup_id,
                "operation_id": op_id,
                "pre_restart_state": pre_state,
                "post_restart_health": post_health,
            }

    def capture_state(self, instance_id: str) -> dict[str, Any]:
        """Return config, quick health and container states for *instance_id*."""
        entry = self.registry.require_instance(instance_id)
        layout = self._layout(entry)
        state: dict[str, Any] = {
            "timestamp": _now_iso(),
            "config": copy.deepcopy(entry),
            "containers": snapshot_containers(
                self.runtime, layout.containers(), timeout=self.settings.inspect_timeout
            ),
        }
        try:
            state["quick_health"] = self.diagnostics.quick_check(instance_id)
        except StackError as exc:
            state["quick_health"] = None
            state["capture_error"] = str(exc)
        return state

    def needs_restart(self, instance_id: str, pre_state: Mapping[str, Any]) -> bool:
        """Decide whether a non-forced restart should run.

        Any doubt (missing health data, a failing probe) means restart.
        """
        quick = pre_state.get("quick_health")
        if not isinstance(quick, Mapping) or not quick.get("healthy"):
            return True
        cached = self.diagnostics.last(instance_id)
        if cached is not None and cached.categories() & RESTART_CATEGORIES:
            return True
        return False

    def _restart_stack(self, instance_id: str) -> str:
        entry = self.registry.require_instance(instance_id)
        layout = self._layout(entry)
        stopped = stop_with_escalation(
            self.runtime,
            self._present_containers(layout),
            timeout=self.settings.stop_timeout,
            kill_timeout=self.settings.kill_timeout,
        )
        self.verify_volume_integrity(layout)
        self._start_stack(layout)
        return stopped

    def _present_containers(self, layout: StackLayout) -> list[str]:
        return existing_containers(
            self.runtime, layout.containers(), timeout=self.settings.inspect_timeout
        )

    def _start_stack(self, layout: StackLayout) -> None:
        if layout.manifest_path.exists():
            self.runtime.compose_up(layout.manifest_path, layout.env_path, layout.project)
        else:
            self.runtime.start(layout.containers(), timeout=self.settings.start_timeout)
        self.wait_for_containers(layout)

    def verify_volume_integrity(self, layout: StackLayout) -> None:
        """Require the critical volume directories; drop a stale postmaster.pid."""
        volume = layout.volume_path
        if not volume.is_dir():
            raise VerificationFailed(f"Volume directory {volume} not found.")
        for name in CRITICAL_VOLUME_DIRS:
            if not (volume / name).is_dir():
                raise VerificationFailed(f"Critical volume directory '{name}' is missing.")
        lock_file = volume / "db" / "data" / "postmaster.pid"
        if lock_file.exists():
            lock_file.unlink()
            logger.info("Removed stale postmaster.pid for %s", layout.instance_id)

    def wait_for_containers(self, layout: StackLayout) -> bool:
        """Poll until every container runs or ``health_wait`` elapses."""
        deadline = time.monotonic() + self.settings.health_wait
        names = layout.containers()
        while True:
            snapshot = snapshot_containers(
                self.runtime, names, timeout=self.settings.inspect_timeout
            )
            if all(state.get("running") for state in snapshot.values()):
                return True
            if time.monotonic() >= deadline:
                logger.warning("Timed out waiting for containers of %s", layout.instance_id)
                return False
            self._sleep(self._poll_interval)

    def _require_healthy(self, instance_id: str, when: str) -> dict[str, Any]:
        health = self.diagnostics.quick_check(instance_id)
        if not health.get("healthy"):
            raise VerificationFailed(f"Instance {instance_id} is not healthy {when}.")
        return health

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------
    def emergency_rollback(self, instance_id: str, backup_id: str, *, restart: bool) -> None:
        """Restore *backup_id* and, when *restart* is set, bring the stack back up."""
        entry = self.registry.require_instance(instance_id)
        layout = self._layout(entry)
        if restart:
            try:
                stop_with_escalation(
                    self.runtime,
                    self._present_containers(layout),
                    timeout=EMERGENCY_STOP_TIMEOUT,
                    kill_timeout=self.settings.kill_timeout,
                )
            except StackError as exc:
                logger.warning("Stopping %s before rollback failed: %s", instance_id, exc)
        self.backups.restore(instance_id, backup_id)
        if restart:
            self._start_stack(self._layout(self.registry.require_instance(instance_id)))
            self._require_healthy(instance_id, "after rollback")

    def _rollback_or_escalate(
        self,
        instance_id: str,
        backup_id: str,
        error: BaseException,
        base: Mapping[str, Any],
        *,
        restart: bool,
    ) -> dict[str, Any]:
        logger.warning(
            "Operation on %s failed, rolling back to %s: %s", instance_id, backup_id, error
        )
        try:
            self.emergency_rollback(instance_id, backup_id, restart=restart)
        except (StackError, OSError) as rollback_error:
            failure = CriticalRecoveryFailure(error, rollback_error)
            logger.error("Rollback of %s failed: %s", instance_id, rollback_error)
            self._flag_manual_intervention(instance_id, failure)
            return {
                **base,
                **failure.to_dict(),
                "success": False,
                "rollback_performed": False,
                "backup_available": backup_id,
            }
        return {
            **base,
            "success": False,
            "message": f"Operation failed and was rolled back: {error}",
            "rollback_performed": True,
            "backup_used": backup_id,
            "error": str(error),
        }

    def _flag_manual_intervention(self, instance_id: str, failure: CriticalRecoveryFailure) -> None:
        try:
            self.registry.update_instance(
                instance_id,
                {
                    "status": "error",
                    "manual_intervention_required": True,
                    "last_error": str(failure),
                    "updated_at": _now_iso(),
                },
            )
        except StackError as exc:
            logger.error("Could not flag %s for manual intervention: %s", instance_id, exc)

    def _refuse_if_flagged(self, entry: Mapping[str, Any]) -> None:
        if entry.get("manual_intervention_required"):
            last_error = entry.get("last_error")
            raise ManualInterventionRequired(
                str(entry["id"]), str(last_error) if last_error else None
            )

    def _mark_running(self, instance_id: str, *, restarted: bool) -> None:
        """Record a verified healthy stack and drop any manual-intervention flag."""
        now = _now_iso()

        def _mark(instances: dict[str, dict[str, Any]]) -> None:
            current = instances.get(instance_id)
            if current is None:
                raise NotFoundError(f"Instance '{instance_id}' not found.")
            current.update({"status": "running", "updated_at": now})
            if restarted:
                current["last_restart"] = now
            if current.pop("manual_intervention_required", None):
                logger.info("Cleared manual intervention flag on %s", instance_id)
            current.pop("last_error", None)

        self.registry.mutate(_mark)

    # ------------------------------------------------------------------
    # Repair
    # ------------------------------------------------------------------
    def repair_instance(
        self,
        instance_id: str,
        *,
        force: bool = False,
        operation_id: str | None = None,
    ) -> dict[str, Any]:
        """Diagnose, plan and execute repairs with backup and rollback.

        Success is judged with :func:`~stackctl.diagnostics.repair_improved`,
        a heuristic: "healthy now, or fewer critical issues than before".
        Instances flagged for manual intervention are refused outright.
        """
        self._refuse_if_flagged(self.registry.require_instance(instance_id))
        op_id = operation_id or operation_identifier("repair", instance_id)
        with self.leases.hold(instance_id, op_id):
            before = self.diagnostics.run(instance_id, enforce_cooldown=False)
            if before.overall_healthy and not force:
                return {
                    "success": True,
                    "message": "No repair needed; instance is healthy.",
                    "repair_performed": False,
                    "operation_id": op_id,
                    "diagnostic": before.to_dict(),
                }
            plan = plan_repairs(before)
            if not plan:
                if before.overall_healthy:
                    return {
                        "success": True,
                        "message": "No repair actions apply.",
                        "repair_performed": False,
                        "operation_id": op_id,
                        "diagnostic": before.to_dict(),
                    }
                return {
                    "success": False,
                    "message": "Problems detected but no automatic repair applies.",
                    "repair_performed": False,
                    "manual_intervention_required": True,
                    "issues": [issue.to_dict() for issue in before.critical_issues],
                    "operation_id": op_id,
                }

            backup_id = self.backups.create_backup(instance_id, "pre_repair")["backup_id"]
            try:
                layout = self._layout(self.registry.require_instance(instance_id))
                execution = execute_plan(
                    plan,
                    self.runtime,
                    layout,
                    timeout=self.settings.stop_timeout,
                    prepare={
                        REGENERATE_CREDENTIALS.type: lambda: self._rotate_credentials(instance_id)
                    },
                )
                if execution.aborted:
                    raise VerificationFailed(execution.error or "Critical repair action failed.")
                self.wait_for_containers(layout)
                after = self.diagnostics.run(instance_id, enforce_cooldown=False)
                if not repair_improved(before, after):
                    raise VerificationFailed("Repair executed but problems persist.")
                if after.overall_healthy:
                    self._mark_running(instance_id, restarted=False)
            except (StackError, OSError) as exc:
                return self._rollback_or_escalate(
                    instance_id,
                    backup_id,
                    exc,
                    {
                        "repair_performed": False,
                        "operation_id": op_id,
                        "plan": plan.to_dict(),
                    },
                    restart=True,
                )
            return {
                "success": True,
                "message": "Repair completed.",
                "repair_performed": True,
                "verification": "heuristic",
                "backup_created": backup_id,
                "plan": plan.to_dict(),
                "actions_executed": execution.results,
                "pre_repair_issues": before.critical_count,
                "post_repair_issues": after.critical_count,
                "overall_healthy": after.overall_healthy,
                "operation_id": op_id,
            }

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------
    def regenerate_credentials(
        self, instance_id: str, *, operation_id: str | None = None
    ) -> dict[str, Any]:
        """Rotate the signing secret and access tokens, then restart the stack.

        The registry and the environment file are updated together under a
        backup; a stack that does not come back healthy, or tokens that do
        not verify afterwards, trigger the usual rollback.
        """
        self._refuse_if_flagged(self.registry.require_instance(instance_id))
        op_id = operation_id or operation_identifier("credentials", instance_id)
        with self.leases.hold(instance_id, op_id):
            backup_id = self.backups.create_backup(instance_id, "pre_credential_rotation")[
                "backup_id"
            ]
            try:
                self._rotate_credentials(instance_id)
                self._restart_within(instance_id, op_id, reason="credential_rotation")
                credentials = self.registry.require_instance(instance_id).get("credentials")
                if not isinstance(credentials, Mapping) or not tokens_valid(credentials):
                    raise VerificationFailed("Rotated access tokens do not verify.")
            except (StackError, OSError) as exc:
                return self._rollback_or_escalate(
                    instance_id,
                    backup_id,
                    exc,
                    {"credentials_rotated": False, "operation_id": op_id},
                    restart=True,
                )
            return {
                "success": True,
                "message": "Signing credentials rotated.",
                "credentials_rotated": True,
                "rotated_keys": sorted(SIGNING_ENV_VARS),
                "backup_created": backup_id,
                "operation_id": op_id,
            }

    def _rotate_credentials(self, instance_id: str) -> None:
        def _rotate(instances: dict[str, dict[str, Any]]) -> dict[str, object]:
            current = instances.get(instance_id)
            if current is None:
                raise NotFoundError(f"Instance '{instance_id}' not found.")
            existing = current.get("credentials")
            rotated = rotate_signing_credentials(existing if isinstance(existing, Mapping) else {})
            current["credentials"] = rotated
            current["updated_at"] = _now_iso()
            return rotated

        rotated = self.registry.mutate(_rotate)
        layout = self._layout(self.registry.require_instance(instance_id))
        for key, env_var in SIGNING_ENV_VARS.items():
            set_env_var(layout.env_path, env_var, str(rotated[key]))
        logger.info("Rotated signing credentials for %s", instance_id)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    def editable_config(self, instance_id: str) -> dict[str, Any]:
        """Return the current values and descriptors of editable fields."""
        entry = self.registry.require_instance(instance_id)
        layout = self._layout(entry)
        return {
            "instance_id": instance_id,
            "fields": editable_config(entry, read_env_file(layout.env_path)),
        }

    def update_config(
        self,
        instance_id: str,
        field_name: str,
        value: object,
        *,
        auto_restart: bool = False,
        skip_backup: bool = False,
        operation_id: str | None = None,
    ) -> dict[str, Any]:
        """Change one editable field safely."""
        field_spec = get_field(field_name)
        self.registry.require_instance(instance_id)
        op_id = operation_id or operation_identifier("config", instance_id)
        with self.leases.hold(instance_id, op_id):
            coerced = validate_value(
                field_spec, value, instance_id=instance_id, instances=self.registry.load()
            )
            backup_id = None
            if not skip_backup:
                backup_id = self.backups.create_backup(
                    instance_id, f"config_update_{field_spec.name}"
                )["backup_id"]
            restart_attempted = False
            try:
                old_value = self._apply_field(instance_id, field_spec, coerced)
                if field_spec.requires_restart and not auto_restart:
                    return {
                        "success": True,
                        "message": f"'{field_spec.name}' updated; restart required to apply.",
                        "field": field_spec.name,
                        "old_value": _display(field_spec, old_value),
                        "new_value": _display(field_spec, coerced),
                        "restart_required": True,
                        "restart_performed": False,
                        "backup_created": backup_id,
                        "operation_id": op_id,
                    }
                restart_performed = False
                if field_spec.requires_restart:
                    restart_attempted = True
                    self._restart_within(instance_id, op_id, reason=f"config_{field_spec.name}")
                    restart_performed = True
            except (StackError, OSError) as exc:
                if backup_id is None:
                    raise
                return self._rollback_or_escalate(
                    instance_id,
                    backup_id,
                    exc,
                    {
                        "field": field_spec.name,
                        "restart_required": False,
                        "restart_performed": False,
                        "operation_id": op_id,
                    },
                    restart=restart_attempted,
                )
            return {
                "success": True,
                "message": f"'{field_spec.name}' updated.",
                "field": field_spec.name,
                "old_value": _display(field_spec, old_value),
                "new_value": _display(field_spec, coerced),
                "restart_required": False,
                "restart_performed": restart_performed,
                "backup_created": backup_id,
                "operation_id": op_id,
            }

    def update_config_bulk(
        self,
        instance_id: str,
        updates: Mapping[str, object],
        *,
        auto_restart: bool = False,
        operation_id: str | None = None,
    ) -> dict[str, Any]:
        """Change several fields under one backup.

        Every value is validated before anything changes. If applying a field
        that requires a restart fails, the rest of the batch is abandoned and
        the backup restored; other field failures are recorded and skipped.
        """
        if not updates:
            raise ValidationError("No fields to update.")
        self.registry.require_instance(instance_id)
        specs = {name: get_field(name) for name in updates}
        op_id = operation_id or operation_identifier("config", instance_id)
        with self.leases.hold(instance_id, op_id):
            instances = self.registry.load()
            coerced = {
                name: validate_value(
                    spec, updates[name], instance_id=instance_id, instances=instances
                )
                for name, spec in specs.items()
            }
            backup_id = self.backups.create_backup(instance_id, "bulk_config_update")["backup_id"]
            applied: dict[str, dict[str, Any]] = {}
            failed: dict[str, str] = {}
            restart_attempted = False
            try:
                for name, spec in specs.items():
                    try:
                        old_value = self._apply_field(instance_id, spec, coerced[name])
                    except (StackError, OSError) as exc:
                        if spec.requires_restart:
                            raise
                        failed[name] = str(exc)
                        continue
                    applied[name] = {
                        "old_value": _display(spec, old_value),
                        "new_value": _display(spec, coerced[name]),
                    }
                restart_required = any(specs[name].requires_restart for name in applied)
                restart_performed = False
                if restart_required and auto_restart:
                    restart_attempted = True
                    self._restart_within(instance_id, op_id, reason="bulk_config_update")
                    restart_performed = True
            except (StackError, OSError) as exc:
                return self._rollback_or_escalate(
                    instance_id,
                    backup_id,
                    exc,
                    {
                        "updated_fields": {},
                        "failed_fields": failed,
                        "restart_required": False,
                        "restart_performed": False,
                        "operation_id": op_id,
                    },
                    restart=restart_attempted,
                )
            return {
                "success": not failed,
                "message": f"{len(applied)} field(s) updated, {len(failed)} failed.",
                "updated_fields": applied,
                "failed_fields": failed,
                "restart_required": restart_required and not restart_performed,
                "restart_performed": restart_performed,
                "backup_created": backup_id,
                "operation_id": op_id,
            }

    def _apply_field(self, instance_id: str, spec: ConfigField, value: object) -> object:
        entry = self.registry.require_instance(instance_id)
        old_value: object = None
        if spec.env_var is not None:
            layout = self._layout(entry)
            old_env = read_env_file(layout.env_path).get(spec.env_var)
            set_env_var(layout.env_path, spec.env_var, spec.env_value(value))
            old_value = old_env
        if spec.registry_path is not None:

            def _mutate(instances: dict[str, dict[str, Any]]) -> object:
                current = instances.get(instance_id)
                if current is None:
                    raise NotFoundError(f"Instance '{instance_id}' not found.")
                previous = apply_to_entry(spec, current, value)
                current["updated_at"] = _now_iso()
                return previous

            old_value = self.registry.mutate(_mutate)
        return old_value

    def _restart_within(self, instance_id: str, op_id: str, *, reason: str) -> None:
        self._restart_stack(instance_id)
        self._require_healthy(instance_id, f"after {reason}")
        self._mark_running(instance_id, restarted=True)

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------
    def create_backup(
        self, instance_id: str, reason: str = "manual", *, operation_id: str | None = None
    ) -> dict[str, Any]:
        """Create a backup while holding the instance lease."""
        self.registry.require_instance(instance_id)
        op_id = operation_id or operation_identifier("backup", instance_id)
        with self.leases.hold(instance_id, op_id):
            return self.backups.create_backup(instance_id, reason)

    def list_backups(self, instance_id: str) -> list[dict[str, Any]]:
        """Return backup summaries for *instance_id*, newest first."""
        self.registry.require_instance(instance_id)
        return self.backups.list_backups(instance_id)

    def restore_from_backup(
        self,
        instance_id: str,
        backup_id: str,
        *,
        confirm: bool = False,
        operation_id: str | None = None,
    ) -> dict[str, Any]:
        """Restore *backup_id* and force a restart; *confirm* must be ``True``."""
        if not confirm:
            raise ValidationError("Restore requires explicit confirmation.", field="confirm")
        self.registry.require_instance(instance_id)
        op_id = operation_id or operation_identifier("restore", instance_id)
        with self.leases.hold(instance_id, op_id):
            metadata = self.backups.restore(instance_id, backup_id)
            restart = self.safe_restart(
                instance_id, force=True, reason="post_restore_restart", operation_id=op_id
            )
        return {
            "success": bool(restart.get("success")),
            "message": (
                "Backup restored." if restart.get("success") else "Backup restored; restart failed."
            ),
            "restore_performed": True,
            "backup_restored": backup_id,
            "restored_files": metadata.get("restored_files", []),
            "restart": restart,
            "operation_id": op_id,
        }

    # ------------------------------------------------------------------
    def _layout(self, entry: Mapping[str, Any]) -> StackLayout:
        return StackLayout.from_instance(self.stacks_dir, entry)


def _display(spec: ConfigField, value: object) -> object:
    if spec.secret and value:
        return MASK
    return value


# ---------------------------------------------------------------------------
# Operation tracking
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class TrackedOperation:
    """A submitted operation and its future."""

    operation_id: str
    kind: str
    instance_id: str
    started_at: float
    future: concurrent.futures.Future[dict[str, Any]]
    finished_at: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Return the pollable status of the operation."""
        payload: dict[str, Any] = {
            "operation_id": self.operation_id,
            "kind": self.kind,
            "instance_id": self.instance_id,
            "started_at": _iso(self.started_at),
        }
        if not self.future.done():
            payload.update({"status": "running", "completed": False})
            return payload
        payload["completed"] = True
        exc = self.future.exception()
        if exc is not None:
            payload.update({"status": "failed", "error": str(exc)})
            if isinstance(exc, StackError):
                payload["error_details"] = exc.to_dict()
            return payload
        result = self.future.result()
        payload["status"] = "completed" if result.get("success", True) else "failed"
        payload["result"] = result
        return payload


class OperationTracker:
    """Run operations on a thread pool with a bounded synchronous wait.

    There is no cancellation: once submitted, an operation runs to
    completion or failure and its status stays pollable for ``retention``
    seconds after it finishes.
    With an :class:`~stackctl.state.OperationStore` attached, every status
    change is also written to disk so other processes can poll it.
    """

    def __init__(
        self,
        *,
        max_workers: int = 4,
        wait_timeout: float = 300.0,
        retention: float = 3600.0,
        store: OperationStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.wait_timeout = wait_timeout
        self.retention = retention
        self.store = store
        self._clock = clock
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="stackctl-op"
        )
        self._lock = threading.Lock()
        self._operations: dict[str, TrackedOperation] = {}

    def new_id(self, kind: str, instance_id: str) -> str:
        """Return a fresh operation id."""
        return operation_identifier(kind, instance_id, now=self._clock())

    def submit(
        self,
        operation_id: str,
        kind: str,
        instance_id: str,
        fn: Callable[[], dict[str, Any]],
        *,
        wait: bool = True,
        wait_timeout: float | None = None,
    ) -> dict[str, Any]:
        """Schedule *fn*; wait up to the bounded timeout for its result.

        Returns the result when it finishes in time, otherwise
        ``{"success": False, "status": "running", "operation_id": ...}``.
        Exceptions raised by *fn* within the wait propagate to the caller.
        """
        self.purge()
        started_at = self._clock()
        self._persist(
            {
                "operation_id": operation_id,
                "kind": kind,
                "instance_id": instance_id,
                "started_at": _iso(started_at),
                "status": "running",
                "completed": False,
            }
        )
        future = self._executor.submit(fn)
        tracked = TrackedOperation(
            operation_id=operation_id,
            kind=kind,
            instance_id=instance_id,
            started_at=started_at,
            future=future,
        )
        with self._lock:
            self._operations[operation_id] = tracked
        future.add_done_callback(lambda _f: self._mark_finished(operation_id))

        running = {
            "success": False,
            "status": "running",
            "operation_id": operation_id,
            "message": f"Operation {operation_id} is still running.",
        }
        if not wait:
            return running
        timeout = self.wait_timeout if wait_timeout is None else wait_timeout
        try:
            result = future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            return running
        return {**result, "operation_id": result.get("operation_id", operation_id)}

    def get(self, operation_id: str) -> dict[str, Any]:
        """Return the status of *operation_id*."""
        self.purge()
        with self._lock:
            tracked = self._operations.get(operation_id)
        if tracked is not None:
            return tracked.to_dict()
        stored = self.store.load(operation_id) if self.store is not None else None
        if stored is None:
            raise NotFoundError(f"Operation '{operation_id}' not found.")
        return stored

    def list_operations(self) -> list[dict[str, Any]]:
        """Return every tracked operation, oldest first."""
        self.purge()
        with self._lock:
            tracked = sorted(self._operations.values(), key=lambda op: op.started_at)
        records = [operation.to_dict() for operation in tracked]
        if self.store is not None:
            known = {record["operation_id"] for record in records}
            records.extend(
                record
                for record in self.store.list_records()
                if record.get("operation_id") not in known
            )
            records.sort(key=lambda record: str(record.get("started_at", "")))
        return records

    def purge(self) -> int:
        """Forget finished operations older than the retention window."""
        cutoff = self._clock() - self.retention
        with self._lock:
            expired = [
                operation_id
                for operation_id, tracked in self._operations.items()
                if tracked.finished_at is not None and tracked.finished_at < cutoff
            ]
            for operation_id in expired:
                del self._operations[operation_id]
        if self.store is not None:
            try:
                self.store.purge(cutoff)
            except OperationStoreError as exc:
                logger.warning("Could not purge operation records: %s", exc)
        return len(expired)

    def shutdown(self, *, wait: bool = True) -> None:
        """Stop accepting work; optionally wait for running operations."""
        self._executor.shutdown(wait=wait)

    def _mark_finished(self, operation_id: str) -> None:
        with self._lock:
            tracked = self._operations.get(operation_id)
            if tracked is None:
                return
            tracked.finished_at = self._clock()
        self._persist({**tracked.to_dict(), "finished_at": _iso(tracked.finished_at)})

    def _persist(self, payload: Mapping[str, Any]) -> None:
        if self.store is None:
            return
        try:
            self.store.save(payload, recorded_at=self._clock())
        except OperationStoreError as exc:
            logger.warning("Could not record operation %s: %s", payload["operation_id"], exc)


class Orchestrator:
    """Tracked entry points over :class:`SafeOperations`.

    The instance lease is taken before the work is scheduled, so a
    conflicting request fails immediately with
    :class:`~stackctl.errors.Conflict` instead of queueing.
    """

    def __init__(self, operations: SafeOperations, tracker: OperationTracker) -> None:
        self.operations = operations
        self.tracker = tracker

    def _submit(
        self,
        kind: str,
        instance_id: str,
        call: Callable[[str], dict[str, Any]],
        *,
        wait: bool,
    ) -> dict[str, Any]:
        self.operations.registry.require_instance(instance_id)
        op_id = self.tracker.new_id(kind, instance_id)
        leases = self.operations.leases
        leases.acquire(instance_id, op_id)

        def _run() -> dict[str, Any]:
            try:
                return call(op_id)
            finally:
                leases.release(instance_id, op_id)

        try:
            return self.tracker.submit(op_id, kind, instance_id, _run, wait=wait)
        except RuntimeError:
            leases.release(instance_id, op_id)
            raise

    def restart(
        self, instance_id: str, *, force: bool = False, reason: str = "manual", wait: bool = True
    ) -> dict[str, Any]:
        """Tracked :meth:`SafeOperations.safe_restart`."""
        return self._submit(
            "restart",
            instance_id,
            lambda op_id: self.operations.safe_restart(
                instance_id, force=force, reason=reason, operation_id=op_id
            ),
            wait=wait,
        )

    def repair(self, instance_id: str, *, force: bool = False, wait: bool = True) -> dict[str, Any]:
        """Tracked :meth:`SafeOperations.repair_instance`."""
        return self._submit(
            "repair",
            instance_id,
            lambda op_id: self.operations.repair_instance(
                instance_id, force=force, operation_id=op_id
            ),
            wait=wait,
        )

    def regenerate_credentials(self, instance_id: str, *, wait: bool = True) -> dict[str, Any]:
        """Tracked :meth:`SafeOperations.regenerate_credentials`."""
        return self._submit(
            "credentials",
            instance_id,
            lambda op_id: self.operations.regenerate_credentials(
                instance_id, operation_id=op_id
            ),
            wait=wait,
        )

    def update_config(
        self,
        instance_id: str,
        field_name: str,
        value: object,
        *,
        auto_restart: bool = False,
        wait: bool = True,
    ) -> dict[str, Any]:
        """Tracked :meth:`SafeOperations.update_config`."""
        get_field(field_name)
        return self._submit(
            "config",
            instance_id,
            lambda op_id: self.operations.update_config(
                instance_id, field_name, value, auto_restart=auto_restart, operation_id=op_id
            ),
            wait=wait,
        )

    def update_config_bulk(
        self,
        instance_id: str,
        updates: Mapping[str, object],
        *,
        auto_restart: bool = False,
        wait: bool = True,
    ) -> dict[str, Any]:
        """Tracked :meth:`SafeOperations.update_config_bulk`."""
        return self._submit(
            "config",
            instance_id,
            lambda op_id: self.operations.update_config_bulk(
                instance_id, updates, auto_restart=auto_restart, operation_id=op_id
            ),
            wait=wait,
        )

    def restore(
        self, instance_id: str, backup_id: str, *, confirm: bool = False, wait: bool = True
    ) -> dict[str, Any]:
        """Tracked :meth:`SafeOperations.restore_from_backup`."""
        if not confirm:
            raise ValidationError("Restore requires explicit confirmation.", field="confirm")
        return self._submit(
            "restore",
            instance_id,
            lambda op_id: self.operations.restore_from_backup(
                instance_id, backup_id, confirm=True, operation_id=op_id
            ),
            wait=wait,
        )

    def status(self, operation_id: str) -> dict[str, Any]:
        """Return the pollable status of a tracked operation."""
        return self.tracker.get(operation_id)


__all__ = [
    "OperationTracker",
    "Orchestrator",
    "SafeOperations",
    "TrackedOperation",
    "VerificationFailed",
    "operation_identifier",
]
