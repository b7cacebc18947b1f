"""Typer-powered command line for ``stackctl``.

Every command resolves a shared :class:`RuntimeContext`, records one entry
in the structured operations log and maps :class:`~stackctl.errors.StackError`
subclasses onto the exit codes in :mod:`stackctl.exit_codes`.
"""
from __future__ import annotations

import textwrap
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn

import typer
import yaml
from rich.console import Console
from rich.table import Table

from . import __version__
from .backups import BackupManager, BackupsRegistry
from .config import AppConfig, ConfigError, load_config
from .config_fields import FIELDS
from .diagnostics import (
    RUNS_FILE,
    DiagnosticEngine,
    DiagnosticHistory,
    DiagnosticRunStore,
    plan_repairs,
)
from .diagnostics.history import HISTORY_FILE
from .errors import NotFoundError, StackError, ValidationError
from .exit_codes import ExitCode
from .locking import LeaseTable, LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .manager import InstanceManager
from .orchestrator import OperationTracker, Orchestrator, SafeOperations
from .ports import PortAllocator, PortsRegistryError
from .providers import (
    DockerRuntime,
    FileProvisioner,
    HttpxProber,
    InstanceStatusProvider,
)
from .state import InstanceRegistry, OperationStore, StateRegistryError
from .templates import TemplateEngine

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to stackctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result as JSON instead of a table.",
)

NO_WAIT_OPTION = typer.Option(
    False,
    "--no-wait",
    help="Return immediately with an operation id instead of waiting for completion.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Multi-tenant control plane for isolated backend stacks.

        Create instances, diagnose and repair them, and apply configuration
        changes behind automatic backups and rollback.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: InstanceRegistry
    ports: PortAllocator
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    container_runtime: DockerRuntime
    status_provider: InstanceStatusProvider
    backups: BackupManager
    diagnostics: DiagnosticEngine
    manager: InstanceManager
    orchestrator: Orchestrator


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    config = load_config(config_file=config_file, overrides=overrides)
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    registry = InstanceRegistry(config.registry_dir, locks=locks)
    registry.ensure_root()
    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    settings = config.runtime
    container_runtime = DockerRuntime(
        docker_bin=settings.docker_bin,
        inspect_timeout=settings.inspect_timeout,
        stop_timeout=settings.stop_timeout,
        kill_timeout=settings.kill_timeout,
        start_timeout=settings.start_timeout,
        exec_timeout=settings.exec_timeout,
    )
    status_provider = InstanceStatusProvider(container_runtime, timeout=settings.inspect_timeout)
    ports = PortAllocator(config.ports.ranges, max_attempts=config.ports.max_attempts)
    backups = BackupManager(
        registry,
        BackupsRegistry(config.backups.root, config.backups.retention),
        container_runtime,
        config.stacks_dir,
        inspect_timeout=settings.inspect_timeout,
    )
    history = DiagnosticHistory(
        config.state_dir / "diagnostics" / HISTORY_FILE,
        limit=config.diagnostics.history_limit,
    )
    diagnostics = DiagnosticEngine(
        registry,
        container_runtime,
        HttpxProber(),
        config.stacks_dir,
        settings=config.diagnostics,
        runtime_settings=settings,
        history=history,
        runs=DiagnosticRunStore(config.state_dir / "diagnostics" / RUNS_FILE),
    )
    provisioner = FileProvisioner(templates, container_runtime, config.stacks_dir)
    manager = InstanceManager(
        config,
        registry,
        ports,
        provisioner,
        status_provider,
        backups=backups.backups,
        diagnostics=diagnostics,
    )
    operations = SafeOperations(
        registry,
        backups,
        diagnostics,
        container_runtime,
        config.stacks_dir,
        runtime_settings=settings,
        leases=LeaseTable(),
    )
    tracker = OperationTracker(
        max_workers=config.operations.max_workers,
        wait_timeout=config.operations.wait_timeout,
        retention=config.operations.retention,
        store=OperationStore(config.state_dir / "operations"),
    )
    runtime = RuntimeContext(
        config=config,
        registry=registry,
        ports=ports,
        locks=locks,
        logger=logger,
        templates=templates,
        container_runtime=container_runtime,
        status_provider=status_provider,
        backups=backups,
        diagnostics=diagnostics,
        manager=manager,
        orchestrator=Orchestrator(operations, tracker),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the stackctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"stackctl {__version__}")
        raise typer.Exit(code=0)

    try:
        _ensure_runtime(ctx, config_file, lock_timeout)
    except (ConfigError, StateRegistryError, PortsRegistryError, StackError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.ENVIRONMENT)) from exc

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
    context: Mapping[str, object] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc, context=context)
    raise typer.Exit(code=rc)


def _exit_code_for(exc: BaseException) -> int:
    """Map an exception onto the CLI exit code contract."""
    if isinstance(exc, StackError):
        return int(exc.exit_code)
    if isinstance(exc, LockTimeoutError):
        return int(ExitCode.CONFLICT)
    if isinstance(exc, (PortsRegistryError, StateRegistryError)):
        return int(ExitCode.ENVIRONMENT)
    return int(ExitCode.PROVIDER)


def _fail(op: OperationScope, exc: BaseException) -> NoReturn:
    """Report *exc* through the operation scope and exit."""
    context = exc.to_dict() if isinstance(exc, StackError) else None
    _command_error(op, str(exc), rc=_exit_code_for(exc), context=context)


def _finish(
    op: OperationScope,
    payload: Mapping[str, Any],
    *,
    json_output: bool,
    summary: str,
    changed: int = 1,
    render: Callable[[Mapping[str, Any]], None] | None = None,
) -> None:
    """Render a workflow result and close the scope.

    Results carrying ``success: False`` exit with the provider code after the
    payload has been printed, so callers still see rollback details.
    """
    if json_output:
        console.print_json(data=dict(payload))
    elif render is not None:
        render(payload)
    else:
        _render_mapping(payload)

    if payload.get("success", True) is False and payload.get("status") != "running":
        message = str(payload.get("error") or payload.get("message") or "Operation failed.")
        op.error(message, rc=int(ExitCode.PROVIDER), context=payload)
        raise typer.Exit(code=int(ExitCode.PROVIDER))
    op.success(summary, changed=changed, context=payload)


def _render_mapping(payload: Mapping[str, Any]) -> None:
    table = Table(show_header=False)
    for key, value in payload.items():
        if value in (None, "", [], {}):
            continue
        rendered = (
            yaml.safe_dump(value, default_flow_style=False, sort_keys=False).strip()
            if isinstance(value, (Mapping, list))
            else str(value)
        )
        table.add_row(key.replace("_", " ").title(), rendered)
    console.print(table)


def _resolve_id(runtime: RuntimeContext, op: OperationScope, reference: str) -> str:
    try:
        return str(runtime.registry.resolve(reference)["id"])
    except NotFoundError as exc:
        _fail(op, exc)


def _parse_assignments(pairs: Sequence[str]) -> dict[str, str]:
    updates: dict[str, str] = {}
    for pair in pairs:
        field, sep, value = pair.partition("=")
        if not sep or not field.strip():
            raise ValidationError(f"Expected FIELD=VALUE, got '{pair}'.")
        updates[field.strip()] = value
    return updates


_STATUS_STYLES = {
    "green": "[green]GREEN[/green]",
    "yellow": "[yellow]YELLOW[/yellow]",
    "red": "[red]RED[/red]",
}


def _render_diagnostic(payload: Mapping[str, Any]) -> None:
    healthy = payload.get("overall_healthy")
    verdict = "[green]healthy[/green]" if healthy else "[red]unhealthy[/red]"
    console.print(
        f"Instance {payload.get('instance_id')}: {verdict} "
        f"(score {payload.get('health_score')}%, {payload.get('duration_ms')} ms)"
    )
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Check", style="bold")
    table.add_column("Status")
    table.add_column("Message")
    results = payload.get("results") or {}
    for check_id, result in results.items():
        table.add_row(
            check_id,
            _STATUS_STYLES.get(str(result.get("status")), str(result.get("status"))),
            str(result.get("message", "")),
        )
    console.print(table)
    for issue in payload.get("critical_issues") or []:
        console.print(
            f"[red]- {issue['severity']}[/red] {issue['category']}: {issue['message']}"
            f" -> {issue['resolution']}"
        )


# ---------------------------------------------------------------------------
# Command groups
# ---------------------------------------------------------------------------

instances_app = typer.Typer(help="Create and manage stack instances.")
diagnose_app = typer.Typer(help="Run and inspect instance diagnostics.")
repair_app = typer.Typer(help="Plan and apply automatic repairs.")
config_app = typer.Typer(help="Inspect and edit instance configuration.")
backups_app = typer.Typer(help="Create, list and restore instance backups.")
operations_app = typer.Typer(help="Inspect tracked operations.")

app.add_typer(instances_app, name="instance")
app.add_typer(diagnose_app, name="diagnose")
app.add_typer(repair_app, name="repair")
app.add_typer(config_app, name="config")
app.add_typer(backups_app, name="backup")
app.add_typer(operations_app, name="operation")


# ---------------------------------------------------------------------------
# instance
# ---------------------------------------------------------------------------


@instances_app.command("create")
def instance_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Display name of the new instance."),
    owner: str = typer.Option("", "--owner", help="Owner recorded on the instance."),
    organization: str | None = typer.Option(
        None, "--organization", help="Organization shown in the dashboard."
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Allocate ports and credentials, provision and start a new instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance create",
        args={"name": name, "owner": owner, "organization": organization},
        target={"kind": "instance", "name": name},
    ) as op:
        extra = {"organization": organization} if organization else None
        try:
            entry = runtime.manager.create(name, owner=owner, config=extra)
        except (StackError, PortsRegistryError, StateRegistryError, OSError) as exc:
            _fail(op, exc)
        op.add_step("registry.register", detail=f"id={entry['id']}")
        op.add_step("provisioner.provision", detail=f"status={entry['status']}")
        if json_output:
            console.print_json(data=entry)
        else:
            console.print(
                f"[green]Instance '{entry['name']}' created[/green] "
                f"(id {entry['id']}) at {entry['studio_url']}"
            )
        op.success("Instance created.", changed=1, context={"id": entry["id"]})


@instances_app.command("list")
def instance_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List registered instances with refreshed status."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "registry"},
    ) as op:
        payload = runtime.manager.list()
        if json_output:
            console.print_json(data=payload)
            op.success("Reported instance list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Name")
        table.add_column("Status")
        table.add_column("Studio URL")
        instances = payload["instances"]
        if not instances:
            table.add_row("(none)", "", "", "")
        for entry in instances:
            table.add_row(
                str(entry.get("id", "")),
                str(entry.get("name", "")),
                str(entry.get("status", "")),
                str(entry.get("studio_url") or ""),
            )
        console.print(table)
        stats = payload["stats"]
        console.print(
            f"{stats['total']} of {stats['max_instances']} instances "
            f"({stats['running']} running, {stats['stopped']} stopped)"
        )
        op.success("Reported instance list.", changed=0)


@instances_app.command("show")
def instance_show(
    ctx: typer.Context,
    reference: str = typer.Argument(..., help="Instance id or name."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show details for a single instance (secrets omitted)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance show",
        args={"reference": reference, "json": json_output},
        target={"kind": "instance", "name": reference},
    ) as op:
        try:
            entry = runtime.manager.show(reference)
        except StackError as exc:
            _fail(op, exc)
        entry.pop("credentials", None)
        urls = entry.get("urls")
        if isinstance(urls, Mapping):
            entry["urls"] = {key: value for key, value in urls.items() if key != "db"}
        if json_output:
            console.print_json(data=entry)
        else:
            _render_mapping(entry)
        op.success("Displayed instance details.", changed=0)


def _lifecycle(ctx: typer.Context, command: str, reference: str, action: str) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        f"instance {command}",
        args={"reference": reference},
        target={"kind": "instance", "name": reference},
    ) as op:
        instance_id = _resolve_id(runtime, op, reference)
        with runtime.locks.instance_lock(instance_id) as handle:
            op.set_lock_wait_ms(handle.wait_ms)
            try:
                entry = getattr(runtime.manager, action)(instance_id)
            except StackError as exc:
                _fail(op, exc)
        op.add_step("registry.update", detail=f"status={entry['status']}")
        console.print(f"[green]Instance '{entry['name']}' is {entry['status']}.[/green]")
        op.success(f"Instance {command} complete.", changed=1)


@instances_app.command("start")
def instance_start(
    ctx: typer.Context,
    reference: str = typer.Argument(..., help="Instance id or name."),
) -> None:
    """Start an instance's containers."""
    _lifecycle(ctx, "start", reference, "start")


@instances_app.command("stop")
def instance_stop(
    ctx: typer.Context,
    reference: str = typer.Argument(..., help="Instance id or name."),
) -> None:
    """Stop an instance's containers."""
    _lifecycle(ctx, "stop", reference, "stop")


@instances_app.command("restart")
def instance_restart(
    ctx: typer.Context,
    reference: str = typer.Argument(..., help="Instance id or name."),
    force: bool = typer.Option(
        False, "--force", help="Restart even when the instance looks healthy."
    ),
    reason: str = typer.Option("manual", "--reason", help="Reason recorded on the backup."),
    no_wait: bool = NO_WAIT_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Back up, restart and verify an instance, rolling back on failure."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance restart",
        args={"reference": reference, "force": force, "reason": reason},
        target={"kind": "instance", "name": reference},
    ) as op:
        instance_id = _resolve_id(runtime, op, reference)
        try:
            result = runtime.orchestrator.restart(
                instance_id, force=force, reason=reason, wait=not no_wait
            )
        except StackError as exc:
            _fail(op, exc)
        _finish(op, result, json_output=json_output, summary="Instance restart finished.")


@instances_app.command("delete")
def instance_delete(
    ctx: typer.Context,
    reference: str = typer.Argument(..., help="Instance id or name."),
    remove_backups: bool = typer.Option(
        False, "--remove-backups", help="Also delete the instance's backups."
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    """Tear down an instance and release its ports."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance delete",
        args={"reference": reference, "remove_backups": remove_backups},
        target={"kind": "instance", "name": reference},
    ) as op:
        instance_id = _resolve_id(runtime, op, reference)
        if not yes and not typer.confirm(f"Delete instance {instance_id}?", default=False):
            console.print("[yellow]Aborted.[/yellow]")
            op.success("Deletion cancelled.", changed=0)
            return
        with runtime.locks.instance_lock(instance_id) as handle:
            op.set_lock_wait_ms(handle.wait_ms)
            try:
                removed = runtime.manager.delete(instance_id, remove_backups=remove_backups)
            except StackError as exc:
                _fail(op, exc)
        console.print(f"[green]Instance '{removed.get('name', instance_id)}' deleted.[/green]")
        op.success("Instance deleted.", changed=1)


# ---------------------------------------------------------------------------
# diagnose
# ---------------------------------------------------------------------------


@diagnose_app.command("run")
def diagnose_run(
    ctx: typer.Context,
    reference: str = typer.Argument(..., help="Instance id or name."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Run every diagnostic check against an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "diagnose run",
        args={"reference": reference},
        target={"kind": "instance", "name": reference},
    ) as op:
        instance_id = _resolve_id(runtime, op, reference)
        try:
            diagnostic = runtime.diagnostics.run(instance_id)
        except StackError as exc:
            _fail(op, exc)
        payload = diagnostic.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            _render_diagnostic(payload)
        op.success(
            "Diagnostic complete.",
            changed=0,
            context={"healthy": diagnostic.overall_healthy, "score": diagnostic.health_score},
        )


@diagnose_app.command("quick")
def diagnose_quick(
    ctx: typer.Context,
    reference: str = typer.Argument(..., help="Instance id or name."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Probe containers and critical services only."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "diagnose quick",
        args={"reference": reference},
        target={"kind": "instance", "name": reference},
    ) as op:
        instance_id = _resolve_id(runtime, op, reference)
        try:
            payload = runtime.diagnostics.quick_check(instance_id)
        except StackError as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data=payload)
        else:
            _render_mapping(payload)
        op.success("Quick check complete.", changed=0)


@diagnose_app.command("last")
def diagnose_last(
    ctx: typer.Context,
    reference: str = typer.Argument(..., help="Instance id or name."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the most recent diagnostic while it is still fresh."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "diagnose last",
        args={"reference": reference},
        target={"kind": "instance", "name": reference},
    ) as op:
        instance_id = _resolve_id(runtime, op, reference)
        diagnostic = runtime.diagnostics.last(instance_id)
        if diagnostic is None:
            _fail(
                op,
                NotFoundError(
                    f"No recent diagnostic for instance '{instance_id}'; "
                    "run 'stackctl diagnose run' first."
                ),
            )
        payload = diagnostic.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            _render_diagnostic(payload)
        op.success("Reported cached diagnostic.", changed=0)


@diagnose_app.command("history")
def diagnose_history(
    ctx: typer.Context,
    reference: str = typer.Argument(..., help="Instance id or name."),
    limit: int = typer.Option(10, "--limit", min=1, help="Number of entries to show."),
    stats: bool = typer.Option(False, "--stats", help="Show aggregate statistics instead."),
    days: int = typer.Option(7, "--days", min=1, help="Statistics window in days."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show stored diagnostics or their aggregate statistics."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "diagnose history",
        args={"reference": reference, "limit": limit, "stats": stats, "days": days},
        target={"kind": "instance", "name": reference},
    ) as op:
        instance_id = _resolve_id(runtime, op, reference)
        history = runtime.diagnostics.history
        if history is None:
            _command_error(op, "Diagnostic history is disabled.", rc=int(ExitCode.ENVIRONMENT))
        try:
            payload: Any = (
                history.stats(instance_id, days=days)
                if stats
                else history.get(instance_id, limit=limit)
            )
        except StackError as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data=payload)
        elif stats:
            _render_mapping(payload)
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Saved")
            table.add_column("Healthy")
            table.add_column("Score")
            table.add_column("Critical issues")
            for entry in payload:
                table.add_row(
                    str(entry.get("saved_at", "")),
                    "yes" if entry.get("overall_healthy") else "no",
                    str(entry.get("health_score", "")),
                    str(len(entry.get("critical_issues") or [])),
                )
            console.print(table)
        op.success("Reported diagnostic history.", changed=0)


# ---------------------------------------------------------------------------
# repair
# ---------------------------------------------------------------------------


@repair_app.command("plan")
def repair_plan(
    ctx: typer.Context,
    reference: str = typer.Argument(..., help="Instance id or name."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the repair actions the latest diagnostic would trigger."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "repair plan",
        args={"reference": reference},
        target={"kind": "instance", "name": reference},
    ) as op:
        instance_id = _resolve_id(runtime, op, reference)
        diagnostic = runtime.diagnostics.last(instance_id)
        try:
            if diagnostic is None:
                diagnostic = runtime.diagnostics.run(instance_id)
        except StackError as exc:
            _fail(op, exc)
        plan = plan_repairs(diagnostic)
        payload = {"instance_id": instance_id, **plan.to_dict()}
        if json_output:
            console.print_json(data=payload)
        elif not plan:
            console.print("No repair actions required.")
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Action", style="bold")
            table.add_column("Description")
            table.add_column("Critical")
            table.add_column("Estimate")
            for action in plan.actions:
                table.add_row(
                    action.type,
                    action.description,
                    "yes" if action.critical else "no",
                    f"{action.estimated_time}s",
                )
            console.print(table)
        op.success("Reported repair plan.", changed=0)


@repair_app.command("run")
def repair_run(
    ctx: typer.Context,
    reference: str = typer.Argument(..., help="Instance id or name."),
    force: bool = typer.Option(False, "--force", help="Repair even when healthy."),
    no_wait: bool = NO_WAIT_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Diagnose, back up, repair and verify an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "repair run",
        args={"reference": reference, "force": force},
        target={"kind": "instance", "name": reference},
    ) as op:
        instance_id = _resolve_id(runtime, op, reference)
        try:
            result = runtime.orchestrator.repair(instance_id, force=force, wait=not no_wait)
        except StackError as exc:
            _fail(op, exc)
        _finish(op, result, json_output=json_output, summary="Repair finished.")


@repair_app.command("status")
def repair_status(
    ctx: typer.Context,
    reference: str = typer.Argument(..., help="Instance id or name."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show whether an instance can be repaired automatically."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "repair status",
        args={"reference": reference},
        target={"kind": "instance", "name": reference},
    ) as op:
        instance_id = _resolve_id(runtime, op, reference)
        try:
            entry = runtime.registry.require_instance(instance_id)
            quick = runtime.diagnostics.quick_check(instance_id)
        except StackError as exc:
            _fail(op, exc)
        diagnostic = runtime.diagnostics.last(instance_id)
        payload: dict[str, Any] = {
            "instance_id": instance_id,
            "status": entry.get("status"),
            "manual_intervention_required": bool(entry.get("manual_intervention_required")),
            "last_error": entry.get("last_error"),
            "last_restart": entry.get("last_restart"),
            "healthy": quick["healthy"],
            "quick_check": quick,
            "last_diagnostic": None,
            "planned_actions": [],
        }
        if diagnostic is not None:
            payload["last_diagnostic"] = {
                "timestamp": diagnostic.timestamp,
                "overall_healthy": diagnostic.overall_healthy,
                "health_score": diagnostic.health_score,
                "critical_count": diagnostic.critical_count,
            }
            payload["planned_actions"] = [
                action.type for action in plan_repairs(diagnostic).actions
            ]
        if json_output:
            console.print_json(data=payload)
        else:
            _render_mapping(payload)
            if payload["manual_intervention_required"]:
                console.print(
                    "[red]Manual intervention required:[/red] run "
                    "'stackctl instance restart --force' or restore a backup."
                )
        op.success("Reported repair status.", changed=0)


@repair_app.command("credentials")
def repair_credentials(
    ctx: typer.Context,
    reference: str = typer.Argument(..., help="Instance id or name."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Confirm the rotation."),
    no_wait: bool = NO_WAIT_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Rotate the signing secret and access tokens behind a backup."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "repair credentials",
        args={"reference": reference},
        target={"kind": "instance", "name": reference},
    ) as op:
        instance_id = _resolve_id(runtime, op, reference)
        confirmed = yes or typer.confirm(
            f"Rotate signing credentials of {instance_id}? Existing API keys stop working.",
            default=False,
        )
        if not confirmed:
            console.print("[yellow]Aborted.[/yellow]")
            op.success("Credential rotation cancelled.", changed=0)
            return
        try:
            result = runtime.orchestrator.regenerate_credentials(instance_id, wait=not no_wait)
        except StackError as exc:
            _fail(op, exc)
        _finish(op, result, json_output=json_output, summary="Credentials rotated.")


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


@config_app.command("fields")
def config_fields(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List the fields that can be edited on an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config fields",
        args={"json": json_output},
        target={"kind": "config", "scope": "fields"},
    ) as op:
        payload = {name: field.describe() for name, field in FIELDS.items()}
        if json_output:
            console.print_json(data=payload)
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Field", style="bold")
            table.add_column("Type")
            table.add_column("Restart")
            table.add_column("Description")
            for name, info in payload.items():
                table.add_row(
                    name,
                    str(info["type"]),
                    "yes" if info["requires_restart"] else "no",
                    str(info["description"]),
                )
            console.print(table)
        op.success("Reported editable fields.", changed=0)


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    reference: str | None = typer.Argument(
        None, help="Instance id or name; omit to show the global configuration."
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show an instance's editable configuration, or the global config."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config show",
        args={"reference": reference, "json": json_output},
        target={"kind": "config", "name": reference or "global"},
    ) as op:
        if reference is None:
            payload = runtime.config.to_dict()
            if json_output:
                console.print_json(data=payload)
            else:
                console.print(yaml.safe_dump(payload, sort_keys=False).rstrip())
            op.success("Displayed global configuration.", changed=0)
            return

        instance_id = _resolve_id(runtime, op, reference)
        try:
            payload = runtime.orchestrator.operations.editable_config(instance_id)
        except (StackError, OSError) as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data=payload)
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Field", style="bold")
            table.add_column("Value")
            table.add_column("Restart")
            for name, info in payload["fields"].items():
                table.add_row(
                    name, str(info["value"]), "yes" if info["requires_restart"] else "no"
                )
            console.print(table)
        op.success("Displayed instance configuration.", changed=0)


@config_app.command("set")
def config_set(
    ctx: typer.Context,
    reference: str = typer.Argument(..., help="Instance id or name."),
    field: str = typer.Argument(..., help="Field to change."),
    value: str = typer.Argument(..., help="New value."),
    auto_restart: bool = typer.Option(
        False, "--restart", help="Restart the instance when the field requires it."
    ),
    no_wait: bool = NO_WAIT_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Change one configuration field behind a backup."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config set",
        args={"reference": reference, "field": field, "restart": auto_restart},
        target={"kind": "instance", "name": reference},
    ) as op:
        instance_id = _resolve_id(runtime, op, reference)
        try:
            result = runtime.orchestrator.update_config(
                instance_id, field, value, auto_restart=auto_restart, wait=not no_wait
            )
        except StackError as exc:
            _fail(op, exc)
        _finish(op, result, json_output=json_output, summary="Configuration updated.")


@config_app.command("set-many")
def config_set_many(
    ctx: typer.Context,
    reference: str = typer.Argument(..., help="Instance id or name."),
    assignments: list[str] = typer.Argument(..., help="FIELD=VALUE pairs."),
    auto_restart: bool = typer.Option(
        False, "--restart", help="Restart the instance when a field requires it."
    ),
    no_wait: bool = NO_WAIT_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Change several configuration fields under a single backup."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config set-many",
        args={"reference": reference, "fields": [a.partition("=")[0] for a in assignments]},
        target={"kind": "instance", "name": reference},
    ) as op:
        instance_id = _resolve_id(runtime, op, reference)
        try:
            updates = _parse_assignments(assignments)
            result = runtime.orchestrator.update_config_bulk(
                instance_id, updates, auto_restart=auto_restart, wait=not no_wait
            )
        except StackError as exc:
            _fail(op, exc)
        _finish(op, result, json_output=json_output, summary="Configuration updated.")


# ---------------------------------------------------------------------------
# backup
# ---------------------------------------------------------------------------


@backups_app.command("create")
def backup_create(
    ctx: typer.Context,
    reference: str = typer.Argument(..., help="Instance id or name."),
    reason: str = typer.Option("manual", "--reason", help="Reason recorded on the backup."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Snapshot an instance's configuration and volume."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup create",
        args={"reference": reference, "reason": reason},
        target={"kind": "instance", "name": reference},
    ) as op:
        instance_id = _resolve_id(runtime, op, reference)
        try:
            metadata = runtime.orchestrator.operations.create_backup(instance_id, reason=reason)
        except (StackError, OSError) as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data=metadata)
        else:
            console.print(f"[green]Backup {metadata['backup_id']} created.[/green]")
        op.success("Backup created.", changed=1, context={"backup_id": metadata["backup_id"]})


@backups_app.command("list")
def backup_list(
    ctx: typer.Context,
    reference: str = typer.Argument(..., help="Instance id or name."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List an instance's backups, newest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup list",
        args={"reference": reference},
        target={"kind": "instance", "name": reference},
    ) as op:
        instance_id = _resolve_id(runtime, op, reference)
        try:
            entries = runtime.backups.list_backups(instance_id)
        except StackError as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data={"backups": entries})
            op.success("Reported backups as JSON.", changed=0)
            return
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Backup", style="bold")
        table.add_column("Timestamp")
        table.add_column("Operation")
        if not entries:
            table.add_row("(none)", "", "")
        for entry in entries:
            table.add_row(
                str(entry.get("backup_id", "")),
                str(entry.get("timestamp", "")),
                str(entry.get("operation", "")),
            )
        console.print(table)
        op.success("Reported backups.", changed=0)


@backups_app.command("restore")
def backup_restore(
    ctx: typer.Context,
    reference: str = typer.Argument(..., help="Instance id or name."),
    backup_id: str = typer.Argument(..., help="Backup to restore."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Confirm the restore."),
    no_wait: bool = NO_WAIT_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Restore a backup and restart the instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup restore",
        args={"reference": reference, "backup_id": backup_id},
        target={"kind": "instance", "name": reference},
    ) as op:
        instance_id = _resolve_id(runtime, op, reference)
        confirmed = yes or typer.confirm(
            f"Restore {instance_id} from {backup_id}? Current state will be replaced.",
            default=False,
        )
        if not confirmed:
            console.print("[yellow]Aborted.[/yellow]")
            op.success("Restore cancelled.", changed=0)
            return
        try:
            result = runtime.orchestrator.restore(
                instance_id, backup_id, confirm=True, wait=not no_wait
            )
        except StackError as exc:
            _fail(op, exc)
        _finish(op, result, json_output=json_output, summary="Backup restored.", changed=2)


@backups_app.command("delete")
def backup_delete(
    ctx: typer.Context,
    reference: str = typer.Argument(..., help="Instance id or name."),
    backup_id: str = typer.Argument(..., help="Backup to delete."),
) -> None:
    """Delete one backup."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup delete",
        args={"reference": reference, "backup_id": backup_id},
        target={"kind": "instance", "name": reference},
    ) as op:
        instance_id = _resolve_id(runtime, op, reference)
        try:
            runtime.backups.delete_backup(instance_id, backup_id)
        except StackError as exc:
            _fail(op, exc)
        console.print(f"[green]Backup {backup_id} deleted.[/green]")
        op.success("Backup deleted.", changed=1)


# ---------------------------------------------------------------------------
# operation
# ---------------------------------------------------------------------------


@operations_app.command("status")
def operation_status(
    ctx: typer.Context,
    operation_id: str = typer.Argument(..., help="Identifier returned by a tracked command."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the status of a tracked operation, including ones started elsewhere."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "operation status",
        args={"operation_id": operation_id},
        target={"kind": "operation", "name": operation_id},
    ) as op:
        try:
            payload = runtime.orchestrator.status(operation_id)
        except StackError as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data=payload)
        else:
            _render_mapping(payload)
        op.success("Reported operation status.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
