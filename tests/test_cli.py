"""Tests for the stackctl command line."""
from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
import yaml
from typer.testing import CliRunner

from stackctl import __version__
from stackctl.cli import app
from stackctl.exit_codes import ExitCode

if TYPE_CHECKING:
    from conftest import FakeProber, FakeRuntime

runner = CliRunner()


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def _prepare_environment(
    tmp_path: Path, *, config_overrides: dict[str, object] | None = None
) -> dict[str, str]:
    config = {
        "state_dir": str(tmp_path / "state"),
        "logs_dir": str(tmp_path / "logs"),
        "runtime_dir": str(tmp_path / "run"),
        "stacks_dir": str(tmp_path / "stacks"),
        "lock_timeout": 2,
        "runtime": {"health_wait": 0.05},
        "operations": {"wait_timeout": 30},
    }
    if config_overrides:
        config.update(config_overrides)
    config_path = tmp_path / "config.yml"
    config_path.write_text(yaml.safe_dump(config), encoding="utf-8")
    return {"STACKCTL_CONFIG_FILE": str(config_path)}


@pytest.fixture()
def cli_env(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    fake_runtime: FakeRuntime,
    fake_prober: FakeProber,
) -> dict[str, str]:
    """Environment for a CLI whose runtime and prober are the in-memory fakes."""
    monkeypatch.setattr("stackctl.cli.DockerRuntime", lambda **_kwargs: fake_runtime)
    monkeypatch.setattr("stackctl.cli.HttpxProber", lambda: fake_prober)
    return _prepare_environment(tmp_path)


def _create(env: dict[str, str], name: str = "demo") -> dict[str, object]:
    result = runner.invoke(app, ["instance", "create", name, "--json"], env=env)
    assert result.exit_code == 0, result.stdout
    return _extract_json(result.stdout)


def _last_operation(tmp_path: Path) -> dict[str, object]:
    lines = (tmp_path / "logs" / "operations.jsonl").read_text(encoding="utf-8").splitlines()
    return json.loads(lines[-1])


def test_version_option_outputs_package_version(tmp_path: Path) -> None:
    """CLI ``--version`` flag emits the package version."""
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["--version"], env=env)

    assert result.exit_code == 0
    assert f"stackctl {__version__}" in result.stdout


def test_invocation_without_subcommand_shows_help(tmp_path: Path) -> None:
    """Calling the CLI without a subcommand shows help output."""
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, env=env)

    assert result.exit_code == 0
    assert "Multi-tenant control plane" in result.stdout


def test_invalid_config_exits_with_environment_code(tmp_path: Path) -> None:
    """Configuration errors stop the CLI before any command runs."""
    env = _prepare_environment(tmp_path, config_overrides={"surprise": True})

    result = runner.invoke(app, ["config", "fields"], env=env)

    assert result.exit_code == ExitCode.ENVIRONMENT
    assert "surprise" in result.stdout


def test_config_show_json(tmp_path: Path) -> None:
    """`config show --json` emits the resolved global configuration."""
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["config", "show", "--json"], env=env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["state_dir"] == str(tmp_path / "state")
    assert payload["registry_dir"] == str(tmp_path / "state" / "registry")


def test_config_fields_json(tmp_path: Path) -> None:
    """`config fields --json` describes every editable field."""
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["config", "fields", "--json"], env=env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["dashboard_password"]["requires_restart"] is True
    assert payload["name"]["requires_restart"] is False


def test_instance_create_list_and_show(tmp_path: Path, cli_env: dict[str, str]) -> None:
    """Created instances are listed and shown without their secrets."""
    created = _create(cli_env)

    listed = runner.invoke(app, ["instance", "list", "--json"], env=cli_env)
    assert listed.exit_code == 0, listed.stdout
    payload = _extract_json(listed.stdout)
    assert [entry["id"] for entry in payload["instances"]] == [created["id"]]
    assert payload["stats"]["total"] == 1

    shown = runner.invoke(app, ["instance", "show", "demo", "--json"], env=cli_env)
    assert shown.exit_code == 0, shown.stdout
    entry = _extract_json(shown.stdout)
    assert "credentials" not in entry
    assert "db" not in entry["urls"]
    assert str(created["credentials"]["postgres_password"]) not in shown.stdout

    record = _last_operation(tmp_path)
    assert record["command"] == "instance show"
    assert record["result"]["status"] == "success"


def test_duplicate_name_is_a_validation_error(cli_env: dict[str, str]) -> None:
    """Creating a second instance with the same name fails with exit code 2."""
    _create(cli_env)

    result = runner.invoke(app, ["instance", "create", "DEMO"], env=cli_env)

    assert result.exit_code == ExitCode.VALIDATION


def test_unknown_instance_reference(tmp_path: Path, cli_env: dict[str, str]) -> None:
    """Unknown ids or names exit with the validation code and are logged."""
    result = runner.invoke(app, ["diagnose", "quick", "nope"], env=cli_env)

    assert result.exit_code == ExitCode.VALIDATION
    record = _last_operation(tmp_path)
    assert record["result"]["status"] == "error"


def test_config_set_and_show(cli_env: dict[str, str]) -> None:
    """Setting a restart-requiring field reports the pending restart."""
    _create(cli_env)

    result = runner.invoke(
        app, ["config", "set", "demo", "organization", "Acme Corp", "--json"], env=cli_env
    )
    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["restart_required"] is True
    assert payload["new_value"] == "Acme Corp"

    shown = runner.invoke(app, ["config", "show", "demo", "--json"], env=cli_env)
    fields = _extract_json(shown.stdout)["fields"]
    assert fields["organization"]["value"] == "Acme Corp"
    assert fields["dashboard_password"]["value"] == "********"


def test_config_set_rejects_invalid_values(cli_env: dict[str, str]) -> None:
    """Invalid values exit with the validation code."""
    _create(cli_env)

    result = runner.invoke(app, ["config", "set", "demo", "jwt_expiry", "5"], env=cli_env)

    assert result.exit_code == ExitCode.VALIDATION
    assert "jwt_expiry" in result.stdout


def test_config_set_many_requires_assignments(cli_env: dict[str, str]) -> None:
    """Malformed FIELD=VALUE pairs are rejected."""
    _create(cli_env)

    result = runner.invoke(app, ["config", "set-many", "demo", "organization"], env=cli_env)

    assert result.exit_code == ExitCode.VALIDATION


def test_forced_restart(cli_env: dict[str, str]) -> None:
    """`instance restart --force` restarts and verifies the instance."""
    _create(cli_env)

    result = runner.invoke(app, ["instance", "restart", "demo", "--force", "--json"], env=cli_env)

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["restart_performed"] is True
    assert payload["backup_created"]


def test_failed_restart_reports_rollback(
    cli_env: dict[str, str], fake_runtime: FakeRuntime
) -> None:
    """A rolled-back restart prints its details and exits with the provider code."""
    _create(cli_env)
    fake_runtime.fail_next("compose_up")

    result = runner.invoke(app, ["instance", "restart", "demo", "--force", "--json"], env=cli_env)

    assert result.exit_code == ExitCode.PROVIDER
    payload = _extract_json(result.stdout)
    assert payload["rollback_performed"] is True


def test_backup_create_list_and_restore(cli_env: dict[str, str]) -> None:
    """Backups can be created, listed and restored once confirmed."""
    _create(cli_env)

    created = runner.invoke(
        app, ["backup", "create", "demo", "--reason", "nightly", "--json"], env=cli_env
    )
    assert created.exit_code == 0, created.stdout
    backup_id = _extract_json(created.stdout)["backup_id"]

    listed = runner.invoke(app, ["backup", "list", "demo", "--json"], env=cli_env)
    entries = _extract_json(listed.stdout)["backups"]
    assert [entry["backup_id"] for entry in entries] == [backup_id]
    assert entries[0]["operation"] == "nightly"

    declined = runner.invoke(
        app, ["backup", "restore", "demo", backup_id], input="n\n", env=cli_env
    )
    assert declined.exit_code == 0
    assert "Aborted" in declined.stdout

    restored = runner.invoke(
        app, ["backup", "restore", "demo", backup_id, "--yes", "--json"], env=cli_env
    )
    assert restored.exit_code == 0, restored.stdout
    assert _extract_json(restored.stdout)["restore_performed"] is True


def test_diagnose_run_and_history(cli_env: dict[str, str], fake_prober: FakeProber) -> None:
    """A diagnostic run is printed and stored in the history."""
    _create(cli_env)
    fake_prober.statuses["/auth/v1/health"] = 503

    result = runner.invoke(app, ["diagnose", "run", "demo"], env=cli_env)
    assert result.exit_code == 0, result.stdout
    assert "unhealthy" in result.stdout

    history = runner.invoke(app, ["diagnose", "history", "demo", "--json"], env=cli_env)
    assert history.exit_code == 0, history.stdout
    assert '"overall_healthy": false' in history.stdout


def test_repair_plan_lists_actions(cli_env: dict[str, str], fake_runtime: FakeRuntime) -> None:
    """`repair plan` shows the actions for the current problems."""
    created = _create(cli_env)
    fake_runtime.db_ready = False
    fake_runtime.running.discard(f"supabase-auth-{created['id']}")

    result = runner.invoke(app, ["repair", "plan", "demo", "--json"], env=cli_env)

    assert result.exit_code == 0, result.stdout
    actions = [action["type"] for action in _extract_json(result.stdout)["actions"]]
    assert actions[:2] == ["restart_containers", "restart_database"]


def test_unknown_operation_status(cli_env: dict[str, str]) -> None:
    """An id with no in-memory or stored record is a validation error."""
    result = runner.invoke(app, ["operation", "status", "restart_x_1"], env=cli_env)

    assert result.exit_code == ExitCode.VALIDATION


def test_operation_status_from_another_invocation(cli_env: dict[str, str]) -> None:
    """An id returned by `--no-wait` resolves from a later `operation status` call."""
    _create(cli_env)

    started = runner.invoke(
        app, ["instance", "restart", "demo", "--force", "--no-wait", "--json"], env=cli_env
    )
    assert started.exit_code == 0, started.stdout
    operation_id = _extract_json(started.stdout)["operation_id"]

    status = runner.invoke(app, ["operation", "status", str(operation_id), "--json"], env=cli_env)

    assert status.exit_code == 0, status.stdout
    payload = _extract_json(status.stdout)
    assert payload["operation_id"] == operation_id
    assert payload["kind"] == "restart"
    assert payload["status"] in {"running", "completed"}


def test_diagnose_run_cooldown_spans_invocations(tmp_path: Path, cli_env: dict[str, str]) -> None:
    """A second `diagnose run` inside the cooldown is refused with a retry hint."""
    _create(cli_env)

    first = runner.invoke(app, ["diagnose", "run", "demo"], env=cli_env)
    assert first.exit_code == 0, first.stdout

    second = runner.invoke(app, ["diagnose", "run", "demo"], env=cli_env)

    assert second.exit_code == ExitCode.VALIDATION
    assert "retry in" in second.stdout
    result = _last_operation(tmp_path)["result"]
    assert result["context"]["retry_after"] > 0


def test_diagnose_last_reads_the_previous_run(cli_env: dict[str, str]) -> None:
    """`diagnose last` reports the diagnostic stored by an earlier `diagnose run`."""
    created = _create(cli_env)

    missing = runner.invoke(app, ["diagnose", "last", "demo"], env=cli_env)
    assert missing.exit_code == ExitCode.VALIDATION
    assert "No recent diagnostic" in missing.stdout

    assert runner.invoke(app, ["diagnose", "run", "demo"], env=cli_env).exit_code == 0
    last = runner.invoke(app, ["diagnose", "last", "demo", "--json"], env=cli_env)

    assert last.exit_code == 0, last.stdout
    payload = _extract_json(last.stdout)
    assert payload["instance_id"] == created["id"]
    assert payload["overall_healthy"] is True


def test_repair_status_summarises_instance(
    cli_env: dict[str, str], fake_prober: FakeProber
) -> None:
    """`repair status` combines registry flags, a quick check and the cached plan."""
    _create(cli_env)

    before = runner.invoke(app, ["repair", "status", "demo", "--json"], env=cli_env)
    assert before.exit_code == 0, before.stdout
    payload = _extract_json(before.stdout)
    assert payload["manual_intervention_required"] is False
    assert payload["healthy"] is True
    assert payload["last_diagnostic"] is None

    fake_prober.statuses["/auth/v1/health"] = 503
    assert runner.invoke(app, ["diagnose", "run", "demo"], env=cli_env).exit_code == 0
    after = runner.invoke(app, ["repair", "status", "demo", "--json"], env=cli_env)

    assert after.exit_code == 0, after.stdout
    payload = _extract_json(after.stdout)
    assert payload["healthy"] is False
    assert payload["last_diagnostic"]["overall_healthy"] is False
    assert "restart_auth_service" in payload["planned_actions"]


def test_repair_credentials_rotates_keys(cli_env: dict[str, str]) -> None:
    """`repair credentials --yes` rotates the signing keys behind a backup."""
    _create(cli_env)

    result = runner.invoke(app, ["repair", "credentials", "demo", "--yes", "--json"], env=cli_env)

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["credentials_rotated"] is True
    assert payload["backup_created"]
    assert payload["rotated_keys"] == ["anon_key", "jwt_secret", "service_role_key"]
