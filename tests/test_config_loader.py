"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from stackctl.config import AppConfig, ConfigError, PortRange, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.state_dir == Path("/var/lib/stackctl")
    assert config.registry_dir == Path("/var/lib/stackctl/registry")
    assert config.backups.root == Path("/var/lib/stackctl/backups")
    assert config.backups.retention == 10
    assert config.server_ip == "localhost"
    assert config.max_instances == 50
    assert config.templates_dir is None
    assert config.ports.ranges["gateway_http"] == PortRange(8100, 8199)
    assert config.ports.ranges["database"] == PortRange(5500, 5599)
    assert config.diagnostics.cooldown == 120.0
    assert config.diagnostics.cache_ttl == 300.0
    assert config.operations.wait_timeout == 300.0


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "stackctl.yml"
    cfg.write_text(
        "server_ip: 10.0.0.5\n"
        "max_instances: 3\n"
        "ports:\n"
        "  ranges:\n"
        "    gateway_http: {start: 9000, end: 9009}\n"
        "runtime:\n"
        "  health_wait: 15\n"
        "backups:\n"
        f"  root: {tmp_path / 'backups'}\n"
        "  retention: 4\n",
        encoding="utf-8",
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.server_ip == "10.0.0.5"
    assert config.max_instances == 3
    assert config.ports.ranges["gateway_http"] == PortRange(9000, 9009)
    # Roles absent from the file keep their defaults.
    assert config.ports.ranges["pooler"] == PortRange(6500, 6599)
    assert config.runtime.health_wait == 15.0
    assert config.backups.root == tmp_path / "backups"
    assert config.backups.retention == 4


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "stackctl.yml"
    cfg.write_text("max_instances: 3\nlock_timeout: 10\n", encoding="utf-8")
    state_dir = tmp_path / "state"
    env = {
        "STACKCTL_CONFIG_FILE": str(cfg),
        "STACKCTL_STATE_DIR": str(state_dir),
        "STACKCTL_MAX_INSTANCES": "7",
        "STACKCTL_DIAGNOSTICS__COOLDOWN": "60",
        "STACKCTL_PORTS__MAX_ATTEMPTS": "200",
        "UNRELATED": "ignored",
    }

    config = load_config(env=env)

    assert config.config_file == cfg
    assert config.max_instances == 7
    assert config.lock_timeout == 10.0
    assert config.state_dir == state_dir
    assert config.registry_dir == state_dir / "registry"
    assert config.backups.root == state_dir / "backups"
    assert config.diagnostics.cooldown == 60.0
    assert config.ports.max_attempts == 200


def test_explicit_overrides_win_over_environment(tmp_path: Path) -> None:
    """Programmatic overrides are applied last."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={"STACKCTL_SERVER_IP": "192.168.1.2"},
        overrides={"server_ip": "203.0.113.9"},
    )

    assert config.server_ip == "203.0.113.9"


def test_unknown_keys_are_rejected(tmp_path: Path) -> None:
    """Typos in the config file fail loudly."""
    cfg = tmp_path / "stackctl.yml"
    cfg.write_text("max_instance: 3\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Unknown configuration keys: max_instance"):
        load_config(config_file=cfg, env={})


def test_unknown_section_keys_are_rejected(tmp_path: Path) -> None:
    """Unknown keys inside a section are reported with the section name."""
    with pytest.raises(ConfigError, match="Unknown diagnostics configuration keys"):
        load_config(
            config_file=tmp_path / "missing.yml",
            env={},
            overrides={"diagnostics": {"cooldwn": 5}},
        )


def test_overlapping_port_ranges_are_rejected(tmp_path: Path) -> None:
    """Two roles may not draw from the same ports."""
    with pytest.raises(ConfigError, match="overlap"):
        load_config(
            config_file=tmp_path / "missing.yml",
            env={},
            overrides={"ports": {"ranges": {"pooler": {"start": 8150, "end": 8160}}}},
        )


def test_invalid_port_range_is_rejected(tmp_path: Path) -> None:
    """A range must be ordered and inside the TCP port space."""
    with pytest.raises(ConfigError, match="1 <= start <= end <= 65535"):
        load_config(
            config_file=tmp_path / "missing.yml",
            env={},
            overrides={"ports": {"ranges": {"analytics": {"start": 4199, "end": 4100}}}},
        )


def test_non_positive_timeouts_are_rejected(tmp_path: Path) -> None:
    """Runtime timeouts must be greater than zero."""
    with pytest.raises(ConfigError, match="runtime.stop_timeout must be greater than zero"):
        load_config(
            config_file=tmp_path / "missing.yml",
            env={},
            overrides={"runtime": {"stop_timeout": 0}},
        )


def test_config_file_must_be_mapping(tmp_path: Path) -> None:
    """A YAML list at the top level is rejected."""
    cfg = tmp_path / "stackctl.yml"
    cfg.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="must contain a mapping"):
        load_config(config_file=cfg, env={})


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    """The resolved config renders to plain types."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    payload = config.to_dict()

    assert payload["registry_dir"] == "/var/lib/stackctl/registry"
    assert payload["ports"]["ranges"]["gateway_http"] == {"start": 8100, "end": 8199}
    assert payload["runtime"]["docker_bin"] == "docker"
