"""Configuration loader for stackctl.

Configuration values are merged from several sources, later sources winning:

1. Built-in defaults.
2. ``/etc/stackctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``STACKCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export STACKCTL_PORTS__MAX_ATTEMPTS=200
    export STACKCTL_DIAGNOSTICS__COOLDOWN=60

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "STACKCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

PORT_ROLES: tuple[str, ...] = (
    "gateway_http",
    "gateway_tls",
    "database",
    "pooler",
    "analytics",
)


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PortRange:
    """Inclusive numeric range a port role draws from."""

    start: int
    end: int

    def __contains__(self, port: object) -> bool:
        return isinstance(port, int) and self.start <= port <= self.end

    @property
    def size(self) -> int:
        """Return the number of ports in the range."""
        return self.end - self.start + 1

    def overlaps(self, other: PortRange) -> bool:
        """Return ``True`` when both ranges share at least one port."""
        return self.start <= other.end and other.start <= self.end

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"start": self.start, "end": self.end}


@dataclass(frozen=True)
class PortsConfig:
    """Port allocation ranges per role."""

    ranges: Mapping[str, PortRange]
    max_attempts: int = 100

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "ranges": {role: value.to_dict() for role, value in self.ranges.items()},
            "max_attempts": self.max_attempts,
        }


@dataclass(frozen=True)
class RuntimeConfig:
    """Container runtime binary and per-call timeouts (seconds)."""

    docker_bin: str = "docker"
    inspect_timeout: float = 10.0
    stop_timeout: float = 30.0
    kill_timeout: float = 15.0
    start_timeout: float = 60.0
    exec_timeout: float = 10.0
    health_wait: float = 60.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "docker_bin": self.docker_bin,
            "inspect_timeout": self.inspect_timeout,
            "stop_timeout": self.stop_timeout,
            "kill_timeout": self.kill_timeout,
            "start_timeout": self.start_timeout,
            "exec_timeout": self.exec_timeout,
            "health_wait": self.health_wait,
        }


@dataclass(frozen=True)
class DiagnosticsConfig:
    """Diagnostic engine tunables."""

    cooldown: float = 120.0
    cache_ttl: float = 300.0
    history_limit: int = 100
    disk_warn_bytes: int = 5 * 1024**3
    request_timeout: float = 5.0
    max_concurrency: int = 6

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "cooldown": self.cooldown,
            "cache_ttl": self.cache_ttl,
            "history_limit": self.history_limit,
            "disk_warn_bytes": self.disk_warn_bytes,
            "request_timeout": self.request_timeout,
            "max_concurrency": self.max_concurrency,
        }


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage and retention defaults."""

    root: Path
    retention: int = 10

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"root": str(self.root), "retention": self.retention}


@dataclass(frozen=True)
class OperationsConfig:
    """Tracked operation wait/retention windows (seconds)."""

    wait_timeout: float = 300.0
    retention: float = 3600.0
    max_workers: int = 4

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "wait_timeout": self.wait_timeout,
            "retention": self.retention,
            "max_workers": self.max_workers,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for stackctl."""

    config_file: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    stacks_dir: Path
    templates_dir: Path | None
    server_ip: str
    max_instances: int
    lock_timeout: float
    ports: PortsConfig
    runtime: RuntimeConfig
    diagnostics: DiagnosticsConfig
    backups: BackupConfig
    operations: OperationsConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "stacks_dir": str(self.stacks_dir),
            "templates_dir": str(self.templates_dir) if self.templates_dir else None,
            "server_ip": self.server_ip,
            "max_instances": self.max_instances,
            "lock_timeout": self.lock_timeout,
            "ports": self.ports.to_dict(),
            "runtime": self.runtime.to_dict(),
            "diagnostics": self.diagnostics.to_dict(),
            "backups": self.backups.to_dict(),
            "operations": self.operations.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/stackctl/config.yml",
    "state_dir": "/var/lib/stackctl",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/stackctl",
    "runtime_dir": "/run/stackctl",
    "stacks_dir": "/srv/stacks",
    "templates_dir": None,
    "server_ip": "localhost",
    "max_instances": 50,
    "lock_timeout": 30.0,
    "ports": {
        "max_attempts": 100,
        "ranges": {
            "gateway_http": {"start": 8100, "end": 8199},
            "gateway_tls": {"start": 8400, "end": 8499},
            "database": {"start": 5500, "end": 5599},
            "pooler": {"start": 6500, "end": 6599},
            "analytics": {"start": 4100, "end": 4199},
        },
    },
    "runtime": {
        "docker_bin": "docker",
        "inspect_timeout": 10.0,
        "stop_timeout": 30.0,
        "kill_timeout": 15.0,
        "start_timeout": 60.0,
        "exec_timeout": 10.0,
        "health_wait": 60.0,
    },
    "diagnostics": {
        "cooldown": 120.0,
        "cache_ttl": 300.0,
        "history_limit": 100,
        "disk_warn_bytes": 5 * 1024**3,
        "request_timeout": 5.0,
        "max_concurrency": 6,
    },
    "backups": {
        "root": None,  # derived from state_dir when absent
        "retention": 10,
    },
    "operations": {
        "wait_timeout": 300.0,
        "retention": 3600.0,
        "max_workers": 4,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "ports": {"max_attempts", "ranges"},
    "runtime": set(cast(Mapping[str, object], DEFAULTS["runtime"]).keys()),
    "diagnostics": set(cast(Mapping[str, object], DEFAULTS["diagnostics"]).keys()),
    "backups": {"root", "retention"},
    "operations": set(cast(Mapping[str, object], DEFAULTS["operations"]).keys()),
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    ports_map = _as_dict(raw.get("ports"), "ports")
    ranges_map = _as_dict(ports_map.get("ranges"), "ports.ranges")
    unknown_roles = set(ranges_map.keys()) - set(PORT_ROLES)
    if unknown_roles:
        joined = ", ".join(sorted(unknown_roles))
        raise ConfigError(f"Unknown port roles: {joined}.")


def _build_port_ranges(raw: Mapping[str, object]) -> dict[str, PortRange]:
    ranges: dict[str, PortRange] = {}
    for role in PORT_ROLES:
        mapping = _as_dict(raw.get(role), f"ports.ranges.{role}")
        unknown = set(mapping.keys()) - {"start", "end"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown keys for ports.ranges.{role}: {joined}.")
        if "start" not in mapping or "end" not in mapping:
            raise ConfigError(f"ports.ranges.{role} requires both 'start' and 'end'.")
        start = _expect_int(mapping.get("start"), f"ports.ranges.{role}.start", default=0)
        end = _expect_int(mapping.get("end"), f"ports.ranges.{role}.end", default=0)
        if start < 1 or end > 65535 or start > end:
            raise ConfigError(
                f"ports.ranges.{role} must satisfy 1 <= start <= end <= 65535 "
                f"(got {start}-{end})."
            )
        ranges[role] = PortRange(start=start, end=end)

    roles = list(ranges)
    for index, role in enumerate(roles):
        for other in roles[index + 1 :]:
            if ranges[role].overlaps(ranges[other]):
                raise ConfigError(f"Port ranges for '{role}' and '{other}' overlap.")
    return ranges


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    stacks_dir = _to_path(raw.get("stacks_dir"))
    templates_value = raw.get("templates_dir")
    templates_dir = _to_path(templates_value) if templates_value else None
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"

    server_ip = str(raw.get("server_ip") or "localhost").strip()
    if not server_ip:
        raise ConfigError("server_ip must be a non-empty string.")
    max_instances = _expect_int(raw.get("max_instances"), "max_instances", default=50)
    if max_instances < 1:
        raise ConfigError("max_instances must be at least 1.")

    ports_mapping = _as_dict(raw.get("ports"), "ports")
    max_attempts = _expect_int(ports_mapping.get("max_attempts"), "ports.max_attempts", default=100)
    if max_attempts < 1:
        raise ConfigError("ports.max_attempts must be at least 1.")
    ports = PortsConfig(
        ranges=_build_port_ranges(_as_dict(ports_mapping.get("ranges"), "ports.ranges")),
        max_attempts=max_attempts,
    )

    runtime_mapping = _as_dict(raw.get("runtime"), "runtime")
    defaults_runtime = RuntimeConfig()
    runtime = RuntimeConfig(
        docker_bin=str(runtime_mapping.get("docker_bin") or defaults_runtime.docker_bin),
        **{
            key: _expect_positive_float(
                runtime_mapping.get(key),
                f"runtime.{key}",
                default=getattr(defaults_runtime, key),
            )
            for key in (
                "inspect_timeout",
                "stop_timeout",
                "kill_timeout",
                "start_timeout",
                "exec_timeout",
                "health_wait",
            )
        },
    )

    diagnostics_mapping = _as_dict(raw.get("diagnostics"), "diagnostics")
    defaults_diag = DiagnosticsConfig()
    diagnostics = DiagnosticsConfig(
        cooldown=_expect_non_negative_float(
            diagnostics_mapping.get("cooldown"),
            "diagnostics.cooldown",
            default=defaults_diag.cooldown,
        ),
        cache_ttl=_expect_non_negative_float(
            diagnostics_mapping.get("cache_ttl"),
            "diagnostics.cache_ttl",
            default=defaults_diag.cache_ttl,
        ),
        history_limit=_expect_int(
            diagnostics_mapping.get("history_limit"),
            "diagnostics.history_limit",
            default=defaults_diag.history_limit,
        ),
        disk_warn_bytes=_expect_int(
            diagnostics_mapping.get("disk_warn_bytes"),
            "diagnostics.disk_warn_bytes",
            default=defaults_diag.disk_warn_bytes,
        ),
        request_timeout=_expect_positive_float(
            diagnostics_mapping.get("request_timeout"),
            "diagnostics.request_timeout",
            default=defaults_diag.request_timeout,
        ),
        max_concurrency=_expect_int(
            diagnostics_mapping.get("max_concurrency"),
            "diagnostics.max_concurrency",
            default=defaults_diag.max_concurrency,
        ),
    )
    if diagnostics.history_limit < 1:
        raise ConfigError("diagnostics.history_limit must be at least 1.")

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    backups_root_value = backups_mapping.get("root")
    backups_root = _to_path(backups_root_value) if backups_root_value else state_dir / "backups"
    retention = _expect_int(backups_mapping.get("retention"), "backups.retention", default=10)
    if retention < 1:
        raise ConfigError("backups.retention must be at least 1.")
    backups = BackupConfig(root=backups_root, retention=retention)

    operations_mapping = _as_dict(raw.get("operations"), "operations")
    defaults_ops = OperationsConfig()
    operations = OperationsConfig(
        wait_timeout=_expect_non_negative_float(
            operations_mapping.get("wait_timeout"),
            "operations.wait_timeout",
            default=defaults_ops.wait_timeout,
        ),
        retention=_expect_positive_float(
            operations_mapping.get("retention"),
            "operations.retention",
            default=defaults_ops.retention,
        ),
        max_workers=_expect_int(
            operations_mapping.get("max_workers"),
            "operations.max_workers",
            default=defaults_ops.max_workers,
        ),
    )

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        stacks_dir=stacks_dir,
        templates_dir=templates_dir,
        server_ip=server_ip,
        max_instances=max_instances,
        lock_timeout=lock_timeout,
        ports=ports,
        runtime=runtime,
        diagnostics=diagnostics,
        backups=backups,
        operations=operations,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_float(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupConfig",
    "ConfigError",
    "DiagnosticsConfig",
    "OperationsConfig",
    "PORT_ROLES",
    "PortRange",
    "PortsConfig",
    "RuntimeConfig",
    "load_config",
]
