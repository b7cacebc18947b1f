"""Typed registry of the instance fields operators may edit.

Each :class:`ConfigField` names where the value lives (a path inside the
registry entry, an environment-file variable, or both), how input is
validated and coerced, and whether the stack must restart to pick it up.
"""
from __future__ import annotations

import re
from collections.abc import Callable, Mapping, MutableMapping
from dataclasses import dataclass
from typing import Any

from .errors import ValidationError

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_\- ]+$")
_USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")
JWT_EXPIRY_MIN = 300
JWT_EXPIRY_MAX = 86400
MASK = "********"


def _non_empty_string(value: object, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{label} must be a non-empty string.", field=label)
    return value.strip()


def _length_between(value: str, low: int, high: int, label: str) -> str:
    if not low <= len(value) <= high:
        raise ValidationError(
            f"{label} must be between {low} and {high} characters.", field=label
        )
    return value


def validate_name(value: object) -> str:
    """Display name: 2-50 letters, digits, spaces, dashes or underscores."""
    name = _length_between(_non_empty_string(value, "name"), 2, 50, "name")
    if not _NAME_PATTERN.match(name):
        raise ValidationError("name contains invalid characters.", field="name")
    return name


def validate_username(value: object) -> str:
    """Dashboard user: 3-30 letters, digits or underscores."""
    username = _length_between(
        _non_empty_string(value, "dashboard_username"), 3, 30, "dashboard_username"
    )
    if not _USERNAME_PATTERN.match(username):
        raise ValidationError(
            "dashboard_username may contain only letters, digits and underscores.",
            field="dashboard_username",
        )
    return username


def validate_password(value: object) -> str:
    """Dashboard password: any non-empty string up to 100 characters."""
    if not isinstance(value, str) or not value:
        raise ValidationError(
            "dashboard_password must be a non-empty string.", field="dashboard_password"
        )
    return _length_between(value, 1, 100, "dashboard_password")


def validate_organization(value: object) -> str:
    """Organization: 2-100 characters after trimming."""
    return _length_between(_non_empty_string(value, "organization"), 2, 100, "organization")


def validate_boolean(value: object) -> bool:
    """Accept a real bool or the strings ``"true"``/``"false"``."""
    if isinstance(value, bool):
        return value
    if value in ("true", "false"):
        return value == "true"
    raise ValidationError("Value must be true or false.")


def validate_jwt_expiry(value: object) -> int:
    """Token lifetime in seconds, bounded by the JWT_EXPIRY_* limits."""
    if isinstance(value, bool):
        raise ValidationError("jwt_expiry must be an integer.", field="jwt_expiry")
    try:
        number = int(str(value).strip()) if not isinstance(value, int) else value
    except ValueError as exc:
        raise ValidationError("jwt_expiry must be an integer.", field="jwt_expiry") from exc
    if not JWT_EXPIRY_MIN <= number <= JWT_EXPIRY_MAX:
        raise ValidationError(
            f"jwt_expiry must be between {JWT_EXPIRY_MIN} and {JWT_EXPIRY_MAX} seconds.",
            field="jwt_expiry",
        )
    return number


@dataclass(frozen=True, slots=True)
class ConfigField:
    """Descriptor for one editable instance field."""

    name: str
    type: type
    description: str
    validator: Callable[[object], Any]
    requires_restart: bool
    registry_path: tuple[str, ...] | None = None
    env_var: str | None = None
    unique: bool = False
    secret: bool = False

    def describe(self) -> dict[str, object]:
        """Return the public description of the field."""
        return {
            "type": self.type.__name__,
            "description": self.description,
            "requires_restart": self.requires_restart,
            "env_var": self.env_var,
        }

    def env_value(self, value: object) -> str:
        """Render *value* for the environment file."""
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)


FIELDS: dict[str, ConfigField] = {
    field.name: field
    for field in (
        ConfigField(
            name="name",
            type=str,
            description="Instance display name",
            validator=validate_name,
            requires_restart=False,
            registry_path=("name",),
            unique=True,
        ),
        ConfigField(
            name="dashboard_username",
            type=str,
            description="Dashboard user name",
            validator=validate_username,
            requires_restart=True,
            registry_path=("credentials", "dashboard_username"),
            env_var="DASHBOARD_USERNAME",
        ),
        ConfigField(
            name="dashboard_password",
            type=str,
            description="Dashboard password",
            validator=validate_password,
            requires_restart=True,
            registry_path=("credentials", "dashboard_password"),
            env_var="DASHBOARD_PASSWORD",
            secret=True,
        ),
        ConfigField(
            name="organization",
            type=str,
            description="Organization name shown in the dashboard",
            validator=validate_organization,
            requires_restart=True,
            registry_path=("config", "organization"),
            env_var="STUDIO_DEFAULT_ORGANIZATION",
        ),
        ConfigField(
            name="disable_signup",
            type=bool,
            description="Disable new user sign-ups",
            validator=validate_boolean,
            requires_restart=True,
            env_var="DISABLE_SIGNUP",
        ),
        ConfigField(
            name="enable_email_autoconfirm",
            type=bool,
            description="Confirm e-mail addresses automatically",
            validator=validate_boolean,
            requires_restart=True,
            env_var="ENABLE_EMAIL_AUTOCONFIRM",
        ),
        ConfigField(
            name="jwt_expiry",
            type=int,
            description="Access token lifetime in seconds",
            validator=validate_jwt_expiry,
            requires_restart=True,
            env_var="JWT_EXPIRY",
        ),
    )
}


def get_field(name: str) -> ConfigField:
    """Return the descriptor for *name*, rejecting non-editable fields."""
    field = FIELDS.get(name)
    if field is None:
        raise ValidationError(f"Field '{name}' is not editable.", field=name)
    return field


def validate_value(
    field: ConfigField,
    value: object,
    *,
    instance_id: str,
    instances: Mapping[str, Mapping[str, Any]],
) -> Any:
    """Validate and coerce *value*; unique fields are checked against *instances*."""
    coerced = field.validator(value)
    if field.unique:
        lowered = str(coerced).lower()
        for other_id, entry in instances.items():
            if other_id == instance_id:
                continue
            if str(entry.get(field.name, "")).lower() == lowered:
                raise ValidationError(
                    f"An instance with {field.name} '{coerced}' already exists.",
                    field=field.name,
                )
    return coerced


def _parse_env(field: ConfigField, raw: str) -> object:
    if field.type is bool:
        return raw.strip().lower() == "true"
    if field.type is int:
        try:
            return int(raw.strip())
        except ValueError:
            return raw
    return raw


def current_value(
    field: ConfigField,
    entry: Mapping[str, Any],
    env_values: Mapping[str, str],
) -> object:
    """Return the current value of *field* for a registry entry."""
    if field.registry_path is not None:
        node: object = entry
        for part in field.registry_path:
            if not isinstance(node, Mapping):
                return None
            node = node.get(part)
        return node
    if field.env_var is not None and field.env_var in env_values:
        return _parse_env(field, env_values[field.env_var])
    return None


def apply_to_entry(field: ConfigField, entry: MutableMapping[str, Any], value: object) -> object:
    """Write *value* into *entry* at the field's registry path; return the old value."""
    if field.registry_path is None:
        return None
    *parents, leaf = field.registry_path
    node: MutableMapping[str, Any] = entry
    for part in parents:
        child = node.get(part)
        if not isinstance(child, MutableMapping):
            child = {}
            node[part] = child
        node = child
    old = node.get(leaf)
    node[leaf] = value
    return old


def editable_config(entry: Mapping[str, Any], env_values: Mapping[str, str]) -> dict[str, Any]:
    """Return ``field -> {value, type, description, requires_restart}``; secrets masked."""
    payload: dict[str, Any] = {}
    for name, field in FIELDS.items():
        value = current_value(field, entry, env_values)
        if field.secret and value:
            value = MASK
        payload[name] = {"value": value, **field.describe()}
    return payload


__all__ = [
    "ConfigField",
    "FIELDS",
    "MASK",
    "apply_to_entry",
    "current_value",
    "editable_config",
    "get_field",
    "validate_value",
]
