"""Tests for the editable-field descriptors and their validators."""
from __future__ import annotations

import pytest

from stackctl.config_fields import (
    FIELDS,
    MASK,
    apply_to_entry,
    editable_config,
    get_field,
    validate_value,
)
from stackctl.errors import ValidationError


@pytest.mark.parametrize(
    ("field", "value", "expected"),
    [
        ("name", "  My Project_1 ", "My Project_1"),
        ("dashboard_username", "ops_admin", "ops_admin"),
        ("dashboard_password", "x", "x"),
        ("organization", "Acme Corp", "Acme Corp"),
        ("disable_signup", "true", True),
        ("enable_email_autoconfirm", False, False),
        ("jwt_expiry", "7200", 7200),
    ],
)
def test_valid_values_are_coerced(field: str, value: object, expected: object) -> None:
    """Accepted inputs come back in the field's native type."""
    assert FIELDS[field].validator(value) == expected


@pytest.mark.parametrize(
    ("field", "value"),
    [
        ("name", "a"),
        ("name", "bad/name"),
        ("dashboard_username", "ab"),
        ("dashboard_username", "has space"),
        ("dashboard_password", ""),
        ("dashboard_password", "p" * 101),
        ("organization", "x"),
        ("disable_signup", "yes"),
        ("jwt_expiry", "299"),
        ("jwt_expiry", 86401),
        ("jwt_expiry", True),
        ("jwt_expiry", "soon"),
    ],
)
def test_invalid_values_raise(field: str, value: object) -> None:
    """Out-of-range or malformed inputs raise ValidationError."""
    with pytest.raises(ValidationError):
        FIELDS[field].validator(value)


def test_unknown_field_is_not_editable() -> None:
    """Fields outside the registry are rejected by name."""
    with pytest.raises(ValidationError) as excinfo:
        get_field("postgres_password")

    assert excinfo.value.field == "postgres_password"


def test_unique_name_checked_case_insensitively() -> None:
    """Renaming onto another instance's name fails; keeping your own succeeds."""
    instances = {"a1": {"name": "Alpha"}, "b2": {"name": "Beta"}}
    field = get_field("name")

    with pytest.raises(ValidationError, match="already exists"):
        validate_value(field, "alpha", instance_id="b2", instances=instances)
    assert validate_value(field, "ALPHA", instance_id="a1", instances=instances) == "ALPHA"


def test_apply_to_entry_creates_intermediate_mappings() -> None:
    """Nested registry paths are created when absent; the old value is returned."""
    entry: dict[str, object] = {"id": "a1"}

    old = apply_to_entry(get_field("organization"), entry, "Acme")

    assert old is None
    assert entry["config"] == {"organization": "Acme"}
    assert apply_to_entry(get_field("disable_signup"), entry, True) is None


def test_editable_config_masks_secrets_and_reads_env() -> None:
    """Secrets are masked; env-only fields come from the env file."""
    entry = {
        "name": "demo",
        "credentials": {"dashboard_username": "admin", "dashboard_password": "hunter2"},
        "config": {"organization": "Acme"},
    }
    env = {"DISABLE_SIGNUP": "true", "JWT_EXPIRY": "3600"}

    payload = editable_config(entry, env)

    assert set(payload) == set(FIELDS)
    assert payload["dashboard_password"]["value"] == MASK
    assert payload["dashboard_username"]["value"] == "admin"
    assert payload["disable_signup"]["value"] is True
    assert payload["jwt_expiry"] == {
        "value": 3600,
        "type": "int",
        "description": "Access token lifetime in seconds",
        "requires_restart": True,
        "env_var": "JWT_EXPIRY",
    }
    assert payload["enable_email_autoconfirm"]["value"] is None
    assert payload["name"]["requires_restart"] is False


def test_env_value_renders_booleans_lowercase() -> None:
    """Booleans are written to env files as true/false."""
    assert get_field("disable_signup").env_value(True) == "true"
    assert get_field("jwt_expiry").env_value(900) == "900"
