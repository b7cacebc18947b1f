"""Error taxonomy shared by the lifecycle, diagnostic and backup layers.

Every error raised across a component boundary derives from
:class:`StackError`, which carries the CLI exit code used when the error
reaches the command line.
"""
from __future__ import annotations

from .exit_codes import ExitCode


class StackError(RuntimeError):
    """Base class for stackctl domain errors."""

    exit_code: int = ExitCode.PROVIDER

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the error."""
        return {"type": type(self).__name__, "message": str(self)}


class ValidationError(StackError):
    """Raised for bad or missing input. Never retried."""

    exit_code = ExitCode.VALIDATION

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        if self.field is not None:
            payload["field"] = self.field
        return payload


class NotFoundError(StackError):
    """Raised when an instance, backup or operation is unknown."""

    exit_code = ExitCode.VALIDATION


class ResourceExhausted(StackError):
    """Raised when no free port (or instance slot) remains."""

    exit_code = ExitCode.ENVIRONMENT


class CredentialGenerationError(StackError):
    """Raised when a freshly signed token fails to verify."""


class ContainerRuntimeError(StackError):
    """Raised when a call to the container runtime fails."""


class OperationTimeout(ContainerRuntimeError):
    """Raised when a bounded external call exceeds its budget."""

    def __init__(self, message: str, *, timeout: float | None = None) -> None:
        super().__init__(message)
        self.timeout = timeout


class RateLimited(StackError):
    """Raised when a diagnostic run is requested inside the cooldown window."""

    exit_code = ExitCode.VALIDATION

    def __init__(self, instance_id: str, retry_after: float) -> None:
        seconds = max(1, int(round(retry_after)))
        super().__init__(
            f"Diagnostics for instance '{instance_id}' are rate limited; "
            f"retry in {seconds}s."
        )
        self.instance_id = instance_id
        self.retry_after = float(retry_after)

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        payload["retry_after"] = round(self.retry_after, 1)
        return payload


class IntegrityError(StackError):
    """Raised when a backup fails verification. Never retried automatically."""

    exit_code = ExitCode.ENVIRONMENT

    def __init__(self, message: str, *, problems: list[str] | None = None) -> None:
        super().__init__(message)
        self.problems = list(problems or [])

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        payload["problems"] = list(self.problems)
        return payload


class Conflict(StackError):
    """Raised when another mutating operation already holds the instance."""

    exit_code = ExitCode.CONFLICT

    def __init__(self, instance_id: str, held_by: str) -> None:
        super().__init__(
            f"Instance '{instance_id}' is busy with operation '{held_by}'."
        )
        self.instance_id = instance_id
        self.held_by = held_by

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        payload["held_by"] = self.held_by
        return payload


class ManualInterventionRequired(StackError):
    """Raised when an instance flagged after a failed rollback is touched again.

    Only a forced restart or a restore from backup clears the flag.
    """

    exit_code = ExitCode.CONFLICT

    def __init__(self, instance_id: str, last_error: str | None = None) -> None:
        super().__init__(
            f"Instance '{instance_id}' requires manual intervention; "
            "run a forced restart or restore a backup first."
        )
        self.instance_id = instance_id
        self.last_error = last_error

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        payload["manual_intervention_required"] = True
        if self.last_error:
            payload["last_error"] = self.last_error
        return payload


class CriticalRecoveryFailure(StackError):
    """Raised when an operation and its rollback both failed.

    Both underlying errors are kept so callers can surface them verbatim.
    The instance is flagged for manual intervention by the orchestrator.
    """

    manual_intervention_required = True

    def __init__(self, error: BaseException | str, rollback_error: BaseException | str) -> None:
        self.error = str(error)
        self.rollback_error = str(rollback_error)
        super().__init__(
            f"Operation failed ({self.error}) and rollback failed ({self.rollback_error}); "
            "manual intervention required."
        )

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        payload.update(
            {
                "error": self.error,
                "rollback_error": self.rollback_error,
                "manual_intervention_required": True,
            }
        )
        return payload


__all__ = [
    "Conflict",
    "ContainerRuntimeError",
    "CredentialGenerationError",
    "CriticalRecoveryFailure",
    "IntegrityError",
    "ManualInterventionRequired",
    "NotFoundError",
    "OperationTimeout",
    "RateLimited",
    "ResourceExhausted",
    "StackError",
    "ValidationError",
]
