"""Instance status probe backed by the container runtime."""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass

from ..errors import ContainerRuntimeError
from ..stack import PRIMARY_SERVICE, container_name
from .runtime import ContainerRuntime

logger = logging.getLogger(__name__)

VALID_STATES = frozenset({"creating", "running", "stopped", "error", "unavailable"})


@dataclass(frozen=True)
class InstanceStatus:
    """Represents the probed status of one instance."""

    state: str
    detail: str = ""


class InstanceStatusProvider:
    """Derive an instance's status from its primary container.

    A missing primary container means ``stopped``; a running one means
    ``running``; any other state means ``stopped``. When the runtime itself is
    unreachable the last-known status is kept (``unavailable`` if none was
    recorded) so a transient outage never reads as a stopped stack. A probe
    that errors or times out yields ``error``.
    """

    def __init__(self, runtime: ContainerRuntime, *, timeout: float = 10.0) -> None:
        """Store the runtime collaborator and probe timeout."""
        self._runtime = runtime
        self._timeout = timeout

    def runtime_available(self) -> bool:
        """Return whether the runtime answers at all."""
        try:
            return bool(self._runtime.is_available())
        except ContainerRuntimeError:
            return False

    def status(
        self,
        entry: Mapping[str, object],
        *,
        runtime_available: bool | None = None,
    ) -> InstanceStatus:
        """Return the probed status for the registry *entry*."""
        available = self.runtime_available() if runtime_available is None else runtime_available
        last_known = entry.get("status")
        if not available:
            if isinstance(last_known, str) and last_known in VALID_STATES:
                return InstanceStatus(last_known, "Runtime unavailable; kept last-known status.")
            return InstanceStatus("unavailable", "Runtime unavailable.")

        instance_id = str(entry.get("id", ""))
        name = container_name(PRIMARY_SERVICE, instance_id)
        try:
            state = self._runtime.inspect(name, timeout=self._timeout)
        except ContainerRuntimeError as exc:
            logger.warning("Status probe for %s failed: %s", instance_id, exc)
            return InstanceStatus("error", str(exc))
        if not state.exists:
            return InstanceStatus("stopped", f"Container {name} not found.")
        if state.running:
            return InstanceStatus("running", f"Container {name} is {state.status}.")
        return InstanceStatus("stopped", f"Container {name} is {state.status}.")


__all__ = ["InstanceStatus", "InstanceStatusProvider", "VALID_STATES"]
