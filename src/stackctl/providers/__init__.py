"""Provider interfaces for stackctl."""
from __future__ import annotations

from .instance_status_provider import InstanceStatus, InstanceStatusProvider
from .endpoints import EndpointError, EndpointProber, HttpxProber
from .provisioning import FileProvisioner, Provisioner, ProvisioningError
from .runtime import (
    ContainerRuntime,
    ContainerState,
    DockerRuntime,
    existing_containers,
    snapshot_containers,
    stop_with_escalation,
)

__all__ = [
    "ContainerRuntime",
    "ContainerState",
    "DockerRuntime",
    "EndpointError",
    "EndpointProber",
    "FileProvisioner",
    "HttpxProber",
    "InstanceStatus",
    "InstanceStatusProvider",
    "Provisioner",
    "ProvisioningError",
    "existing_containers",
    "snapshot_containers",
    "stop_with_escalation",
]
