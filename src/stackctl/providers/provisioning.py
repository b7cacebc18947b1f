"""Provisioning collaborator: stack manifests, env files and volumes."""
from __future__ import annotations

import shutil
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from ..errors import ContainerRuntimeError
from ..stack import VOLUME_SUBDIRS, StackLayout
from ..templates import TemplateEngine
from .runtime import ContainerRuntime, existing_containers

COMPOSE_TEMPLATE = "stack/compose.yml.j2"
ENV_TEMPLATE = "stack/env.j2"


class ProvisioningError(ContainerRuntimeError):
    """Raised when stack artifacts cannot be produced or removed."""


class Provisioner(Protocol):
    """Produce and remove the runtime artifacts of one instance."""

    def provision(self, instance: Mapping[str, Any]) -> None:
        """Write the stack artifacts for *instance* and bring the stack up."""
        ...

    def deprovision(self, instance: Mapping[str, Any]) -> None:
        """Tear the stack down and remove its artifacts."""
        ...

    def start(self, instance: Mapping[str, Any]) -> None:
        """Bring an existing stack up."""
        ...

    def stop(self, instance: Mapping[str, Any]) -> None:
        """Bring a stack down without removing its artifacts."""
        ...


@dataclass(slots=True)
class FileProvisioner:
    """Render stack artifacts from templates and drive them with compose."""

    templates: TemplateEngine
    runtime: ContainerRuntime
    stacks_dir: Path

    def layout(self, instance: Mapping[str, Any]) -> StackLayout:
        """Return the stack layout for *instance*."""
        return StackLayout.from_instance(self.stacks_dir, instance)

    def render(self, instance: Mapping[str, Any]) -> StackLayout:
        """Write the manifest, env file and volume directories."""
        layout = self.layout(instance)
        context = {
            "instance_id": layout.instance_id,
            "name": instance.get("name", layout.instance_id),
            "ports": instance.get("ports", {}),
            "credentials": instance.get("credentials", {}),
            "urls": instance.get("urls", {}),
            "config": {"organization": "", "project": "", **dict(instance.get("config") or {})},
            "volumes_dir": layout.volumes_dir,
        }
        try:
            self.templates.render_to_path(ENV_TEMPLATE, layout.env_path, context, mode=0o600)
            self.templates.render_to_path(
                COMPOSE_TEMPLATE, layout.manifest_path, context, mode=0o644
            )
            for subdir in VOLUME_SUBDIRS:
                (layout.volume_path / subdir).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ProvisioningError(
                f"Failed to write stack files for {layout.instance_id}: {exc}"
            ) from exc
        return layout

    def provision(self, instance: Mapping[str, Any]) -> None:
        """Render artifacts and start the stack."""
        layout = self.render(instance)
        self.runtime.compose_up(layout.manifest_path, layout.env_path, layout.project)

    def start(self, instance: Mapping[str, Any]) -> None:
        """Start an already provisioned stack."""
        layout = self.layout(instance)
        if not layout.manifest_path.exists():
            raise ProvisioningError(f"Manifest {layout.manifest_path} is missing.")
        self.runtime.compose_up(layout.manifest_path, layout.env_path, layout.project)

    def stop(self, instance: Mapping[str, Any]) -> None:
        """Stop a provisioned stack."""
        layout = self.layout(instance)
        if not layout.manifest_path.exists():
            present = existing_containers(self.runtime, layout.containers())
            if present:
                self.runtime.stop(present)
            return
        self.runtime.compose_down(layout.manifest_path, layout.env_path, layout.project)

    def deprovision(self, instance: Mapping[str, Any]) -> None:
        """Stop the stack and delete its manifest, env file and volumes."""
        layout = self.layout(instance)
        if layout.manifest_path.exists():
            self.runtime.compose_down(layout.manifest_path, layout.env_path, layout.project)
        layout.manifest_path.unlink(missing_ok=True)
        layout.env_path.unlink(missing_ok=True)
        shutil.rmtree(layout.volume_path, ignore_errors=True)


__all__ = ["FileProvisioner", "Provisioner", "ProvisioningError"]
