"""Naming conventions for one instance's stack on disk and in the runtime."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

SERVICES: tuple[str, ...] = ("studio", "kong", "auth", "rest", "db", "storage", "realtime")
PRIMARY_SERVICE = "studio"
VOLUME_SUBDIRS: tuple[str, ...] = ("db", "storage", "logs", "api")


def container_name(service: str, instance_id: str) -> str:
    """Return the runtime container name of *service* for *instance_id*."""
    if service == "realtime":
        return f"realtime-dev.supabase-realtime-{instance_id}"
    return f"supabase-{service}-{instance_id}"


def docker_handles(instance_id: str) -> dict[str, str]:
    """Return the opaque file-name handles for a new instance."""
    return {
        "compose_file": f"docker-compose-{instance_id}.yml",
        "env_file": f".env-{instance_id}",
        "volumes_dir": f"volumes-{instance_id}",
    }


@dataclass(frozen=True)
class StackLayout:
    """Resolved paths and container names for one instance."""

    stacks_dir: Path
    instance_id: str
    compose_file: str
    env_file: str
    volumes_dir: str

    @classmethod
    def from_instance(cls, stacks_dir: Path, instance: Mapping[str, Any]) -> StackLayout:
        """Build the layout from a registry entry, defaulting missing handles."""
        instance_id = str(instance["id"])
        handles = docker_handles(instance_id)
        docker = instance.get("docker")
        if isinstance(docker, Mapping):
            for key in handles:
                value = docker.get(key)
                if isinstance(value, str) and value.strip():
                    handles[key] = value.strip()
        return cls(stacks_dir=stacks_dir, instance_id=instance_id, **handles)

    @property
    def project(self) -> str:
        """Return the compose project name."""
        return f"stack-{self.instance_id}"

    @property
    def manifest_path(self) -> Path:
        """Return the compose manifest path."""
        return self.stacks_dir / self.compose_file

    @property
    def env_path(self) -> Path:
        """Return the environment file path."""
        return self.stacks_dir / self.env_file

    @property
    def volume_path(self) -> Path:
        """Return the persistent volume directory."""
        return self.stacks_dir / self.volumes_dir

    @property
    def config_files(self) -> dict[str, Path]:
        """Return the small configuration artifacts captured by backups."""
        return {self.env_file: self.env_path, self.compose_file: self.manifest_path}

    def container(self, service: str) -> str:
        """Return the container name for *service*."""
        return container_name(service, self.instance_id)

    def containers(self) -> list[str]:
        """Return every expected container name."""
        return [self.container(service) for service in SERVICES]


__all__ = [
    "PRIMARY_SERVICE",
    "SERVICES",
    "StackLayout",
    "VOLUME_SUBDIRS",
    "container_name",
    "docker_handles",
]
