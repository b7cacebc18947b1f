"""Instance lifecycle: create, start, stop, delete and list."""
from __future__ import annotations

import logging
import shutil
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from .config import AppConfig
from .config_fields import validate_name
from .credentials import generate_credentials
from .errors import ContainerRuntimeError, ResourceExhausted, StackError, ValidationError
from .ports import PortAllocator
from .providers.instance_status_provider import InstanceStatusProvider
from .providers.provisioning import Provisioner
from .stack import docker_handles
from .state import InstanceRegistry

if TYPE_CHECKING:
    from .backups import BackupsRegistry
    from .diagnostics import DiagnosticEngine

logger = logging.getLogger(__name__)

DEFAULT_ORGANIZATION = "Default Organization"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds")


def studio_url(server_ip: str, entry: Mapping[str, Any]) -> str | None:
    """Return ``http://<host>:<gateway_http>`` for *entry*."""
    ports = entry.get("ports")
    if not isinstance(ports, Mapping) or "gateway_http" not in ports:
        return None
    return f"http://{server_ip}:{ports['gateway_http']}"


class InstanceManager:
    """Create and drive instances through the provisioning collaborator."""

    def __init__(
        self,
        config: AppConfig,
        registry: InstanceRegistry,
        ports: PortAllocator,
        provisioner: Provisioner,
        status_provider: InstanceStatusProvider,
        *,
        backups: BackupsRegistry | None = None,
        diagnostics: DiagnosticEngine | None = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.ports = ports
        self.provisioner = provisioner
        self.status_provider = status_provider
        self.backups = backups
        self.diagnostics = diagnostics
        self.ports.rebuild(self.registry.load().values())

    # ------------------------------------------------------------------
    def create(
        self,
        name: str,
        *,
        owner: str = "",
        config: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Register, provision and start a new instance.

        The entry is persisted as ``creating`` before provisioning and marked
        ``running`` afterwards. On failure the instance is cleaned up on a
        best-effort basis and the error re-raised.
        """
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Instance name is required.", field="name")
        clean_name = validate_name(name)
        instance_id = uuid.uuid4().hex[:8]
        credentials = generate_credentials()
        extra = dict(config or {})

        def _register(instances: dict[str, dict[str, Any]]) -> dict[str, Any]:
            lowered = clean_name.lower()
            if any(str(entry.get("name", "")).lower() == lowered for entry in instances.values()):
                raise ValidationError(
                    f"An instance named '{clean_name}' already exists.", field="name"
                )
            if len(instances) >= self.config.max_instances:
                raise ResourceExhausted(
                    f"Instance limit reached ({self.config.max_instances})."
                )
            ports = self.ports.allocate()
            entry = self._build_entry(instance_id, clean_name, owner, ports, credentials, extra)
            instances[instance_id] = entry
            return dict(entry)

        entry = self.registry.mutate(_register)
        try:
            self.provisioner.provision(entry)
        except (StackError, OSError) as exc:
            logger.error("Provisioning %s failed: %s", instance_id, exc)
            self._cleanup_failed_create(entry)
            raise
        return self._with_urls(
            self.registry.update_instance(
                instance_id, {"status": "running", "updated_at": _now_iso()}
            )
        )

    def _build_entry(
        self,
        instance_id: str,
        name: str,
        owner: str,
        ports: Mapping[str, int],
        credentials: Any,
        extra: Mapping[str, Any],
    ) -> dict[str, Any]:
        host = self.config.server_ip
        gateway = ports["gateway_http"]
        now = _now_iso()
        return {
            "id": instance_id,
            "name": name,
            "owner": owner,
            "status": "creating",
            "ports": dict(ports),
            "credentials": credentials.to_dict(),
            "docker": docker_handles(instance_id),
            "config": {
                "organization": DEFAULT_ORGANIZATION,
                "project": name,
                **dict(extra),
            },
            "urls": {
                "studio": f"http://{host}:{gateway}",
                "api": f"http://{host}:{gateway}",
                "db": (
                    f"postgresql://postgres:{credentials.postgres_password}"
                    f"@{host}:{ports['database']}/postgres"
                ),
            },
            "created_at": now,
            "updated_at": now,
        }

    def _cleanup_failed_create(self, entry: Mapping[str, Any]) -> None:
        instance_id = str(entry["id"])
        try:
            self.registry.update_instance(instance_id, {"status": "error"})
        except StackError as exc:
            logger.warning("Could not mark %s as errored: %s", instance_id, exc)
        try:
            self.provisioner.deprovision(entry)
        except (StackError, OSError) as exc:
            logger.warning("Cleanup of %s artifacts failed: %s", instance_id, exc)
        self.ports.release(entry.get("ports") or {})
        try:
            self.registry.remove_instance(instance_id)
        except StackError as exc:
            logger.warning("Could not remove %s from the registry: %s", instance_id, exc)

    # ------------------------------------------------------------------
    def start(self, reference: str) -> dict[str, Any]:
        """Bring an instance's stack up."""
        entry = self.registry.resolve(reference)
        try:
            self.provisioner.start(entry)
        except ContainerRuntimeError:
            self.registry.update_instance(entry["id"], {"status": "error"})
            raise
        return self._with_urls(
            self.registry.update_instance(
                entry["id"], {"status": "running", "updated_at": _now_iso()}
            )
        )

    def stop(self, reference: str) -> dict[str, Any]:
        """Bring an instance's stack down, keeping its artifacts."""
        entry = self.registry.resolve(reference)
        try:
            self.provisioner.stop(entry)
        except ContainerRuntimeError:
            self.registry.update_instance(entry["id"], {"status": "error"})
            raise
        return self._with_urls(
            self.registry.update_instance(
                entry["id"], {"status": "stopped", "updated_at": _now_iso()}
            )
        )

    def delete(self, reference: str, *, remove_backups: bool = False) -> dict[str, Any]:
        """Tear down and forget an instance; its ports return to the pool."""
        entry = self.registry.resolve(reference)
        instance_id = str(entry["id"])
        try:
            self.provisioner.deprovision(entry)
        except ContainerRuntimeError as exc:
            logger.warning("Deprovisioning %s reported an error: %s", instance_id, exc)
        self.ports.release(entry.get("ports") or {})
        removed = self.registry.remove_instance(instance_id)
        if self.diagnostics is not None:
            self.diagnostics.forget(instance_id)
            if self.diagnostics.history is not None:
                self.diagnostics.history.forget(instance_id)
        if remove_backups and self.backups is not None:
            shutil.rmtree(self.backups.instance_directory(instance_id), ignore_errors=True)
        return removed

    # ------------------------------------------------------------------
    def show(self, reference: str) -> dict[str, Any]:
        """Return one instance with its refreshed status."""
        entry = self.registry.resolve(reference)
        return self._with_urls(self._refresh(entry, self.status_provider.runtime_available()))

    def list(self) -> dict[str, Any]:
        """Return every instance with refreshed status, plus counters."""
        available = self.status_provider.runtime_available()
        instances = [
            self._with_urls(self._refresh(entry, available))
            for entry in self.registry.load().values()
        ]
        instances.sort(key=lambda item: str(item.get("created_at", "")))
        stats = {
            "total": len(instances),
            "running": sum(1 for item in instances if item.get("status") == "running"),
            "stopped": sum(1 for item in instances if item.get("status") == "stopped"),
            "max_instances": self.config.max_instances,
        }
        return {"instances": instances, "stats": stats}

    def _refresh(self, entry: dict[str, Any], runtime_available: bool) -> dict[str, Any]:
        # Instances mid-creation keep their status until provisioning settles.
        if entry.get("status") == "creating":
            return entry
        probed = self.status_provider.status(entry, runtime_available=runtime_available)
        if probed.state == entry.get("status"):
            return entry
        try:
            return self.registry.update_instance(entry["id"], {"status": probed.state})
        except StackError as exc:
            logger.warning("Could not record status for %s: %s", entry.get("id"), exc)
            return {**entry, "status": probed.state}

    def _with_urls(self, entry: Mapping[str, Any]) -> dict[str, Any]:
        return {**entry, "studio_url": studio_url(self.config.server_ip, entry)}


__all__ = ["DEFAULT_ORGANIZATION", "InstanceManager", "studio_url"]
