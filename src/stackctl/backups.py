"""Configuration backups with integrity verification.

A backup captures the small configuration artifacts of one instance (env
file and compose manifest) byte-for-byte, the instance's registry entry, a
snapshot of its containers, and a structural probe of its persistent volume.
Bulk volume data is never copied, only checked for presence and shape.

Layout on disk::

    <backups root>/<instance id>/<backup id>/
        config/<env file>
        config/<compose manifest>
        instance-state.json
        container-snapshot.json
        backup-metadata.json
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import secrets
import shutil
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .errors import IntegrityError, NotFoundError, StackError
from .providers.runtime import ContainerRuntime, snapshot_containers
from .stack import VOLUME_SUBDIRS, StackLayout
from .state import InstanceRegistry

logger = logging.getLogger(__name__)

METADATA_FILE = "backup-metadata.json"
STATE_FILE = "instance-state.json"
SNAPSHOT_FILE = "container-snapshot.json"
CONFIG_DIR = "config"
RESTORE_SUFFIX = "before-restore"


class BackupError(StackError):
    """Raised when backup operations fail."""


class BackupRegistryError(BackupError):
    """Raised when backup metadata interactions fail."""


def _now() -> datetime:
    return datetime.now(tz=UTC)


def _iso(moment: datetime) -> str:
    return moment.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _normalise_identifier(value: str, *, label: str) -> str:
    normalised = value.strip()
    if not normalised or "/" in normalised or normalised in {".", ".."}:
        raise BackupRegistryError(f"{label} must be a non-empty path-safe string.")
    return normalised


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def write_json(path: Path, payload: object) -> None:
    """Atomically write *payload* as indented JSON to *path*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, sort_keys=False)
            handle.write("\n")
        os.replace(tmp_path, path)
        os.chmod(path, 0o640)
    except OSError as exc:
        raise BackupRegistryError(f"Failed to write {path}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)


def read_json(path: Path) -> Any:
    """Return the parsed JSON document at *path*."""
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise
    except (OSError, json.JSONDecodeError) as exc:
        raise BackupRegistryError(f"Backup metadata corrupted ({path}): {exc}") from exc


@dataclass(slots=True)
class BackupsRegistry:
    """Locate backup directories and their metadata under the backups root."""

    root: Path
    retention: int = 10

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        self.root = self.root.expanduser()
        if self.retention < 1:
            raise BackupRegistryError("Backup retention must be at least 1.")

    def ensure_root(self) -> None:
        """Ensure the backup root directory exists with safe permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o750)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupRegistryError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def instance_directory(self, instance_id: str) -> Path:
        """Return the directory that holds backups for *instance_id*."""
        return self.root / _normalise_identifier(instance_id, label="Instance identifier")

    def backup_directory(self, instance_id: str, backup_id: str) -> Path:
        """Return the directory of one backup."""
        normalized = _normalise_identifier(backup_id, label="Backup identifier")
        return self.instance_directory(instance_id) / normalized

    def generate_identifier(self, reason: str) -> str:
        """Return a unique, time-ordered backup identifier for *reason*."""
        timestamp = _now().strftime("%Y%m%d-%H%M%S-%f")
        token = secrets.token_hex(3)
        safe_reason = "".join(
            char if char.isalnum() or char in {"-", "_"} else "-" for char in reason
        ) or "manual"
        return f"{timestamp}-{safe_reason}-{token}"

    def list_entries(self, instance_id: str) -> list[dict[str, Any]]:
        """Return metadata for every readable backup of *instance_id*, newest first."""
        directory = self.instance_directory(instance_id)
        if not directory.is_dir():
            return []
        entries: list[dict[str, Any]] = []
        for child in directory.iterdir():
            metadata_path = child / METADATA_FILE
            if not child.is_dir() or not metadata_path.exists():
                continue
            try:
                data = read_json(metadata_path)
            except BackupRegistryError as exc:
                logger.warning("Skipping unreadable backup %s: %s", child, exc)
                continue
            if isinstance(data, Mapping):
                entries.append(dict(data))
        entries.sort(key=lambda entry: str(entry.get("timestamp", "")), reverse=True)
        return entries

    def find(self, instance_id: str, backup_id: str) -> dict[str, Any]:
        """Return metadata for *backup_id* or raise :class:`NotFoundError`."""
        path = self.backup_directory(instance_id, backup_id) / METADATA_FILE
        try:
            data = read_json(path)
        except FileNotFoundError as exc:
            raise NotFoundError(
                f"Backup '{backup_id}' not found for instance '{instance_id}'."
            ) from exc
        if not isinstance(data, Mapping):
            raise BackupRegistryError(f"Backup metadata must be a JSON object ({path}).")
        return dict(data)

    def remove(self, instance_id: str, backup_id: str) -> None:
        """Delete one backup directory."""
        directory = self.backup_directory(instance_id, backup_id)
        if not directory.is_dir():
            raise NotFoundError(f"Backup '{backup_id}' not found for instance '{instance_id}'.")
        shutil.rmtree(directory)

    def prune(self, instance_id: str) -> list[str]:
        """Delete backups beyond the retention count, oldest first."""
        entries = self.list_entries(instance_id)
        removed: list[str] = []
        for entry in entries[self.retention :]:
            backup_id = str(entry.get("backup_id", ""))
            if not backup_id:
                continue
            shutil.rmtree(self.backup_directory(instance_id, backup_id), ignore_errors=True)
            removed.append(backup_id)
        return removed


def probe_volume(volume_path: Path) -> dict[str, Any]:
    """Return a structural probe of an instance volume (no data is copied)."""
    directories: dict[str, dict[str, Any]] = {}
    total_size = 0
    for subdir in VOLUME_SUBDIRS:
        path = volume_path / subdir
        info: dict[str, Any] = {"path": str(path), "exists": path.is_dir()}
        if path.is_dir():
            file_count = 0
            size = 0
            for dirpath, _dirnames, filenames in os.walk(path):
                for filename in filenames:
                    file_count += 1
                    try:
                        size += (Path(dirpath) / filename).lstat().st_size
                    except OSError:
                        continue
            info["file_count"] = file_count
            info["size_bytes"] = size
            total_size += size
        directories[subdir] = info
    return {
        "volume_path": str(volume_path),
        "volume_exists": volume_path.is_dir(),
        "directories": directories,
        "total_size_estimate": total_size,
    }


class BackupManager:
    """Create, verify, restore and prune instance backups."""

    def __init__(
        self,
        registry: InstanceRegistry,
        backups: BackupsRegistry,
        runtime: ContainerRuntime,
        stacks_dir: Path,
        *,
        inspect_timeout: float | None = None,
    ) -> None:
        """Store collaborators used to capture and restore instance state."""
        self.registry = registry
        self.backups = backups
        self.runtime = runtime
        self.stacks_dir = stacks_dir
        self.inspect_timeout = inspect_timeout

    # ------------------------------------------------------------------
    def create_backup(self, instance_id: str, reason: str = "manual") -> dict[str, Any]:
        """Snapshot *instance_id* and return the backup metadata."""
        instance = self.registry.require_instance(instance_id)
        layout = StackLayout.from_instance(self.stacks_dir, instance)
        self.backups.ensure_root()
        moment = _now()
        backup_id = self.backups.generate_identifier(reason)
        directory = self.backups.backup_directory(instance_id, backup_id)
        config_dir = directory / CONFIG_DIR
        try:
            config_dir.mkdir(parents=True, exist_ok=False)
            files = [
                self._copy_artifact(name, source, config_dir)
                for name, source in layout.config_files.items()
                if source.exists()
            ]
            snapshot = snapshot_containers(
                self.runtime, layout.containers(), timeout=self.inspect_timeout
            )
            write_json(directory / STATE_FILE, instance)
            write_json(directory / SNAPSHOT_FILE, snapshot)
            metadata: dict[str, Any] = {
                "backup_id": backup_id,
                "instance_id": instance_id,
                "operation": reason,
                "timestamp": _iso(moment),
                "files": files,
                "integrity_check": probe_volume(layout.volume_path),
                "container_snapshot": SNAPSHOT_FILE,
                "instance_state": STATE_FILE,
                "integrity_verified": all(entry["integrity_verified"] for entry in files),
            }
            write_json(directory / METADATA_FILE, metadata)
        except (OSError, BackupError) as exc:
            shutil.rmtree(directory, ignore_errors=True)
            raise BackupError(f"Backup of instance '{instance_id}' failed: {exc}") from exc

        pruned = self.backups.prune(instance_id)
        if pruned:
            logger.info("Pruned %d old backups for %s", len(pruned), instance_id)
        return metadata

    def list_backups(self, instance_id: str) -> list[dict[str, Any]]:
        """Return backup summaries for *instance_id*, newest first."""
        summaries: list[dict[str, Any]] = []
        for entry in self.backups.list_entries(instance_id):
            files = entry.get("files")
            summaries.append(
                {
                    "backup_id": entry.get("backup_id"),
                    "timestamp": entry.get("timestamp"),
                    "operation": entry.get("operation"),
                    "files_backed_up": len(files) if isinstance(files, list) else 0,
                    "integrity_verified": bool(entry.get("integrity_verified")),
                }
            )
        return summaries

    def get_backup(self, instance_id: str, backup_id: str) -> dict[str, Any]:
        """Return the full metadata of one backup."""
        return self.backups.find(instance_id, backup_id)

    def delete_backup(self, instance_id: str, backup_id: str) -> None:
        """Delete one backup."""
        self.backups.remove(instance_id, backup_id)

    def verify_integrity(self, metadata: Mapping[str, Any]) -> None:
        """Raise :class:`IntegrityError` unless every backed-up file matches its manifest."""
        instance_id = str(metadata.get("instance_id", ""))
        backup_id = str(metadata.get("backup_id", ""))
        directory = self.backups.backup_directory(instance_id, backup_id)
        problems: list[str] = []
        files = metadata.get("files")
        if not isinstance(files, list):
            problems.append("file manifest missing")
            files = []
        for entry in files:
            if not isinstance(entry, Mapping):
                problems.append("malformed manifest entry")
                continue
            name = str(entry.get("name", ""))
            path = directory / CONFIG_DIR / name
            if not path.is_file():
                problems.append(f"{name}: missing from backup")
                continue
            expected = entry.get("size_bytes")
            actual = path.stat().st_size
            if expected != actual:
                problems.append(f"{name}: size {actual} does not match manifest {expected}")
                continue
            checksum = entry.get("sha256")
            if checksum and _sha256(path) != checksum:
                problems.append(f"{name}: checksum mismatch")
        if not (directory / STATE_FILE).is_file():
            problems.append("instance state missing")
        if problems:
            raise IntegrityError(
                f"Backup '{backup_id}' failed integrity verification: {'; '.join(problems)}",
                problems=problems,
            )

    def restore(self, instance_id: str, backup_id: str) -> dict[str, Any]:
        """Restore configuration files and the registry entry from a backup.

        Live files are side-saved as ``<file>.before-restore-<ts>`` before
        being overwritten. The registry document is side-saved the same way.
        """
        metadata = self.get_backup(instance_id, backup_id)
        self.verify_integrity(metadata)
        directory = self.backups.backup_directory(instance_id, backup_id)
        state = read_json(directory / STATE_FILE)
        if not isinstance(state, Mapping):
            raise IntegrityError(
                f"Backup '{backup_id}' instance state is not a mapping.",
                problems=["instance state malformed"],
            )

        suffix = f"{RESTORE_SUFFIX}-{_now().strftime('%Y%m%d-%H%M%S-%f')}"
        restored: list[str] = []
        try:
            for entry in metadata.get("files", []):
                name = str(entry["name"])
                live = self.stacks_dir / name
                if live.exists():
                    shutil.copy2(live, live.with_name(f"{live.name}.{suffix}"))
                live.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(directory / CONFIG_DIR / name, live)
                restored.append(name)

            registry_path = self.registry.instances_path
            if registry_path.exists():
                side_copy = registry_path.with_name(f"{registry_path.name}.{suffix}")
                shutil.copy2(registry_path, side_copy)
        except OSError as exc:
            raise BackupError(f"Restore of backup '{backup_id}' failed: {exc}") from exc

        restored_state = dict(state)

        def _restore(instances: dict[str, dict[str, Any]]) -> None:
            instances[instance_id] = restored_state

        self.registry.mutate(_restore)
        return {**metadata, "restored_files": restored}

    # ------------------------------------------------------------------
    @staticmethod
    def _copy_artifact(name: str, source: Path, config_dir: Path) -> dict[str, Any]:
        destination = config_dir / name
        shutil.copy2(source, destination)
        source_size = source.stat().st_size
        copied_size = destination.stat().st_size
        return {
            "name": name,
            "source": str(source),
            "size_bytes": copied_size,
            "sha256": _sha256(destination),
            "integrity_verified": source_size == copied_size,
        }


__all__ = [
    "BackupError",
    "BackupManager",
    "BackupRegistryError",
    "BackupsRegistry",
    "probe_volume",
    "read_json",
    "write_json",
]
