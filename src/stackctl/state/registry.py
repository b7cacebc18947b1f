"""Helpers for interacting with the stackctl instance registry.

The registry directory (``/var/lib/stackctl/registry`` by default) stores the
whole instance map in ``instances.yml``. Every write is a whole-document
rewrite performed atomically (temporary file + ``os.replace``). Mutations go
through :meth:`InstanceRegistry.mutate`, which serialises read-modify-write
cycles behind a re-entrant thread lock and, when a :class:`LockManager` is
attached, the global file lock, so concurrent writers never lose updates.
"""
from __future__ import annotations

import os
import tempfile
import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import yaml

from ..errors import NotFoundError

if TYPE_CHECKING:
    from ..locking import LockManager

INSTANCES_FILE = "instances.yml"

T = TypeVar("T")
InstanceMap = dict[str, dict[str, Any]]


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class InstanceRegistry:
    """Serialized access to the YAML instance registry."""

    root: Path
    locks: LockManager | None = None
    _guard: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Low-level document access
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    @property
    def instances_path(self) -> Path:
        """Return the path of ``instances.yml``."""
        return self.path_for(INSTANCES_FILE)

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        self.ensure_root()
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(payload), handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Whole-document instance map
    # ------------------------------------------------------------------
    def load(self) -> InstanceMap:
        """Return a deep copy of the instance map keyed by instance id."""
        with self._guard:
            value = self.read(INSTANCES_FILE, default={"instances": {}})
        raw = value.get("instances") if isinstance(value, Mapping) else None
        instances: InstanceMap = {}
        if isinstance(raw, Mapping):
            for key, entry in raw.items():
                if isinstance(entry, Mapping):
                    instances[str(key)] = dict(entry)
        return instances

    def save(self, instances: Mapping[str, Mapping[str, Any]]) -> None:
        """Persist the full instance map, replacing the previous document."""
        payload = {"instances": {key: dict(value) for key, value in instances.items()}}
        with self._serialized():
            self.write(INSTANCES_FILE, payload)

    def mutate(self, mutator: Callable[[InstanceMap], T]) -> T:
        """Run *mutator* against the live map and persist the result atomically.

        The read, the mutation and the write happen while holding the registry
        guard, so concurrent callers observe each other's changes. If the
        mutator raises, nothing is written.
        """
        with self._serialized():
            instances = self.load()
            result = mutator(instances)
            self.write(
                INSTANCES_FILE,
                {"instances": {key: dict(value) for key, value in instances.items()}},
            )
            return result

    # ------------------------------------------------------------------
    # Instance helpers
    # ------------------------------------------------------------------
    def get_instance(self, instance_id: str) -> dict[str, Any] | None:
        """Return the instance mapping for *instance_id* if registered."""
        entry = self.load().get(instance_id)
        return deepcopy(entry) if entry is not None else None

    def require_instance(self, instance_id: str) -> dict[str, Any]:
        """Return the instance for *instance_id* or raise :class:`NotFoundError`."""
        entry = self.get_instance(instance_id)
        if entry is None:
            raise NotFoundError(f"Instance '{instance_id}' not found.")
        return entry

    def find_by_name(self, name: str) -> dict[str, Any] | None:
        """Return the instance whose name matches *name* case-insensitively."""
        needle = name.strip().lower()
        for entry in self.load().values():
            if str(entry.get("name", "")).strip().lower() == needle:
                return deepcopy(entry)
        return None

    def resolve(self, reference: str) -> dict[str, Any]:
        """Return the instance identified by id or, failing that, by name."""
        entry = self.get_instance(reference) or self.find_by_name(reference)
        if entry is None:
            raise NotFoundError(f"Instance '{reference}' not found.")
        return entry

    def put_instance(self, entry: Mapping[str, Any]) -> None:
        """Insert or replace the instance described by *entry*."""
        instance_id = str(entry.get("id", "")).strip()
        if not instance_id:
            raise StateRegistryError("Instance entry missing 'id'.")

        def _put(instances: InstanceMap) -> None:
            instances[instance_id] = deepcopy(dict(entry))

        self.mutate(_put)

    def update_instance(self, instance_id: str, updates: Mapping[str, object]) -> dict[str, Any]:
        """Apply top-level *updates* to the instance and return the merged entry."""

        def _update(instances: InstanceMap) -> dict[str, Any]:
            current = instances.get(instance_id)
            if current is None:
                raise NotFoundError(f"Instance '{instance_id}' not found.")
            current.update(deepcopy(dict(updates)))
            return deepcopy(current)

        return self.mutate(_update)

    def remove_instance(self, instance_id: str) -> dict[str, Any]:
        """Remove *instance_id* from the registry and return the removed entry."""

        def _remove(instances: InstanceMap) -> dict[str, Any]:
            removed = instances.pop(instance_id, None)
            if removed is None:
                raise NotFoundError(f"Instance '{instance_id}' not found.")
            return removed

        return self.mutate(_remove)

    # ------------------------------------------------------------------
    @contextmanager
    def _serialized(self) -> Iterator[None]:
        with self._guard:
            if self.locks is None:
                yield
                return
            with self.locks.global_lock():
                yield


__all__ = ["InstanceRegistry", "InstanceMap", "StateRegistryError"]
