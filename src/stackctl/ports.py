"""Port allocation helpers for stackctl.

Each instance receives one port per role (gateway HTTP/TLS, database, pooler,
analytics), drawn at random from that role's configured range. The set of
claimed ports lives in memory, is rebuilt from the instance registry on
startup, and is process-local: it does not coordinate separate processes.
"""
from __future__ import annotations

import random
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .config import PORT_ROLES, PortRange
from .errors import ResourceExhausted


class PortsRegistryError(RuntimeError):
    """Raised when a port reservation is inconsistent."""


@dataclass(slots=True)
class PortAllocator:
    """Allocate collision-free port sets from per-role ranges."""

    ranges: Mapping[str, PortRange]
    max_attempts: int = 100
    rng: random.Random = field(default_factory=random.SystemRandom)
    _used: set[int] = field(default_factory=set)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def __post_init__(self) -> None:
        """Validate initialiser parameters."""
        missing = [role for role in PORT_ROLES if role not in self.ranges]
        if missing:
            raise PortsRegistryError(f"Missing port ranges for roles: {', '.join(missing)}.")
        if self.max_attempts < 1:
            raise PortsRegistryError("max_attempts must be a positive integer.")

    # ------------------------------------------------------------------
    @property
    def used_ports(self) -> frozenset[int]:
        """Return a snapshot of the claimed ports."""
        with self._lock:
            return frozenset(self._used)

    def rebuild(self, instances: Iterable[Mapping[str, Any]]) -> None:
        """Reset the used-port set from registered *instances*."""
        used: set[int] = set()
        for entry in instances:
            used.update(_ports_of(entry))
        with self._lock:
            self._used = used

    def allocate(self) -> dict[str, int]:
        """Claim and return one free port per role.

        Raises :class:`ResourceExhausted` when any role fails to find a free
        port within ``max_attempts`` random draws; nothing is claimed then.
        """
        with self._lock:
            chosen: dict[str, int] = {}
            taken = set(self._used)
            for role in PORT_ROLES:
                port = self._draw(role, taken)
                chosen[role] = port
                taken.add(port)
            self._used.update(chosen.values())
            return chosen

    def claim(self, ports: Mapping[str, int]) -> None:
        """Mark an existing port set as used (e.g. when restoring an instance)."""
        values = {int(value) for value in ports.values()}
        with self._lock:
            self._used.update(values)

    def release(self, ports: Mapping[str, object]) -> None:
        """Return *ports* to the free pool. Unknown values are ignored."""
        values = _ports_of({"ports": ports})
        with self._lock:
            self._used.difference_update(values)

    # Internal helpers -------------------------------------------------
    def _draw(self, role: str, taken: set[int]) -> int:
        port_range = self.ranges[role]
        for _ in range(self.max_attempts):
            candidate = self.rng.randint(port_range.start, port_range.end)
            if candidate not in taken:
                return candidate
        raise ResourceExhausted(
            f"No free port for '{role}' in {port_range.start}-{port_range.end} "
            f"after {self.max_attempts} attempts."
        )


def _ports_of(entry: Mapping[str, Any]) -> set[int]:
    ports = entry.get("ports")
    values: set[int] = set()
    if isinstance(ports, Mapping):
        for value in ports.values():
            if isinstance(value, bool):
                continue
            if isinstance(value, int):
                values.add(value)
            elif isinstance(value, str) and value.strip().isdigit():
                values.add(int(value))
    return values


__all__ = ["PortAllocator", "PortsRegistryError"]
