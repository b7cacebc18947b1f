"""Tests for per-role port allocation."""
from __future__ import annotations

import random

import pytest

from stackctl.config import PORT_ROLES, PortRange
from stackctl.errors import ResourceExhausted
from stackctl.ports import PortAllocator, PortsRegistryError

RANGES = {
    "gateway_http": PortRange(8100, 8199),
    "gateway_tls": PortRange(8400, 8499),
    "database": PortRange(5500, 5599),
    "pooler": PortRange(6500, 6599),
    "analytics": PortRange(4100, 4199),
}


def test_allocate_returns_one_port_per_role_in_range() -> None:
    """Every role receives a port inside its configured range."""
    allocator = PortAllocator(RANGES, rng=random.Random(7))

    ports = allocator.allocate()

    assert set(ports) == set(PORT_ROLES)
    for role, port in ports.items():
        assert port in RANGES[role]
    assert allocator.used_ports == frozenset(ports.values())


def test_repeated_allocations_never_collide() -> None:
    """Ports handed out are unique across instances."""
    allocator = PortAllocator(RANGES, rng=random.Random(1))

    seen: set[int] = set()
    for _ in range(40):
        ports = allocator.allocate()
        assert seen.isdisjoint(ports.values())
        seen.update(ports.values())


def test_exhausted_range_raises_without_claiming() -> None:
    """A role with no free port raises ResourceExhausted and claims nothing."""
    ranges = {**RANGES, "pooler": PortRange(6500, 6500)}
    allocator = PortAllocator(ranges, max_attempts=5, rng=random.Random(3))
    allocator.allocate()
    before = allocator.used_ports

    with pytest.raises(ResourceExhausted, match="pooler"):
        allocator.allocate()

    assert allocator.used_ports == before


def test_release_returns_ports_to_pool() -> None:
    """Released ports can be allocated again."""
    ranges = {role: PortRange(r.start, r.start) for role, r in RANGES.items()}
    allocator = PortAllocator(ranges, max_attempts=3)
    first = allocator.allocate()

    allocator.release(first)

    assert allocator.allocate() == first


def test_rebuild_reads_registered_instances() -> None:
    """Rebuilding claims the ports of every registry entry, tolerating junk."""
    allocator = PortAllocator(RANGES)

    allocator.rebuild(
        [
            {"ports": {"gateway_http": 8101, "database": "5502"}},
            {"ports": {"pooler": True, "analytics": "n/a"}},
            {"name": "no ports"},
        ]
    )

    assert allocator.used_ports == frozenset({8101, 5502})


def test_missing_role_range_is_rejected() -> None:
    """The allocator refuses to start without a range for every role."""
    ranges = {role: value for role, value in RANGES.items() if role != "analytics"}

    with pytest.raises(PortsRegistryError, match="analytics"):
        PortAllocator(ranges)
