"""Tests for the YAML instance registry."""
from __future__ import annotations

import threading
from pathlib import Path

import pytest
import yaml

from stackctl.errors import NotFoundError
from stackctl.locking import LockManager
from stackctl.state import InstanceRegistry, StateRegistryError


@pytest.fixture()
def registry(tmp_path: Path) -> InstanceRegistry:
    locks = LockManager(tmp_path / "run", default_timeout=2.0)
    return InstanceRegistry(tmp_path / "registry", locks=locks)


def test_load_returns_empty_map_when_missing(registry: InstanceRegistry) -> None:
    """A fresh registry has no instances."""
    assert registry.load() == {}


def test_put_and_resolve_by_id_or_name(registry: InstanceRegistry) -> None:
    """Instances resolve by id first, then case-insensitively by name."""
    registry.put_instance({"id": "ab12cd34", "name": "Demo", "status": "running"})

    assert registry.resolve("ab12cd34")["name"] == "Demo"
    assert registry.resolve("demo")["id"] == "ab12cd34"
    with pytest.raises(NotFoundError):
        registry.resolve("other")


def test_put_instance_requires_id(registry: InstanceRegistry) -> None:
    """Entries without an id are rejected."""
    with pytest.raises(StateRegistryError):
        registry.put_instance({"name": "nameless"})


def test_update_instance_merges_top_level_keys(registry: InstanceRegistry) -> None:
    """Updates merge into the stored entry and are persisted as YAML."""
    registry.put_instance({"id": "ab12cd34", "name": "demo", "status": "creating"})

    merged = registry.update_instance("ab12cd34", {"status": "running"})

    assert merged == {"id": "ab12cd34", "name": "demo", "status": "running"}
    document = yaml.safe_load(registry.instances_path.read_text(encoding="utf-8"))
    assert document["instances"]["ab12cd34"]["status"] == "running"


def test_update_unknown_instance_raises(registry: InstanceRegistry) -> None:
    """Updating a missing id raises NotFoundError and writes nothing."""
    with pytest.raises(NotFoundError):
        registry.update_instance("missing", {"status": "running"})
    assert not registry.instances_path.exists()


def test_mutate_failure_leaves_document_unchanged(registry: InstanceRegistry) -> None:
    """A mutator that raises does not persist its partial changes."""
    registry.put_instance({"id": "a1", "name": "one"})

    def broken(instances: dict[str, dict[str, object]]) -> None:
        instances["a1"]["name"] = "changed"
        raise ValueError("abort")

    with pytest.raises(ValueError):
        registry.mutate(broken)

    assert registry.require_instance("a1")["name"] == "one"


def test_returned_entries_are_copies(registry: InstanceRegistry) -> None:
    """Callers cannot mutate the registry through returned entries."""
    registry.put_instance({"id": "a1", "name": "one", "ports": {"database": 5501}})

    entry = registry.require_instance("a1")
    entry["ports"]["database"] = 1

    assert registry.require_instance("a1")["ports"]["database"] == 5501


def test_concurrent_mutations_are_serialized(registry: InstanceRegistry) -> None:
    """Parallel read-modify-write cycles never lose an update."""
    registry.put_instance({"id": "a1", "counter": 0})

    def bump(instances: dict[str, dict[str, int]]) -> None:
        instances["a1"]["counter"] += 1

    def worker() -> None:
        for _ in range(10):
            registry.mutate(bump)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert registry.require_instance("a1")["counter"] == 40


def test_remove_instance_returns_entry(registry: InstanceRegistry) -> None:
    """Removal returns the removed entry; a second removal fails."""
    registry.put_instance({"id": "a1", "name": "one"})

    assert registry.remove_instance("a1")["name"] == "one"
    with pytest.raises(NotFoundError):
        registry.remove_instance("a1")


def test_corrupt_document_raises(registry: InstanceRegistry) -> None:
    """Unparseable YAML surfaces as StateRegistryError."""
    registry.ensure_root()
    registry.instances_path.write_text("instances: [unclosed\n", encoding="utf-8")

    with pytest.raises(StateRegistryError):
        registry.load()
