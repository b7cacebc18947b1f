"""Tests for the locking primitives and the instance lease table."""
from __future__ import annotations

import json
import os
import threading
from pathlib import Path

import pytest

from stackctl.errors import Conflict
from stackctl.locking import GLOBAL_LOCK_NAME, LeaseTable, LockManager, LockTimeoutError


def test_instance_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "alpha.lock"
    with manager.instance_lock("alpha") as handle:
        assert handle.wait_ms >= 0
        assert lock_path.exists()
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.instance_lock("alpha", timeout=0.2):
        pass


def test_instance_lock_is_reentrant_within_a_thread(tmp_path: Path) -> None:
    """Nested acquisition by the holding thread does not deadlock."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.instance_lock("alpha"):
        with manager.instance_lock("alpha", timeout=0.1) as inner:
            assert inner.paths == (tmp_path / "run" / "alpha.lock",)


def test_instance_lock_timeout_from_other_thread(tmp_path: Path) -> None:
    """A second thread times out while the first holds the lock."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)
    errors: list[BaseException] = []

    def contend() -> None:
        try:
            with manager.instance_lock("alpha", timeout=0.1):
                pass
        except LockTimeoutError as exc:
            errors.append(exc)

    with manager.instance_lock("alpha"):
        worker = threading.Thread(target=contend)
        worker.start()
        worker.join(timeout=5)

    assert len(errors) == 1
    assert "alpha.lock" in str(errors[0])


def test_mutate_instances_acquires_global_then_instance(tmp_path: Path) -> None:
    """Lock bundles acquire global first followed by per-instance locks."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_instances(["beta", "alpha", "alpha"]) as bundle:
        assert bundle.wait_ms >= 0
        assert bundle.paths == (
            tmp_path / "run" / GLOBAL_LOCK_NAME,
            tmp_path / "run" / "alpha.lock",
            tmp_path / "run" / "beta.lock",
        )


def test_lock_path_sanitises_names(tmp_path: Path) -> None:
    """Slashes never escape the runtime directory."""
    manager = LockManager(tmp_path / "run")

    assert manager.lock_path("a/b") == tmp_path / "run" / "a-b.lock"
    assert manager.lock_path("  ") == tmp_path / "run" / "unnamed.lock"


def test_lease_conflict_names_the_holder() -> None:
    """A second operation on a leased instance is rejected with Conflict."""
    leases = LeaseTable()
    leases.acquire("inst1", "restart-1")

    with pytest.raises(Conflict) as excinfo:
        leases.acquire("inst1", "config-2")

    assert excinfo.value.held_by == "restart-1"
    assert excinfo.value.to_dict()["held_by"] == "restart-1"
    # Other instances are unaffected.
    leases.acquire("inst2", "config-2")


def test_lease_hold_is_reentrant_for_same_operation() -> None:
    """A nested hold by the owner keeps the outer lease until it exits."""
    leases = LeaseTable()

    with leases.hold("inst1", "restore-1"):
        with leases.hold("inst1", "restore-1"):
            assert leases.holder("inst1") == "restore-1"
        assert leases.holder("inst1") == "restore-1"

    assert leases.holder("inst1") is None


def test_lease_release_ignores_non_owner() -> None:
    """Releasing with the wrong operation id leaves the lease intact."""
    leases = LeaseTable()
    leases.acquire("inst1", "op-a")

    leases.release("inst1", "op-b")
    assert leases.holder("inst1") == "op-a"

    leases.release("inst1", "op-a")
    assert leases.holder("inst1") is None


def test_lease_released_when_block_raises() -> None:
    """The lease is returned even when the guarded work fails."""
    leases = LeaseTable()

    with pytest.raises(RuntimeError):
        with leases.hold("inst1", "op-a"):
            raise RuntimeError("boom")

    assert leases.holder("inst1") is None
