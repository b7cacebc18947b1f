"""Locking primitives for stackctl.

Two layers are provided:

* :class:`LockManager` hands out ``fcntl`` file locks under the runtime
  directory so separate ``stackctl`` processes serialise registry writes and
  per-instance mutations.
* :class:`LeaseTable` is the in-process lease map (instance id to the
  operation currently holding it). Mutating workflows acquire a lease for
  their whole duration; a second workflow against the same instance is
  rejected with :class:`~stackctl.errors.Conflict` instead of interleaving.
"""
from __future__ import annotations

import fcntl
import json
import os
import threading
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .errors import Conflict

GLOBAL_LOCK_NAME = "stackctl.lock"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout expires."""


@dataclass(slots=True)
class LockHandle:
    """Held file lock (or bundle of locks) with acquisition statistics."""

    paths: tuple[Path, ...]
    wait_ms: int


class LockManager:
    """Acquire global and per-instance file locks."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and default acquisition timeout."""
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.default_timeout = float(default_timeout)
        self._guards_lock = threading.Lock()
        self._guards: dict[Path, threading.RLock] = {}
        self._depth: dict[Path, int] = {}
        self._fds: dict[Path, int] = {}

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        safe = name.replace("/", "-").strip() or "unnamed"
        return self.runtime_dir / f"{safe}.lock"

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the global lock that guards whole-document registry writes."""
        with self._acquire(self.runtime_dir / GLOBAL_LOCK_NAME, timeout) as handle:
            yield handle

    @contextmanager
    def instance_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for a single instance."""
        with self._acquire(self.lock_path(name), timeout) as handle:
            yield handle

    @contextmanager
    def mutate_instances(
        self,
        names: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockHandle]:
        """Acquire the global lock followed by per-instance locks in sorted order."""
        start = time.perf_counter()
        with ExitStack() as stack:
            held = [stack.enter_context(self.global_lock(timeout=timeout))]
            for name in sorted(set(names)):
                held.append(stack.enter_context(self.instance_lock(name, timeout=timeout)))
            paths = tuple(path for handle in held for path in handle.paths)
            yield LockHandle(paths=paths, wait_ms=int((time.perf_counter() - start) * 1000))

    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        effective = self.default_timeout if timeout is None else float(timeout)
        start = time.perf_counter()
        guard = self._guard_for(path)
        # Threads of one process queue on the guard; the flock is taken once per process.
        if not guard.acquire(timeout=effective):
            raise LockTimeoutError(f"Timed out after {effective:.1f}s waiting for lock {path}.")
        try:
            if self._depth.get(path, 0) == 0:
                self._fds[path] = self._flock(path, start + effective, effective)
            self._depth[path] = self._depth.get(path, 0) + 1
            try:
                yield LockHandle(paths=(path,), wait_ms=int((time.perf_counter() - start) * 1000))
            finally:
                self._depth[path] -= 1
                if self._depth[path] == 0:
                    fd = self._fds.pop(path)
                    fcntl.flock(fd, fcntl.LOCK_UN)
                    os.close(fd)
        finally:
            guard.release()

    def _guard_for(self, path: Path) -> threading.RLock:
        with self._guards_lock:
            guard = self._guards.get(path)
            if guard is None:
                guard = threading.RLock()
                self._guards[path] = guard
            return guard

    def _flock(self, path: Path, deadline: float, effective: float) -> int:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError as exc:
                    if time.perf_counter() >= deadline:
                        raise LockTimeoutError(
                            f"Timed out after {effective:.1f}s waiting for lock {path}."
                        ) from exc
                    time.sleep(_POLL_INTERVAL)
            metadata = {
                "pid": os.getpid(),
                "path": str(path),
                "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
            }
            os.ftruncate(fd, 0)
            os.pwrite(fd, json.dumps(metadata).encode("utf-8"), 0)
        except BaseException:
            os.close(fd)
            raise
        return fd


@dataclass(slots=True)
class Lease:
    """An instance lease held by one operation."""

    instance_id: str
    operation_id: str
    acquired_at: float


class LeaseTable:
    """In-process map of instance id to the operation holding it."""

    def __init__(self) -> None:
        """Initialise an empty lease table."""
        self._lock = threading.Lock()
        self._leases: dict[str, Lease] = {}

    def acquire(self, instance_id: str, operation_id: str) -> Lease:
        """Take the lease for *instance_id* or raise :class:`Conflict`."""
        with self._lock:
            current = self._leases.get(instance_id)
            if current is not None and current.operation_id != operation_id:
                raise Conflict(instance_id, current.operation_id)
            lease = Lease(instance_id, operation_id, time.monotonic())
            self._leases[instance_id] = lease
            return lease

    def release(self, instance_id: str, operation_id: str) -> None:
        """Release the lease if *operation_id* still holds it."""
        with self._lock:
            current = self._leases.get(instance_id)
            if current is not None and current.operation_id == operation_id:
                del self._leases[instance_id]

    def holder(self, instance_id: str) -> str | None:
        """Return the operation id holding *instance_id*, if any."""
        with self._lock:
            lease = self._leases.get(instance_id)
            return lease.operation_id if lease else None

    @contextmanager
    def hold(self, instance_id: str, operation_id: str) -> Iterator[Lease]:
        """Hold the lease for the duration of the ``with`` block.

        Re-entrant for the same operation id: a nested ``hold`` by the lease
        owner leaves the outer lease in place.
        """
        nested = self.holder(instance_id) == operation_id
        lease = self.acquire(instance_id, operation_id)
        try:
            yield lease
        finally:
            if not nested:
                self.release(instance_id, operation_id)


__all__ = [
    "Lease",
    "LeaseTable",
    "LockHandle",
    "LockManager",
    "LockTimeoutError",
]
