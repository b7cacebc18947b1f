"""State management helpers for stackctl."""
from __future__ import annotations

from .operations import OperationStore, OperationStoreError
from .registry import InstanceMap, InstanceRegistry, StateRegistryError

__all__ = [
    "InstanceMap",
    "InstanceRegistry",
    "OperationStore",
    "OperationStoreError",
    "StateRegistryError",
]
