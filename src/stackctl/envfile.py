"""Read and rewrite ``KEY=value`` environment files in place."""
from __future__ import annotations

import os
import tempfile
from pathlib import Path


def read_env_file(path: Path) -> dict[str, str]:
    """Return the variables defined in *path* (comments and blanks skipped)."""
    values: dict[str, str] = {}
    if not path.exists():
        return values
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value
    return values


def set_env_var(path: Path, key: str, value: str) -> bool:
    """Set ``key=value`` in *path*, appending the line when absent.

    Returns ``True`` when the file content changed.
    """
    lines = path.read_text(encoding="utf-8").splitlines() if path.exists() else []
    updated: list[str] = []
    found = False
    for line in lines:
        stripped = line.lstrip()
        if not stripped.startswith("#") and stripped.partition("=")[0].strip() == key:
            if not found:
                updated.append(f"{key}={value}")
                found = True
            continue
        updated.append(line)
    if not found:
        updated.append(f"{key}={value}")
    if updated == lines:
        return False

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write("\n".join(updated) + "\n")
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)
    return True


__all__ = ["read_env_file", "set_env_var"]
