"""Filesystem sandbox checks for agent tool locations.

Both the root and the candidate are canonicalized (symlinks resolved)
before the containment test; any failure to canonicalize counts as
outside the sandbox.
"""

from __future__ import annotations

import os
from pathlib import Path


class SandboxViolation(Exception):
    """A path could not be confirmed to lie inside the sandbox root."""

    def __init__(self, path: str | os.PathLike[str], reason: str) -> None:
        self.path = str(path)
        self.reason = reason
        super().__init__(f"{self.path}: {reason}")


def canonical_root(root: str | os.PathLike[str]) -> Path:
    """Resolve the sandbox root, which must be an existing directory."""
    try:
        resolved = Path(root).resolve(strict=True)
    except (OSError, RuntimeError, ValueError) as exc:
        raise SandboxViolation(root, f"sandbox root cannot be resolved ({exc})") from exc
    if not resolved.is_dir():
        raise SandboxViolation(root, "sandbox root is not a directory")
    return resolved


def _canonical_candidate(candidate: Path) -> Path:
    if candidate.exists():
        return candidate.resolve(strict=True)

    if candidate.is_symlink():
        # Dangling link: follow it as far as it goes; the target decides.
        return candidate.resolve(strict=False)

    # Prospective write target: the parent must exist and is resolved instead.
    name = candidate.name
    if name in ("", ".", ".."):
        raise SandboxViolation(candidate, "path has no file name component")
    parent = candidate.parent.resolve(strict=True)
    return parent / name


def resolve_within(root: str | os.PathLike[str], candidate: str | os.PathLike[str]) -> Path:
    """Return the canonical form of ``candidate`` if it lies within ``root``.

    Relative candidates are interpreted relative to the root.

    Raises:
        SandboxViolation: the candidate is outside the root or cannot be resolved.
    """
    resolved_root = canonical_root(root)

    path = Path(candidate).expanduser()
    if not path.is_absolute():
        path = resolved_root / path

    try:
        resolved = _canonical_candidate(path)
    except SandboxViolation:
        raise
    except (OSError, RuntimeError, ValueError) as exc:
        raise SandboxViolation(candidate, f"cannot be resolved ({exc})") from exc

    if not resolved.is_relative_to(resolved_root):
        raise SandboxViolation(candidate, f"resolves to {resolved}, outside {resolved_root}")
    return resolved


def is_within_sandbox(root: str | os.PathLike[str], candidate: str | os.PathLike[str]) -> bool:
    try:
        resolve_within(root, candidate)
    except SandboxViolation:
        return False
    return True


__all__ = ["SandboxViolation", "canonical_root", "is_within_sandbox", "resolve_within"]
