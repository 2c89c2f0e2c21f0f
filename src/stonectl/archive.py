"""Archive helpers shared by the backup and restore workflows."""
from __future__ import annotations

import hashlib
from collections.abc import Sequence
from pathlib import Path


def bundle_command(archive_path: Path, members: Sequence[Path]) -> list[str]:
    """Return the ``tar`` argv that gzips *members* into *archive_path*."""
    return ["tar", "zcf", str(archive_path), *(str(member) for member in members)]


def extract_command(archive_path: Path, destination: Path) -> list[str]:
    """Return the ``tar`` argv that unpacks *archive_path* under *destination*."""
    return ["tar", "-C", str(destination), "-zxf", str(archive_path)]


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


__all__ = ["bundle_command", "compute_checksum", "extract_command"]
