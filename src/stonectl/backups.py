"""Backup naming, transaction-log parsing and the backup index."""
from __future__ import annotations

import json
import os
import re
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from pathlib import Path

INDEX_NAME = "backups.json"

_TRAILING_INTEGER = re.compile(r"(-?\d+)\s*$")


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


class TranlogParseError(BackupError):
    """Raised when ``startNewLog`` output does not end in a usable log number."""


class BackupRegistryError(BackupError):
    """Raised when backup index interactions fail."""


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def parse_tranlog_number(line: str) -> int:
    """Return the transaction log number that *line* ends with.

    The number must be a non-negative integer; anything else aborts the
    backup before a file is written.
    """
    match = _TRAILING_INTEGER.search(line)
    if match is None:
        raise TranlogParseError(f"No transaction log number at end of output: {line!r}")
    number = int(match.group(1))
    if number < 0:
        raise TranlogParseError(f"Transaction log number must be non-negative, got {number}.")
    return number


@dataclass(frozen=True, slots=True)
class BackupPaths:
    """The pair of files produced by one backup of *instance* on *day*.

    Names carry only the calendar date, so a second backup on the same day
    replaces the first.
    """

    instance: str
    day: date
    extent_backup: Path
    bundle: Path

    @classmethod
    def for_day(cls, backup_directory: Path, instance: str, day: date) -> BackupPaths:
        """Return the backup paths for *instance* on *day*."""
        stamp = day.strftime("%Y-%m-%d")
        return cls(
            instance=instance,
            day=day,
            extent_backup=backup_directory / f"{instance}_{stamp}.full.gz",
            bundle=backup_directory / f"{instance}_{stamp}.bak.tgz",
        )


@dataclass(slots=True)
class BackupsRegistry:
    """Manage the JSON backup index under the backup directory."""

    root: Path
    index: Path | None = None
    index_path: Path = field(init=False)

    def __post_init__(self) -> None:
        """Normalise root/index paths after initialisation."""
        self.root = self.root.expanduser()
        self.index_path = (self.index or self.root / INDEX_NAME).expanduser()
        self.index = self.index_path

    def read(self) -> dict[str, object]:
        """Return the parsed backups index (empty structure when missing)."""
        if not self.index_path.exists():
            return {"backups": []}
        try:
            data = json.loads(self.index_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {"backups": []}
        except json.JSONDecodeError as exc:
            raise BackupRegistryError(
                f"Backup index corrupted ({self.index_path}): {exc}"
            ) from exc
        if not isinstance(data, Mapping):
            raise BackupRegistryError(f"Backup index must be a JSON object ({self.index_path}).")
        return dict(data)

    def write(self, payload: Mapping[str, object]) -> None:
        """Atomically persist *payload* to the backups index."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            self.index_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupRegistryError(f"Failed to prepare backup root {self.root}: {exc}") from exc
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(self.index_path.parent),
            prefix=f".{self.index_path.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=False)
                handle.write("\n")
            os.replace(tmp_path, self.index_path)
            os.chmod(self.index_path, 0o640)
        except OSError as exc:
            raise BackupRegistryError(f"Failed to write backup index: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def list_entries(self) -> list[dict[str, object]]:
        """Return a list of backup entries."""
        backups = self.read().get("backups", [])
        entries: list[dict[str, object]] = []
        if isinstance(backups, list):
            for item in backups:
                if isinstance(item, Mapping):
                    entries.append(dict(item))
        return entries

    def entries_for_instance(self, instance: str) -> list[dict[str, object]]:
        """Return entries associated with *instance*."""
        return [
            entry
            for entry in self.list_entries()
            if str(entry.get("instance", "")).strip() == instance
        ]

    def record(self, entry: Mapping[str, object]) -> None:
        """Store *entry*, replacing any entry for the same instance and date."""
        key = (entry.get("instance"), entry.get("date"))
        kept = [
            existing
            for existing in self.list_entries()
            if (existing.get("instance"), existing.get("date")) != key
        ]
        kept.append(dict(entry))
        self.write({"backups": kept})


@dataclass(slots=True)
class BackupEntryBuilder:
    """Helper for constructing backup index entries."""

    paths: BackupPaths
    tranlog_number: int
    checksum: str
    size_bytes: int

    def build(self) -> dict[str, object]:
        """Return the JSON-serialisable entry for the backup index."""
        return {
            "instance": self.paths.instance,
            "date": self.paths.day.isoformat(),
            "created_at": _now_iso(),
            "bundle": str(self.paths.bundle),
            "extent_backup": str(self.paths.extent_backup),
            "tranlog": self.tranlog_number,
            "size_bytes": self.size_bytes,
            "checksum": {"algorithm": "sha256", "value": self.checksum},
        }


__all__ = [
    "BackupEntryBuilder",
    "BackupError",
    "BackupPaths",
    "BackupRegistryError",
    "BackupsRegistry",
    "TranlogParseError",
    "parse_tranlog_number",
]
