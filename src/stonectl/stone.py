"""Lifecycle management for a single GemStone stone.

A stone moves through these states::

    unconfigured -> configured (stopped) <-> running
    configured (stopped) -> destroyed

:meth:`Stone.create` leaves a freshly configured stone running and
bootstrapped; :meth:`Stone.existing` adopts one that already has a
configuration file. Destroying a running stone is refused.

Each stone computes its own launch environment (``GEMSTONE``,
``GEMSTONE_NAME``, ``GEMSTONE_LOGDIR``, ``GEMSTONE_DATADIR`` and ``PATH``) and
passes it to every child process, so several stones can be managed from one
process. Operations on the *same* stone must still not run concurrently.
"""
from __future__ import annotations

import logging
import os
import re
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path

from . import archive
from .backups import (
    BackupEntryBuilder,
    BackupPaths,
    BackupsRegistry,
    parse_tranlog_number,
)
from .config import AppConfig
from .installation import Installation
from .process import ProcessInvoker
from .templates import TemplateEngine
from .topaz import TopazRunner, TopazScript

LOGGER = logging.getLogger(__name__)

CONFIG_TEMPLATE = "stone.conf.j2"
EXTENT_MODE = 0o660
TRANLOG_SIZE_MB = 100
PAGE_CACHE_KB = 100000
BOOTSTRAP_SYMBOL = "#BootStrapSymbolDictionaryName"
# Names become file and directory names and are recovered from config
# filenames cut at the first dot.
STONE_NAME_PATTERN = re.compile(r"[A-Za-z0-9_-]+")


class StoneError(RuntimeError):
    """Base class for stone lifecycle failures."""


class StoneNotFoundError(StoneError):
    """Raised when adopting a stone that has no configuration file."""


class StoneExistsError(StoneError):
    """Raised when creating a stone whose configuration file already exists."""


class StoneRunningError(StoneError):
    """Raised when a destructive operation targets a running stone."""


class InvalidStoneNameError(StoneError):
    """Raised when a stone name cannot be used as a file name."""


def validate_stone_name(name: str) -> str:
    """Return *name* if it is a usable stone name, else raise."""
    if not STONE_NAME_PATTERN.fullmatch(name):
        raise InvalidStoneNameError(
            f"Invalid stone name {name!r}: use letters, digits, '_' and '-' only."
        )
    return name


@dataclass(frozen=True, slots=True)
class StoneSettings:
    """Per-host options applied to every stone."""

    user_name: str = "DataCurator"
    password: str = "swordfish"
    start_wait: int = 10
    bootstrap_script: str | None = "seaside/topaz/installMonticello.topaz"
    topaz_bin: str = "topaz"
    topaz_args: tuple[str, ...] = ("-l",)

    @classmethod
    def from_config(cls, config: AppConfig) -> StoneSettings:
        """Build settings from the resolved configuration."""
        return cls(
            user_name=config.credentials.user,
            password=config.credentials.password,
            start_wait=config.start_wait,
            bootstrap_script=config.bootstrap_script,
            topaz_bin=config.topaz.bin,
            topaz_args=tuple(config.topaz.args),
        )


@dataclass(slots=True)
class BackupResult:
    """Files and metadata produced by :meth:`Stone.backup`."""

    paths: BackupPaths
    tranlog_number: int
    tranlog_file: Path
    checksum: str
    size_bytes: int


@dataclass(slots=True)
class Stone:
    """Handle on one named stone of an :class:`Installation`."""

    name: str
    installation: Installation
    settings: StoneSettings = field(default_factory=StoneSettings)
    templates: TemplateEngine | None = None
    clock: Callable[[], date] = date.today

    # Construction --------------------------------------------------
    @classmethod
    def existing(
        cls,
        name: str,
        installation: Installation,
        *,
        settings: StoneSettings | None = None,
        templates: TemplateEngine | None = None,
    ) -> Stone:
        """Adopt a stone that already has a configuration file."""
        validate_stone_name(name)
        if name not in installation.stones():
            raise StoneNotFoundError(
                f"Stone {name} does not exist: no configuration in "
                f"{installation.config_directory}"
            )
        return cls(name, installation, settings or StoneSettings(), templates)

    @classmethod
    def create(
        cls,
        name: str,
        installation: Installation,
        *,
        settings: StoneSettings | None = None,
        templates: TemplateEngine | None = None,
    ) -> Stone:
        """Configure, start and bootstrap a brand-new stone."""
        validate_stone_name(name)
        if name in installation.stones():
            raise StoneExistsError(
                f"Cannot create stone {name}: the configuration already exists in "
                f"{installation.config_directory}"
            )
        instance = cls(name, installation, settings or StoneSettings(), templates)
        instance.initialize_new_stone()
        return instance

    # Paths ---------------------------------------------------------
    @property
    def user_name(self) -> str:
        """Login used for stopstone and topaz sessions."""
        return self.settings.user_name

    @property
    def password(self) -> str:
        """Password paired with :attr:`user_name`."""
        return self.settings.password

    @property
    def log_directory(self) -> Path:
        """Directory holding this stone's log files."""
        return self.installation.base_log_directory / self.name

    @property
    def data_directory(self) -> Path:
        """Directory holding extents and transaction logs."""
        return self.installation.extent_root / self.name

    @property
    def backup_directory(self) -> Path:
        """Shared directory receiving backup files."""
        return self.installation.backup_directory

    @property
    def extent_directory(self) -> Path:
        """Directory holding the repository extent."""
        return self.data_directory / "extent"

    @property
    def extent_filename(self) -> Path:
        """The repository extent file."""
        return self.extent_directory / "extent0.dbf"

    @property
    def tranlog_directory(self) -> Path:
        """Directory receiving transaction log segments."""
        return self.data_directory / "tranlog"

    @property
    def tranlog_directories(self) -> tuple[Path, Path]:
        """Transaction log directories, one per configured log slot."""
        return (self.tranlog_directory, self.tranlog_directory)

    @property
    def system_config_filename(self) -> Path:
        """The stone's configuration file."""
        return self.installation.config_directory / f"{self.name}.conf"

    @property
    def stone_logfile(self) -> Path:
        """Log file written by the stone process."""
        return self.log_directory / f"{self.name}.log"

    @property
    def topaz_logfile(self) -> Path:
        """Transcript of every topaz session."""
        return self.log_directory / "topaz.log"

    @property
    def command_logfile(self) -> Path:
        """Record of every logged administration command and its output."""
        return self.log_directory / "stone_command_output.log"

    def tranlog_file(self, number: int) -> Path:
        """Return the transaction log segment numbered *number*."""
        return self.tranlog_directory / f"tranlog{number}.dbf"

    def backup_paths(self, day: date | None = None) -> BackupPaths:
        """Return the backup file pair for *day* (default: today)."""
        return BackupPaths.for_day(self.backup_directory, self.name, day or self.clock())

    # Collaborators -------------------------------------------------
    def environment(self) -> dict[str, str]:
        """Return the launch environment for this stone's child processes."""
        env = self.installation.environment()
        env["GEMSTONE_NAME"] = self.name
        env["GEMSTONE_LOGDIR"] = str(self.log_directory)
        env["GEMSTONE_DATADIR"] = str(self.data_directory)
        return env

    @property
    def invoker(self) -> ProcessInvoker:
        """Process invoker logging to this stone's command log."""
        return ProcessInvoker(
            env=self.environment(),
            command_log=self.command_logfile,
            instance=self.name,
        )

    @property
    def topaz(self) -> TopazRunner:
        """Topaz runner logged in as this stone's administrator."""
        return TopazRunner(
            stone_name=self.name,
            user_name=self.user_name,
            password=self.password,
            logfile=self.topaz_logfile,
            env=self.environment(),
            topaz_bin=self.settings.topaz_bin,
            topaz_args=self.settings.topaz_args,
        )

    # Lifecycle -----------------------------------------------------
    def initialize_new_stone(self) -> None:
        """Lay down configuration, directories and extent, then start and bootstrap."""
        self.create_config_file()
        self.extent_directory.mkdir(parents=True, exist_ok=True)
        self.log_directory.mkdir(parents=True, exist_ok=True)
        for directory in self.tranlog_directories:
            directory.mkdir(parents=True, exist_ok=True)
        self.initialize_extents()
        self.start()
        self.bootstrap()

    def create_config_file(self) -> Stone:
        """Render the stone's configuration file."""
        templates = self.templates or TemplateEngine.with_overrides(None)
        templates.render_to_path(
            CONFIG_TEMPLATE,
            self.system_config_filename,
            {
                "stone_name": self.name,
                "extent_filename": str(self.extent_filename),
                "tranlog_directories": [str(path) for path in self.tranlog_directories],
                "tranlog_size": TRANLOG_SIZE_MB,
                "page_cache_kb": PAGE_CACHE_KB,
            },
            mode=0o644,
        )
        return self

    def initialize_extents(self) -> None:
        """Seed the stone with the product's pristine extent."""
        shutil.copyfile(self.installation.initial_extent_path(), self.extent_filename)
        os.chmod(self.extent_filename, EXTENT_MODE)

    def bootstrap(self) -> None:
        """Load the bootstrap topaz script with the symbol dictionary alias in place."""
        if not self.settings.bootstrap_script:
            return
        script_path = Path(self.settings.bootstrap_script)
        if not script_path.is_absolute():
            script_path = self.installation.installation_directory / script_path
        self.topaz.run_command(
            f"UserGlobals at: {BOOTSTRAP_SYMBOL} put: #UserGlobals. System commitTransaction"
        )
        self.topaz.execute(TopazScript().input_file(script_path).commit())
        self.topaz.run_command(
            f"UserGlobals removeKey: {BOOTSTRAP_SYMBOL}. System commitTransaction"
        )

    def start(self) -> Stone:
        """Start the stone and wait briefly for it to come up.

        The wait outcome is not checked; call :meth:`running` when a
        guarantee is needed.
        """
        LOGGER.info("starting stone %s", self.name)
        self.invoker.run_logged(
            [
                "startstone",
                "-z",
                str(self.system_config_filename),
                "-l",
                str(self.stone_logfile),
                self.name,
            ]
        )
        self.running(self.settings.start_wait)
        return self

    def stop(self) -> Stone:
        """Ask the stone to shut down; does not wait for it to exit."""
        LOGGER.info("stopping stone %s", self.name)
        self.invoker.run_logged(
            ["stopstone", "-i", self.name, self.user_name, self.password]
        )
        return self

    def restart(self) -> Stone:
        """Stop, then start the stone."""
        self.stop()
        return self.start()

    def running(self, wait_time: int = -1) -> bool:
        """Return whether the stone is running, waiting up to *wait_time* seconds."""
        return self.invoker.probe(["waitstone", self.name, str(wait_time)]).ok

    def status(self) -> str:
        """Return ``gslist`` details for a running stone, or a not-running notice."""
        if self.running():
            return self.invoker.run(["gslist", "-clv", self.name]).output
        return f"{self.name} not running"

    def destroy(self) -> None:
        """Remove the configuration, extents, logs and transaction logs."""
        if self.running():
            raise StoneRunningError(f"Can not destroy running stone {self.name}")
        LOGGER.warning("destroying stone %s", self.name)
        self.system_config_filename.unlink(missing_ok=True)
        shutil.rmtree(self.extent_directory, ignore_errors=True)
        shutil.rmtree(self.log_directory, ignore_errors=True)
        for directory in dict.fromkeys(self.tranlog_directories):
            shutil.rmtree(directory, ignore_errors=True)

    # Backup / restore ----------------------------------------------
    def backup(self, registry: BackupsRegistry | None = None) -> BackupResult:
        """Take an online backup bundled with the current transaction log.

        Steps run strictly in order and are not rolled back: start a new
        transaction log, checkpoint, write a compressed full backup, then tar
        it with the new log segment. Same-day backups overwrite each other.
        """
        topaz = self.topaz
        result = topaz.run_command("SystemRepository startNewLog")
        tranlog_number = parse_tranlog_number(result.last_line)

        topaz.run_command("System startCheckpointSync")
        paths = self.backup_paths()
        self.backup_directory.mkdir(parents=True, exist_ok=True)
        topaz.run_commands(
            "System abortTransaction",
            f"SystemRepository fullBackupCompressedTo: '{paths.extent_backup}'",
        )

        tranlog_file = self.tranlog_file(tranlog_number)
        self.invoker.run_logged(
            archive.bundle_command(paths.bundle, [paths.extent_backup, tranlog_file])
        )

        checksum = archive.compute_checksum(paths.bundle)
        size_bytes = paths.bundle.stat().st_size
        index = registry or BackupsRegistry(self.backup_directory)
        index.record(
            BackupEntryBuilder(
                paths=paths,
                tranlog_number=tranlog_number,
                checksum=checksum,
                size_bytes=size_bytes,
            ).build()
        )
        LOGGER.info("backed up stone %s to %s", self.name, paths.bundle)
        return BackupResult(
            paths=paths,
            tranlog_number=tranlog_number,
            tranlog_file=tranlog_file,
            checksum=checksum,
            size_bytes=size_bytes,
        )

    def restore(self, on: date | None = None) -> BackupPaths:
        """Restore the stone from the backup bundle taken on *on* (default: today)."""
        paths = self.backup_paths(on)
        self.invoker.run_logged(archive.extract_command(paths.bundle, self.backup_directory))
        topaz = self.topaz
        topaz.run_command(f"SystemRepository restoreFromBackup: '{paths.extent_backup}'")
        topaz.run_command("SystemRepository restoreFromCurrentLogs")
        topaz.run_command("SystemRepository commitRestore")
        LOGGER.info("restored stone %s from %s", self.name, paths.bundle)
        return paths


__all__ = [
    "BackupResult",
    "InvalidStoneNameError",
    "Stone",
    "StoneError",
    "StoneExistsError",
    "StoneNotFoundError",
    "StoneRunningError",
    "StoneSettings",
    "validate_stone_name",
]
