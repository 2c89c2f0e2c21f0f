"""Host-level view of a GemStone product installation."""
from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .config import AppConfig, InstallationConfig
from .process import ProcessInvoker


@dataclass(frozen=True)
class Installation:
    """Product install root plus the per-host config, data, log and backup roots.

    The environment a GemStone executable needs (``GEMSTONE`` and a ``PATH``
    that reaches ``$GEMSTONE/bin``) is computed by :meth:`environment` and
    handed to each child process; ``os.environ`` is left untouched.
    """

    installation_directory: Path = Path("/opt/gemstone/product")
    config_directory: Path = Path("/etc/gemstone")
    extent_root: Path = Path("/var/local/gemstone")
    base_log_directory: Path = Path("/var/log/gemstone")
    backup_directory: Path = Path("/var/backups/gemstone")
    base_env: Mapping[str, str] | None = field(default=None, compare=False, repr=False)

    @classmethod
    def from_config(cls, config: AppConfig | InstallationConfig) -> Installation:
        """Build an installation from the resolved configuration."""
        paths = config.installation if isinstance(config, AppConfig) else config
        return cls(
            installation_directory=paths.directory,
            config_directory=paths.config_dir,
            extent_root=paths.extent_root,
            base_log_directory=paths.log_root,
            backup_directory=paths.backup_root,
        )

    @property
    def bin_directory(self) -> Path:
        """Directory holding the product executables."""
        return self.installation_directory / "bin"

    def environment(self) -> dict[str, str]:
        """Return the launch environment for GemStone executables."""
        env = dict(os.environ if self.base_env is None else self.base_env)
        env["GEMSTONE"] = str(self.installation_directory)
        search_path = env.get("PATH", "")
        bin_dir = str(self.bin_directory)
        env["PATH"] = f"{search_path}{os.pathsep}{bin_dir}" if search_path else bin_dir
        return env

    def stones(self) -> set[str]:
        """Return the names of stones with a configuration file on this host."""
        if not self.config_directory.is_dir():
            return set()
        names = {entry.name.split(".")[0] for entry in self.config_directory.iterdir()}
        # Hidden entries (editor swap files, in-flight renders) carry no name.
        names.discard("")
        return names

    def status(self) -> str:
        """Return ``gslist -clv`` output describing every server on the host."""
        return self._invoker().run(["gslist", "-clv"]).output

    def start_netldi(self) -> str:
        """Start the network listener daemon in guest mode."""
        return self._invoker().run(["startnetldi", "-g"]).output

    def stop_netldi(self) -> str:
        """Stop the network listener daemon."""
        return self._invoker().run(["stopnetldi"]).output

    def initial_extent_path(self) -> Path:
        """Return the pristine extent shipped with the product."""
        return self.bin_directory / "extent0.dbf"

    def _invoker(self) -> ProcessInvoker:
        return ProcessInvoker(env=self.environment())


__all__ = ["Installation"]
