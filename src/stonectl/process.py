"""Run GemStone administration executables on behalf of a stone."""
from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)


class CommandError(RuntimeError):
    """Raised when an administration command exits unsuccessfully."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: int | None,
        output: str = "",
        *,
        instance: str | None = None,
    ) -> None:
        """Capture the failing command, its exit status and output."""
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        self.instance = instance
        prefix = f"[{instance}] " if instance else ""
        status = "not found" if returncode is None else f"failed (exit {returncode})"
        message = f"{prefix}{shlex.join(self.command)} {status}"
        tail = output.strip().splitlines()[-1:] if output.strip() else []
        if tail:
            message = f"{message}: {tail[0]}"
        super().__init__(message)


@dataclass(slots=True)
class ProcessResult:
    """Outcome of an invoked command."""

    args: list[str]
    returncode: int
    output: str = ""

    @property
    def ok(self) -> bool:
        """Return ``True`` when the command exited with status zero."""
        return self.returncode == 0


@dataclass(slots=True)
class ProcessInvoker:
    """Launch commands with an explicit environment and optional command log."""

    env: Mapping[str, str] | None = None
    command_log: Path | None = None
    instance: str | None = None

    def run(self, args: Sequence[str], *, check: bool = True) -> ProcessResult:
        """Run *args* capturing stdout and stderr together."""
        command = [str(arg) for arg in args]
        LOGGER.debug("running %s", shlex.join(command))
        try:
            completed = subprocess.run(  # noqa: S603 - controlled command execution
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                env=self._launch_env(),
                check=False,
            )
        except FileNotFoundError as exc:
            raise CommandError(command, None, str(exc), instance=self.instance) from exc
        result = ProcessResult(command, completed.returncode, completed.stdout or "")
        if check and not result.ok:
            raise CommandError(command, result.returncode, result.output, instance=self.instance)
        return result

    def probe(self, args: Sequence[str]) -> ProcessResult:
        """Run *args* and report the exit status without raising on failure."""
        command = [str(arg) for arg in args]
        try:
            completed = subprocess.run(  # noqa: S603 - controlled command execution
                command,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                env=self._launch_env(),
                check=False,
            )
        except FileNotFoundError as exc:
            raise CommandError(command, None, str(exc), instance=self.instance) from exc
        return ProcessResult(command, completed.returncode)

    def run_logged(self, args: Sequence[str], *, check: bool = True) -> ProcessResult:
        """Run *args* recording the command line and its output in the command log."""
        if self.command_log is None:
            return self.run(args, check=check)
        command = [str(arg) for arg in args]
        self.command_log.parent.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        with self.command_log.open("a", encoding="utf-8") as handle:
            handle.write(f"SHELL_CMD {stamp}: {shlex.join(command)}\n")
            handle.flush()
            LOGGER.debug("running %s (logged to %s)", shlex.join(command), self.command_log)
            try:
                completed = subprocess.run(  # noqa: S603 - controlled command execution
                    command,
                    stdout=handle,
                    stderr=subprocess.STDOUT,
                    env=self._launch_env(),
                    check=False,
                )
            except FileNotFoundError as exc:
                handle.write(f"{exc}\n")
                raise CommandError(command, None, str(exc), instance=self.instance) from exc
        result = ProcessResult(command, completed.returncode)
        if check and not result.ok:
            raise CommandError(
                command,
                result.returncode,
                f"see {self.command_log}",
                instance=self.instance,
            )
        return result

    def _launch_env(self) -> dict[str, str] | None:
        return dict(self.env) if self.env is not None else None


__all__ = ["CommandError", "ProcessInvoker", "ProcessResult"]
