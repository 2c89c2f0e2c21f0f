"""Drive the ``topaz`` console with composed, session-wrapped scripts.

A script is an ordered sequence of typed records rendered only when the
session is launched. Every session is wrapped in the same protocol:

* preamble: ``output append <topaz.log>``, ``set u <user> p <password>
  gemstone <stone>``, ``login``, display limits, and ``iferror stack`` so that
  errors print a stack into the captured output;
* the caller's records;
* postamble: ``output pop`` and ``exit``.
"""
from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

LOGGER = logging.getLogger(__name__)

RUN_TERMINATOR = "%"


class TopazError(RuntimeError):
    """Raised when a topaz session cannot be run or exits unsuccessfully."""


class TopazScriptError(ValueError):
    """Raised when a record would break the line-oriented script format."""


@dataclass(frozen=True, slots=True)
class TopazCommand:
    """A single-line topaz command such as ``login`` or ``limit oops 100``."""

    verb: str
    arguments: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        """Reject values that would smuggle extra lines into the script."""
        for part in (self.verb, *self.arguments):
            if "\n" in part or "\r" in part:
                raise TopazScriptError(f"Topaz command parts must be single-line: {part!r}")

    def render(self) -> list[str]:
        """Return the script lines for this record."""
        return [" ".join((self.verb, *self.arguments))]


@dataclass(frozen=True, slots=True)
class RunBlock:
    """Smalltalk statements executed inside a ``run`` … ``%`` block."""

    statements: tuple[str, ...]

    def __post_init__(self) -> None:
        """Reject statements that would terminate the block early."""
        if not self.statements:
            raise TopazScriptError("A run block needs at least one statement.")
        for statement in self.statements:
            if any(line.strip() == RUN_TERMINATOR for line in statement.splitlines()):
                raise TopazScriptError(
                    f"Statement contains a bare '{RUN_TERMINATOR}' line: {statement!r}"
                )

    def render(self) -> list[str]:
        """Return the script lines for this record."""
        return ["run", ". ".join(self.statements), RUN_TERMINATOR]


TopazRecord = TopazCommand | RunBlock

DISPLAY_LIMITS: tuple[TopazCommand, ...] = (
    TopazCommand("limit", ("oops", "100")),
    TopazCommand("limit", ("bytes", "1000")),
    TopazCommand("display", ("oops",)),
)
ERROR_POLICY = TopazCommand("iferror", ("stack",))
POSTAMBLE: tuple[TopazCommand, ...] = (
    TopazCommand("output", ("pop",)),
    TopazCommand("exit"),
)


def session_preamble(
    logfile: Path,
    user_name: str,
    password: str,
    stone_name: str,
) -> tuple[TopazCommand, ...]:
    """Return the records that open an authenticated, logged session.

    The user, password and stone name are whitespace-separated fields of the
    ``set`` line, so each must be a single non-empty token.
    """
    for label, value in (("user", user_name), ("password", password), ("stone", stone_name)):
        if not value or any(char.isspace() for char in value):
            raise TopazScriptError(f"Topaz login {label} must be a single non-empty token.")
    return (
        TopazCommand("output", ("append", str(logfile))),
        TopazCommand("set", ("u", user_name, "p", password, "gemstone", stone_name)),
        TopazCommand("login"),
        *DISPLAY_LIMITS,
        ERROR_POLICY,
    )


class TopazScript:
    """Ordered builder of topaz records."""

    def __init__(self, records: Iterable[TopazRecord] = ()) -> None:
        """Start a script, optionally seeded with *records*."""
        self.records: list[TopazRecord] = list(records)

    def add(self, record: TopazRecord) -> TopazScript:
        """Append *record* and return the builder."""
        self.records.append(record)
        return self

    def run(self, *statements: str) -> TopazScript:
        """Append a ``run`` block executing *statements* in order."""
        return self.add(RunBlock(tuple(statements)))

    def input_file(self, path: str | Path) -> TopazScript:
        """Append an ``input`` command that loads another topaz script."""
        return self.add(TopazCommand("input", (str(path),)))

    def commit(self) -> TopazScript:
        """Append a ``commit``."""
        return self.add(TopazCommand("commit"))

    def extend(self, records: Iterable[TopazRecord]) -> TopazScript:
        """Append every record from *records*."""
        for record in records:
            self.add(record)
        return self

    def lines(self) -> list[str]:
        """Return the rendered script lines."""
        rendered: list[str] = []
        for record in self.records:
            rendered.extend(record.render())
        return rendered

    def render(self) -> str:
        """Return the script text fed to topaz on standard input."""
        return "\n".join(self.lines()) + "\n"


@dataclass(slots=True)
class TopazResult:
    """Captured output of a topaz session."""

    args: list[str]
    returncode: int
    output: str

    @property
    def lines(self) -> list[str]:
        """Return the output split into lines."""
        return self.output.splitlines()

    @property
    def last_line(self) -> str:
        """Return the final non-blank output line (empty when there is none)."""
        for line in reversed(self.lines):
            if line.strip():
                return line
        return ""


@dataclass(slots=True)
class TopazRunner:
    """Run session-wrapped topaz scripts for one stone."""

    stone_name: str
    user_name: str
    password: str
    logfile: Path
    env: Mapping[str, str] | None = None
    topaz_bin: str = "topaz"
    topaz_args: Sequence[str] = field(default_factory=lambda: ("-l",))

    def compose(self, body: Iterable[TopazRecord]) -> TopazScript:
        """Wrap *body* in the session preamble and postamble."""
        script = TopazScript(
            session_preamble(self.logfile, self.user_name, self.password, self.stone_name)
        )
        script.extend(body)
        script.extend(POSTAMBLE)
        return script

    def run_command(self, code: str) -> TopazResult:
        """Execute one Smalltalk statement sequence in a ``run`` block."""
        return self.run_commands(code)

    def run_commands(self, *statements: str) -> TopazResult:
        """Execute *statements*, joined with ``. ``, in a single ``run`` block."""
        return self.execute(TopazScript().run(*statements))

    def execute(self, body: TopazScript | Iterable[TopazRecord]) -> TopazResult:
        """Run *body* inside a full session and capture the console output."""
        records = body.records if isinstance(body, TopazScript) else list(body)
        script = self.compose(records).render()
        command = [self.topaz_bin, *self.topaz_args]
        self.logfile.parent.mkdir(parents=True, exist_ok=True)
        LOGGER.debug("topaz session for %s: %d records", self.stone_name, len(records))
        try:
            completed = subprocess.run(  # noqa: S603 - controlled command execution
                command,
                input=script,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                env=dict(self.env) if self.env is not None else None,
                check=False,
            )
        except FileNotFoundError as exc:
            raise TopazError(f"[{self.stone_name}] {self.topaz_bin} not found: {exc}") from exc
        result = TopazResult(command, completed.returncode, completed.stdout or "")
        if result.returncode != 0:
            raise TopazError(
                f"[{self.stone_name}] {shlex.join(command)} failed "
                f"(exit {result.returncode}): {result.last_line or 'no output'}"
            )
        return result


__all__ = [
    "DISPLAY_LIMITS",
    "ERROR_POLICY",
    "POSTAMBLE",
    "RunBlock",
    "TopazCommand",
    "TopazError",
    "TopazResult",
    "TopazRunner",
    "TopazScript",
    "TopazScriptError",
    "session_preamble",
]
