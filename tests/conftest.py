"""Pytest configuration helpers for the test suite.

The ``gemstone`` fixture lays down a fake product installation whose ``bin``
directory holds small shell scripts standing in for the GemStone executables.
They keep their state under ``$GEMSTONE/state``:

* ``<stone>.running`` exists while a stone is "up";
* ``calls.log`` lists every executable invocation in order;
* ``topaz.transcript`` collects every script fed to topaz;
* ``newlog_reply`` (optional) replaces topaz's ``startNewLog`` answer;
* ``topaz_exit`` (optional) sets topaz's exit status.
"""

from __future__ import annotations

import stat
from collections.abc import Callable
from pathlib import Path

import pytest

from stonectl.installation import Installation
from stonectl.stone import StoneSettings

_PRELUDE = """#!/bin/sh
state="$GEMSTONE/state"
mkdir -p "$state"
echo "$(basename "$0")${*:+ $*}" >> "$state/calls.log"
"""

FAKE_BINARIES: dict[str, str] = {
    "startstone": _PRELUDE
    + """
for last; do :; done
touch "$state/$last.running"
echo "Stone $last started with config $2"
""",
    "stopstone": _PRELUDE
    + """
rm -f "$state/$2.running"
echo "Stone $2 stopped"
""",
    "waitstone": _PRELUDE
    + """
[ -f "$state/$1.running" ]
""",
    "gslist": _PRELUDE
    + """
echo "Status  Version  Owner  Type   Name"
echo "exists  3.7.0    gs     Stone  ${2:-all}"
""",
    "startnetldi": _PRELUDE + 'echo "netldi started"\n',
    "stopnetldi": _PRELUDE + 'echo "netldi stopped"\n',
    "topaz": _PRELUDE
    + """
script=$(cat)
printf '%s\\n----\\n' "$script" >> "$state/topaz.transcript"
echo "Topaz session for $GEMSTONE_NAME"
case "$script" in
  *startNewLog*)
    if [ -f "$state/newlog_reply" ]; then
      cat "$state/newlog_reply"
    else
      echo "[20 sz:0 cls: 74241 SmallInteger] 42"
    fi
    ;;
esac
target=$(printf '%s\\n' "$script" | sed -n "s/.*fullBackupCompressedTo: '\\([^']*\\)'.*/\\1/p")
if [ -n "$target" ]; then
  echo "full backup of $GEMSTONE_NAME" > "$target"
fi
if [ -f "$state/topaz_exit" ]; then
  exit "$(cat "$state/topaz_exit")"
fi
exit 0
""",
}


def install_fake_gemstone(root: Path) -> Path:
    """Create a fake product tree under *root* and return its install directory."""
    product = root / "product"
    bin_dir = product / "bin"
    bin_dir.mkdir(parents=True)
    for name, body in FAKE_BINARIES.items():
        path = bin_dir / name
        path.write_text(body, encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    (bin_dir / "extent0.dbf").write_bytes(b"pristine extent\x00" * 64)
    (product / "state").mkdir()
    return product


@pytest.fixture
def gemstone(tmp_path: Path) -> Installation:
    """Return an installation backed by fake GemStone executables."""
    product = install_fake_gemstone(tmp_path)
    return Installation(
        installation_directory=product,
        config_directory=tmp_path / "etc" / "gemstone",
        extent_root=tmp_path / "var" / "local" / "gemstone",
        base_log_directory=tmp_path / "var" / "log" / "gemstone",
        backup_directory=tmp_path / "var" / "backups" / "gemstone",
    )


@pytest.fixture
def settings() -> StoneSettings:
    """Stone settings that do not wait on start."""
    return StoneSettings(start_wait=0)


@pytest.fixture
def state_dir(gemstone: Installation) -> Path:
    """Return the directory where the fake executables keep their state."""
    return gemstone.installation_directory / "state"


@pytest.fixture
def calls(state_dir: Path) -> Callable[[], list[str]]:
    """Return a reader for the recorded fake executable invocations."""

    def read() -> list[str]:
        log = state_dir / "calls.log"
        if not log.exists():
            return []
        return log.read_text(encoding="utf-8").splitlines()

    return read
