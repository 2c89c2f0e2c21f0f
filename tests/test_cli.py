"""Tests for the stonectl CLI."""
from __future__ import annotations

import json
from pathlib import Path

import yaml
from typer.testing import CliRunner

from stonectl import __version__
from stonectl.cli import app
from stonectl.exit_codes import ExitCode
from stonectl.installation import Installation

runner = CliRunner()


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def _prepare_environment(
    tmp_path: Path,
    gemstone: Installation,
    *,
    config_overrides: dict[str, object] | None = None,
) -> tuple[dict[str, str], Path]:
    logs_dir = tmp_path / "stonectl-logs"
    config: dict[str, object] = {
        "logs_dir": str(logs_dir),
        "templates_dir": str(tmp_path / "templates"),
        "start_wait": 0,
        "installation": {
            "directory": str(gemstone.installation_directory),
            "config_dir": str(gemstone.config_directory),
            "extent_root": str(gemstone.extent_root),
            "log_root": str(gemstone.base_log_directory),
            "backup_root": str(gemstone.backup_directory),
        },
    }
    if config_overrides:
        config.update(config_overrides)

    config_file = tmp_path / "config.yml"
    config_file.write_text(yaml.safe_dump(config), encoding="utf-8")
    return {"STONECTL_CONFIG_FILE": str(config_file)}, logs_dir


def _last_operation(logs_dir: Path) -> dict[str, object]:
    lines = (logs_dir / "operations.jsonl").read_text(encoding="utf-8").splitlines()
    return json.loads(lines[-1])


def test_version_flag() -> None:
    """``--version`` prints the package version."""
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_invalid_config_exits_with_validation_code(tmp_path: Path) -> None:
    """Unknown configuration keys are rejected before any command runs."""
    config_file = tmp_path / "config.yml"
    config_file.write_text("unexpected: true\n", encoding="utf-8")

    result = runner.invoke(app, ["list"], env={"STONECTL_CONFIG_FILE": str(config_file)})

    assert result.exit_code == 2
    assert "Configuration error" in result.stdout


def test_list_without_stones(tmp_path: Path, gemstone: Installation) -> None:
    """An empty host reports that no stones are configured."""
    env, _ = _prepare_environment(tmp_path, gemstone)
    result = runner.invoke(app, ["list"], env=env)
    assert result.exit_code == 0
    assert "No stones configured" in result.stdout


def test_lifecycle_commands(tmp_path: Path, gemstone: Installation) -> None:
    """create, running, stop and destroy map onto exit codes."""
    env, logs_dir = _prepare_environment(tmp_path, gemstone)

    created = runner.invoke(app, ["create", "test1"], env=env)
    assert created.exit_code == 0, created.stdout
    assert "Stone 'test1' created." in created.stdout
    record = _last_operation(logs_dir)
    assert record["command"] == "create"
    assert record["result"]["status"] == "success"

    listed = runner.invoke(app, ["list", "--json"], env=env)
    assert _extract_json(listed.stdout) == {"stones": ["test1"]}

    assert runner.invoke(app, ["running", "test1"], env=env).exit_code == 0
    assert runner.invoke(app, ["stop", "test1"], env=env).exit_code == 0

    not_running = runner.invoke(app, ["running", "test1"], env=env)
    assert not_running.exit_code == ExitCode.NOT_RUNNING
    assert "test1 not running" in not_running.stdout

    destroyed = runner.invoke(app, ["destroy", "test1", "--yes"], env=env)
    assert destroyed.exit_code == 0
    assert not (gemstone.config_directory / "test1.conf").exists()


def test_create_twice_is_a_validation_error(tmp_path: Path, gemstone: Installation) -> None:
    """A second create of the same stone exits 2."""
    env, logs_dir = _prepare_environment(tmp_path, gemstone)
    assert runner.invoke(app, ["create", "alpha"], env=env).exit_code == 0

    result = runner.invoke(app, ["create", "alpha"], env=env)

    assert result.exit_code == 2
    assert "already exists" in result.stdout
    record = _last_operation(logs_dir)
    assert record["result"]["status"] == "error"
    assert record["result"]["rc"] == 2


def test_unknown_stone_is_a_validation_error(tmp_path: Path, gemstone: Installation) -> None:
    """Commands naming an unconfigured stone exit 2."""
    env, _ = _prepare_environment(tmp_path, gemstone)
    for command in (["start", "ghost"], ["stop", "ghost"], ["backup", "ghost"]):
        result = runner.invoke(app, command, env=env)
        assert result.exit_code == 2, command
        assert "ghost does not exist" in result.stdout


def test_destroy_requires_confirmation(tmp_path: Path, gemstone: Installation) -> None:
    """destroy without --yes refuses and leaves the stone in place."""
    env, _ = _prepare_environment(tmp_path, gemstone)
    runner.invoke(app, ["create", "alpha"], env=env)
    runner.invoke(app, ["stop", "alpha"], env=env)

    result = runner.invoke(app, ["destroy", "alpha"], env=env)

    assert result.exit_code == 2
    assert "--yes" in result.stdout
    assert (gemstone.config_directory / "alpha.conf").exists()


def test_destroy_running_stone_refused(tmp_path: Path, gemstone: Installation) -> None:
    """Destroying a running stone exits 2 and keeps the configuration."""
    env, _ = _prepare_environment(tmp_path, gemstone)
    runner.invoke(app, ["create", "alpha"], env=env)

    result = runner.invoke(app, ["destroy", "alpha", "--yes"], env=env)

    assert result.exit_code == 2
    assert "Can not destroy running stone alpha" in result.stdout
    assert (gemstone.config_directory / "alpha.conf").exists()


def test_status_for_stone_and_host(tmp_path: Path, gemstone: Installation) -> None:
    """status prints gslist output for a stone or for every server."""
    env, _ = _prepare_environment(tmp_path, gemstone)
    runner.invoke(app, ["create", "alpha"], env=env)

    stone_status = runner.invoke(app, ["status", "alpha"], env=env)
    assert stone_status.exit_code == 0
    assert "Stone  alpha" in stone_status.stdout

    host_status = runner.invoke(app, ["status"], env=env)
    assert host_status.exit_code == 0
    assert "Stone  all" in host_status.stdout

    runner.invoke(app, ["stop", "alpha"], env=env)
    stopped = runner.invoke(app, ["status", "alpha"], env=env)
    assert "alpha not running" in stopped.stdout


def test_backup_json_and_backups_listing(tmp_path: Path, gemstone: Installation) -> None:
    """backup --json reports the bundle and backups lists the index entry."""
    env, logs_dir = _prepare_environment(tmp_path, gemstone)
    runner.invoke(app, ["create", "alpha"], env=env)
    tranlog = gemstone.extent_root / "alpha" / "tranlog" / "tranlog42.dbf"
    tranlog.write_bytes(b"segment")

    result = runner.invoke(app, ["backup", "alpha", "--json"], env=env)

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["tranlog"] == 42
    assert Path(str(payload["bundle"])).exists()
    record = _last_operation(logs_dir)
    assert record["result"]["backups"] == [payload["bundle"]]
    assert [step["name"] for step in record["steps"]] == ["tranlog.parse", "archive.bundle"]

    listing = runner.invoke(app, ["backups", "--instance", "alpha", "--json"], env=env)
    entries = _extract_json(listing.stdout)["backups"]
    assert [entry["tranlog"] for entry in entries] == [42]


def test_backup_with_bad_log_number_aborts(tmp_path: Path, gemstone: Installation) -> None:
    """An unusable transaction log number exits 4 without writing backups."""
    env, logs_dir = _prepare_environment(tmp_path, gemstone)
    runner.invoke(app, ["create", "alpha"], env=env)
    state = gemstone.installation_directory / "state"
    (state / "newlog_reply").write_text("[20 sz:0 cls: 74241 SmallInteger] -1\n", encoding="utf-8")

    result = runner.invoke(app, ["backup", "alpha"], env=env)

    assert result.exit_code == 4
    assert "Backup aborted" in result.stdout
    assert not gemstone.backup_directory.exists()
    record = _last_operation(logs_dir)
    assert record["steps"][-1]["name"] == "tranlog.parse"
    assert record["steps"][-1]["status"] == "error"


def test_restore_validates_date_and_bundle(tmp_path: Path, gemstone: Installation) -> None:
    """restore rejects malformed dates and missing bundles."""
    env, _ = _prepare_environment(tmp_path, gemstone)
    runner.invoke(app, ["create", "alpha"], env=env)

    bad_date = runner.invoke(app, ["restore", "alpha", "--date", "02/01/2026"], env=env)
    assert bad_date.exit_code == 2
    assert "YYYY-MM-DD" in bad_date.stdout

    missing = runner.invoke(app, ["restore", "alpha", "--date", "2001-01-01"], env=env)
    assert missing.exit_code == 2
    assert "not found" in missing.stdout


def test_topaz_failure_is_a_provider_error(tmp_path: Path, gemstone: Installation) -> None:
    """Console failures during a command exit 4."""
    env, _ = _prepare_environment(tmp_path, gemstone)
    runner.invoke(app, ["create", "alpha"], env=env)
    (gemstone.installation_directory / "state" / "topaz_exit").write_text("3", encoding="utf-8")

    result = runner.invoke(app, ["backup", "alpha"], env=env)

    assert result.exit_code == 4
    assert "exit 3" in result.stdout


def test_netldi_commands(tmp_path: Path, gemstone: Installation) -> None:
    """netldi start and stop call the listener executables."""
    env, _ = _prepare_environment(tmp_path, gemstone)
    assert runner.invoke(app, ["netldi", "start"], env=env).exit_code == 0
    assert runner.invoke(app, ["netldi", "stop"], env=env).exit_code == 0
    calls = (gemstone.installation_directory / "state" / "calls.log").read_text(encoding="utf-8")
    assert calls.splitlines() == ["startnetldi -g", "stopnetldi"]


def test_config_show_json_masks_password(tmp_path: Path, gemstone: Installation) -> None:
    """config show --json reports the merged configuration without secrets."""
    env, _ = _prepare_environment(
        tmp_path,
        gemstone,
        config_overrides={"credentials": {"user": "Admin", "password": "hunter2"}},
    )

    result = runner.invoke(app, ["config", "show", "--json"], env=env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["credentials"] == {"user": "Admin", "password": "********"}
    assert payload["start_wait"] == 0
    assert payload["installation"]["directory"] == str(gemstone.installation_directory)
    assert "hunter2" not in result.stdout


def test_environment_overrides_config_file(tmp_path: Path, gemstone: Installation) -> None:
    """STONECTL_ variables win over the YAML file."""
    env, _ = _prepare_environment(tmp_path, gemstone)
    env["STONECTL_CREDENTIALS__USER"] = "SystemUser"

    result = runner.invoke(app, ["config", "show", "--json"], env=env)

    assert _extract_json(result.stdout)["credentials"]["user"] == "SystemUser"


def test_create_rejects_invalid_name(tmp_path: Path, gemstone: Installation) -> None:
    """Unusable stone names exit 2 before anything is written."""
    env, logs_dir = _prepare_environment(tmp_path, gemstone)

    result = runner.invoke(app, ["create", "prod.v2"], env=env)

    assert result.exit_code == ExitCode.VALIDATION
    assert "Invalid stone name" in result.stdout
    assert not gemstone.config_directory.exists()
    assert _last_operation(logs_dir)["result"]["rc"] == ExitCode.VALIDATION


def test_lookup_rejects_path_like_name(tmp_path: Path, gemstone: Installation) -> None:
    """Commands on existing stones refuse names that escape the stone roots."""
    env, _ = _prepare_environment(tmp_path, gemstone)

    result = runner.invoke(app, ["destroy", "../etc", "--yes"], env=env)

    assert result.exit_code == ExitCode.VALIDATION
    assert "Invalid stone name" in result.stdout
