"""Configuration loader for stonectl.

Configuration values are merged from several sources, later sources winning:

1. Built-in defaults.
2. ``/etc/stonectl/config.yml`` (or an override path).
3. Environment variables prefixed with ``STONECTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export STONECTL_INSTALLATION__DIRECTORY=/opt/gemstone/GemStone64Bit3.7
    export STONECTL_CREDENTIALS__PASSWORD=secret

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load stonectl configuration. Install with "
        "`pip install stonectl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "STONECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}
# Only these environment values are parsed as YAML; every other key is a string.
TYPED_ENV_KEYS = {("start_wait",), ("topaz", "args")}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class InstallationConfig:
    """Host-level GemStone product and storage locations."""

    directory: Path = Path("/opt/gemstone/product")
    config_dir: Path = Path("/etc/gemstone")
    extent_root: Path = Path("/var/local/gemstone")
    log_root: Path = Path("/var/log/gemstone")
    backup_root: Path = Path("/var/backups/gemstone")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "directory": str(self.directory),
            "config_dir": str(self.config_dir),
            "extent_root": str(self.extent_root),
            "log_root": str(self.log_root),
            "backup_root": str(self.backup_root),
        }


@dataclass(frozen=True)
class CredentialsConfig:
    """Credentials used for stopstone and topaz logins."""

    user: str = "DataCurator"
    password: str = "swordfish"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (password masked)."""
        return {"user": self.user, "password": "********"}


@dataclass(frozen=True)
class TopazConfig:
    """How the topaz console is launched."""

    bin: str = "topaz"
    args: tuple[str, ...] = ("-l",)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"bin": self.bin, "args": list(self.args)}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for stonectl."""

    config_file: Path
    logs_dir: Path
    templates_dir: Path
    start_wait: int
    bootstrap_script: str | None
    installation: InstallationConfig
    credentials: CredentialsConfig
    topaz: TopazConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir),
            "start_wait": self.start_wait,
            "bootstrap_script": self.bootstrap_script,
            "installation": self.installation.to_dict(),
            "credentials": self.credentials.to_dict(),
            "topaz": self.topaz.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/stonectl/config.yml",
    "logs_dir": "/var/log/stonectl",
    "templates_dir": "/etc/stonectl/templates",
    "start_wait": 10,
    "bootstrap_script": "seaside/topaz/installMonticello.topaz",
    "installation": {
        "directory": "/opt/gemstone/product",
        "config_dir": "/etc/gemstone",
        "extent_root": "/var/local/gemstone",
        "log_root": "/var/log/gemstone",
        "backup_root": "/var/backups/gemstone",
    },
    "credentials": {
        "user": "DataCurator",
        "password": "swordfish",
    },
    "topaz": {
        "bin": "topaz",
        "args": ["-l"],
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
INSTALLATION_KEYS = {"directory", "config_dir", "extent_root", "log_root", "backup_root"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    installation = _as_dict(raw.get("installation"), "installation")
    unknown = set(installation.keys()) - INSTALLATION_KEYS
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown installation configuration keys: {joined}.")

    credentials = _as_dict(raw.get("credentials"), "credentials")
    unknown = set(credentials.keys()) - {"user", "password"}
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown credentials configuration keys: {joined}.")

    topaz = _as_dict(raw.get("topaz"), "topaz")
    unknown = set(topaz.keys()) - {"bin", "args"}
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown topaz configuration keys: {joined}.")

    start_wait = raw.get("start_wait")
    if start_wait is not None:
        if _expect_int(start_wait, "start_wait", default=10) < 0:
            raise ConfigError("start_wait must be non-negative.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    installation_map = _as_dict(raw.get("installation"), "installation")
    defaults = InstallationConfig()
    installation = InstallationConfig(
        directory=_to_path(installation_map.get("directory", defaults.directory)),
        config_dir=_to_path(installation_map.get("config_dir", defaults.config_dir)),
        extent_root=_to_path(installation_map.get("extent_root", defaults.extent_root)),
        log_root=_to_path(installation_map.get("log_root", defaults.log_root)),
        backup_root=_to_path(installation_map.get("backup_root", defaults.backup_root)),
    )

    credentials_map = _as_dict(raw.get("credentials"), "credentials")
    user = _expect_token(credentials_map.get("user", "DataCurator"), "credentials.user")
    password = _expect_token(credentials_map.get("password", "swordfish"), "credentials.password")

    topaz_map = _as_dict(raw.get("topaz"), "topaz")
    topaz_args_raw = topaz_map.get("args", ["-l"])
    if topaz_args_raw is None:
        topaz_args: tuple[str, ...] = ()
    else:
        topaz_args = tuple(str(item) for item in _as_sequence(topaz_args_raw, "topaz.args"))
    topaz = TopazConfig(
        bin=_expect_non_empty_str(topaz_map.get("bin", "topaz"), "topaz.bin"),
        args=topaz_args,
    )

    bootstrap_value = raw.get("bootstrap_script")
    bootstrap_script: str | None
    if bootstrap_value is None or str(bootstrap_value).strip() == "":
        bootstrap_script = None
    else:
        bootstrap_script = str(bootstrap_value).strip()

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        start_wait=_expect_int(raw.get("start_wait"), "start_wait", default=10),
        bootstrap_script=bootstrap_script,
        installation=installation,
        credentials=CredentialsConfig(user=user, password=password),
        topaz=topaz,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        if tuple(path_segments) in TYPED_ENV_KEYS:
            parsed: object = _coerce_value(value)
        else:
            parsed = value.strip()
        _assign_nested(overrides, path_segments, parsed)
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_non_empty_str(value: object, label: str) -> str:
    if value is None or isinstance(value, (Mapping, list, bool)):
        raise ConfigError(f"Expected {label} to be a string. Got {value!r}.")
    text = str(value).strip()
    if not text:
        raise ConfigError(f"{label} must be a non-empty string.")
    return text


def _expect_token(value: object, label: str) -> str:
    text = _expect_non_empty_str(value, label)
    if any(char.isspace() for char in text):
        raise ConfigError(f"{label} must not contain whitespace.")
    return text


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "CredentialsConfig",
    "InstallationConfig",
    "TopazConfig",
    "load_config",
]
