"""Configuration loader for slotpanel.

Configuration values are merged from several sources, later sources winning:

1. Built-in defaults.
2. ``/etc/slotpanel/config.yml`` (or an override path).
3. Environment variables prefixed with ``SLOTPANEL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export SLOTPANEL_TOOL_BIN=/usr/local/bin/obsidianctl
    export SLOTPANEL_BACKUPS__PRUNE_TIMEOUT=60

Values are coerced via PyYAML's ``safe_load`` so that booleans, numbers and
lists are parsed naturally. The result is exposed as frozen ``dataclasses``.
"""
from __future__ import annotations

import copy
import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load slotpanel configuration. Install with "
        "`pip install slotpanel` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "SLOTPANEL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class BackupsConfig:
    """Where backup artifacts live and how they are recognised."""

    directories: tuple[Path, ...] = (
        Path("/var/backups/obsidianctl/slot_a"),
        Path("/var/backups/obsidianctl/slot_b"),
    )
    extension: str = ".sfs"
    sidecar_extension: str = ".json"
    slot_prefix_length: int = 5
    prune_timeout: float = 30.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "directories": [str(path) for path in self.directories],
            "extension": self.extension,
            "sidecar_extension": self.sidecar_extension,
            "slot_prefix_length": self.slot_prefix_length,
            "prune_timeout": self.prune_timeout,
        }


@dataclass(frozen=True)
class TimeoutsConfig:
    """Bounded waits for probes and cancellation."""

    probe: float = 3.0
    cancel_grace: float = 1.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"probe": self.probe, "cancel_grace": self.cancel_grace}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for slotpanel."""

    config_file: Path
    tool_bin: str
    wrapper_bin: str
    logs_dir: Path
    backups: BackupsConfig
    timeouts: TimeoutsConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "tool_bin": self.tool_bin,
            "wrapper_bin": self.wrapper_bin,
            "logs_dir": str(self.logs_dir),
            "backups": self.backups.to_dict(),
            "timeouts": self.timeouts.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/slotpanel/config.yml",
    "tool_bin": "obsidianctl",
    "wrapper_bin": "pkexec",
    "logs_dir": "/var/log/slotpanel",
    "backups": {
        "directories": [
            "/var/backups/obsidianctl/slot_a",
            "/var/backups/obsidianctl/slot_b",
        ],
        "extension": ".sfs",
        "sidecar_extension": ".json",
        "slot_prefix_length": 5,
        "prune_timeout": 30.0,
    },
    "timeouts": {
        "probe": 3.0,
        "cancel_grace": 1.0,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_BACKUP_KEYS = {
    "directories",
    "extension",
    "sidecar_extension",
    "slot_prefix_length",
    "prune_timeout",
}
ALLOWED_TIMEOUT_KEYS = {"probe", "cancel_grace"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = copy.deepcopy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_path = _determine_config_path(str(DEFAULTS["config_file"]), config_file, resolved_env)

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

    for key in ("tool_bin", "wrapper_bin"):
        value = raw.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"{key} must be a non-empty string.")

    backups_map = _as_dict(raw.get("backups"), "backups")
    unknown = set(backups_map.keys()) - ALLOWED_BACKUP_KEYS
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown backups configuration keys: {joined}.")

    timeouts_map = _as_dict(raw.get("timeouts"), "timeouts")
    unknown = set(timeouts_map.keys()) - ALLOWED_TIMEOUT_KEYS
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown timeouts configuration keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    defaults = BackupsConfig()
    backups_mapping = _as_dict(raw.get("backups"), "backups")

    directories_raw = backups_mapping.get("directories")
    if directories_raw is None:
        directories = defaults.directories
    else:
        directories = tuple(
            _to_path(entry, "backups.directories")
            for entry in _as_sequence(directories_raw, "backups.directories")
        )

    extension = _normalise_extension(
        backups_mapping.get("extension", defaults.extension), "backups.extension"
    )
    sidecar_extension = _normalise_extension(
        backups_mapping.get("sidecar_extension", defaults.sidecar_extension),
        "backups.sidecar_extension",
    )
    prefix_length = _expect_int(
        backups_mapping.get("slot_prefix_length"),
        "backups.slot_prefix_length",
        default=defaults.slot_prefix_length,
    )
    if prefix_length < 0:
        raise ConfigError("backups.slot_prefix_length must be non-negative.")

    backups = BackupsConfig(
        directories=directories,
        extension=extension,
        sidecar_extension=sidecar_extension,
        slot_prefix_length=prefix_length,
        prune_timeout=_expect_positive_float(
            backups_mapping.get("prune_timeout"),
            "backups.prune_timeout",
            default=defaults.prune_timeout,
        ),
    )

    timeouts_mapping = _as_dict(raw.get("timeouts"), "timeouts")
    timeout_defaults = TimeoutsConfig()
    timeouts = TimeoutsConfig(
        probe=_expect_positive_float(
            timeouts_mapping.get("probe"), "timeouts.probe", default=timeout_defaults.probe
        ),
        cancel_grace=_expect_positive_float(
            timeouts_mapping.get("cancel_grace"),
            "timeouts.cancel_grace",
            default=timeout_defaults.cancel_grace,
        ),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file"), "config_file"),
        tool_bin=str(raw.get("tool_bin")).strip(),
        wrapper_bin=str(raw.get("wrapper_bin")).strip(),
        logs_dir=_to_path(raw.get("logs_dir"), "logs_dir"),
        backups=backups,
        timeouts=timeouts,
    )


def _normalise_extension(value: object, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{label} must be a non-empty string.")
    text = value.strip()
    return text if text.startswith(".") else f".{text}"


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    """Turn ``SLOTPANEL_BACKUPS__PRUNE_TIMEOUT=60`` into ``{"backups": {"prune_timeout": 60}}``."""
    overrides: dict[str, object] = {}
    for key, raw in env.items():
        if key in RESERVED_ENV_KEYS or not key.startswith(ENV_PREFIX):
            continue
        segments = [part.lower() for part in key[len(ENV_PREFIX) :].split("__") if part]
        if not segments:
            continue
        branch: dict[str, object] = overrides
        for segment in segments[:-1]:
            child = branch.setdefault(segment, {})
            if not isinstance(child, dict):
                raise ConfigError(f"Environment variable {key} conflicts with {segment}.")
            branch = child
        branch[segments[-1]] = _coerce_value(raw)
    return overrides


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        current = target.get(key)
        if isinstance(current, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(current, _as_dict(value, key))
        else:
            target[key] = value


def _coerce_value(raw: str) -> object:
    text = raw.strip()
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:  # pragma: no cover - unparsable values stay strings
        return text


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"{label} must be a list. Got {type(value).__name__}.")
    return value


def _to_path(value: object, label: str) -> Path:
    if isinstance(value, (str, os.PathLike)):
        return Path(value).expanduser()
    raise ConfigError(f"{label} must be a filesystem path. Got {value!r}.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{label} must be an integer. Got {value!r}.")
    return value


def _expect_positive_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{label} must be a number. Got {value!r}.")
    if value <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {value}.")
    return float(value)


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{label} must be a mapping. Got {type(value).__name__}.")
    if not all(isinstance(key, str) for key in value):
        raise ConfigError(f"{label} must only use string keys.")
    return dict(value)


__all__ = [
    "AppConfig",
    "BackupsConfig",
    "ConfigError",
    "TimeoutsConfig",
    "load_config",
]
