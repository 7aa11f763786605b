# core/config.py - Configuration loading, migration, and validation
"""
SINGLE SOURCE OF TRUTH for configuration handling.

This module provides:
- Config path resolution (--config flag, environment, system default)
- Merging config.json onto defaults
- Config migration (schema upgrades, missing sections)
- Validation of every key, with messages that name the key
- Atomic config file writes (temp file + rename)
- Settings: the typed, read-only view the rest of the tool works with

A missing config file is not an error: defaults apply and nothing is written.
"""

import copy
import json
import logging
import os
import tempfile
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from encrypted_files.core.constants import ConfigKeys, Defaults, EnvVars, FileNames
from encrypted_files.core.errors import ConfigError
from encrypted_files.core.filesystems import FS
from encrypted_files.core.limits import Limits

_config_logger = logging.getLogger("encrypted_files.config")

CURRENT_SCHEMA_VERSION = 1


def default_config() -> Dict[str, Any]:
    """Return a fresh copy of the default configuration."""
    return {
        ConfigKeys.SCHEMA_VERSION: CURRENT_SCHEMA_VERSION,
        ConfigKeys.VOLUMES_DIR: Defaults.VOLUMES_DIR,
        ConfigKeys.BACKING_SUFFIX: Defaults.BACKING_SUFFIX,
        ConfigKeys.MOUNT_ROOT: Defaults.MOUNT_ROOT,
        ConfigKeys.MAPPER_SUFFIX: Defaults.MAPPER_SUFFIX,
        ConfigKeys.TOKEN_COUNT: Defaults.TOKEN_COUNT,
        ConfigKeys.FILESYSTEM: Defaults.FILESYSTEM,
        ConfigKeys.BOOTSTRAP_KEY_DIR: Defaults.BOOTSTRAP_KEY_DIR,
        ConfigKeys.PROMPT_TIMEOUT: Limits.PROMPT_TIMEOUT_DEFAULT,
        ConfigKeys.TOKEN_POLL_TIMEOUT: Limits.TOKEN_POLL_TIMEOUT_DEFAULT,
        ConfigKeys.NOTIFY: {
            ConfigKeys.NOTIFY_ENABLED: Defaults.NOTIFY_ENABLED,
            ConfigKeys.NOTIFY_USER: Defaults.NOTIFY_USER,
            ConfigKeys.NOTIFY_DISPLAY: Defaults.NOTIFY_DISPLAY,
        },
        ConfigKeys.LOG_FILE: Defaults.LOG_FILE,
    }


# =============================================================================
# Path Resolution
# =============================================================================


def resolve_config_path(cli_path: Optional[Path] = None) -> Path:
    """
    Pick the config file to use.

    Precedence: explicit --config path, then $ENCRYPTED_FILES_CONFIG,
    then /etc/encrypted-files/config.json.
    """
    if cli_path:
        return Path(cli_path).expanduser()
    env_path = os.environ.get(EnvVars.CONFIG_PATH)
    if env_path:
        return Path(env_path).expanduser()
    return Path(FileNames.CONFIG_DIR) / FileNames.CONFIG_JSON


# =============================================================================
# Validation
# =============================================================================


def _is_non_empty_str(value: Any) -> Tuple[bool, str]:
    if not isinstance(value, str) or not value.strip():
        return False, "must be a non-empty string"
    return True, ""


def _is_name_fragment(value: Any) -> Tuple[bool, str]:
    ok, msg = _is_non_empty_str(value)
    if not ok:
        return ok, msg
    if "/" in value or value.startswith("."):
        return False, "must not contain '/' or start with '.'"
    return True, ""


def _is_token_count(value: Any) -> Tuple[bool, str]:
    if isinstance(value, bool) or not isinstance(value, int):
        return False, "must be an integer"
    if not Limits.MIN_TOKEN_COUNT <= value <= Limits.MAX_TOKEN_COUNT:
        return False, f"must be between {Limits.MIN_TOKEN_COUNT} and {Limits.MAX_TOKEN_COUNT}"
    return True, ""


def _is_timeout(value: Any) -> Tuple[bool, str]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False, "must be a number of seconds"
    if value < 0:
        return False, "must not be negative"
    return True, ""


def _is_filesystem(value: Any) -> Tuple[bool, str]:
    if value not in FS:
        return False, f"must be one of {', '.join(sorted(FS))}"
    return True, ""


def _is_optional_str(value: Any) -> Tuple[bool, str]:
    if value is None:
        return True, ""
    return _is_non_empty_str(value)


_VALIDATORS: Dict[str, Callable[[Any], Tuple[bool, str]]] = {
    ConfigKeys.VOLUMES_DIR: _is_non_empty_str,
    ConfigKeys.BACKING_SUFFIX: _is_name_fragment,
    ConfigKeys.MOUNT_ROOT: _is_non_empty_str,
    ConfigKeys.MAPPER_SUFFIX: _is_name_fragment,
    ConfigKeys.TOKEN_COUNT: _is_token_count,
    ConfigKeys.FILESYSTEM: _is_filesystem,
    ConfigKeys.BOOTSTRAP_KEY_DIR: _is_non_empty_str,
    ConfigKeys.PROMPT_TIMEOUT: _is_timeout,
    ConfigKeys.TOKEN_POLL_TIMEOUT: _is_timeout,
    ConfigKeys.LOG_FILE: _is_optional_str,
}


def validate_config(config: Dict[str, Any]) -> List[str]:
    """
    Validate a merged configuration.

    Returns:
        List of "key: problem" strings; empty when the config is valid.
    """
    problems = []
    for key, validator in _VALIDATORS.items():
        ok, msg = validator(config.get(key))
        if not ok:
            problems.append(f"{key}: {msg}")

    notify = config.get(ConfigKeys.NOTIFY)
    if not isinstance(notify, dict):
        problems.append(f"{ConfigKeys.NOTIFY}: must be an object")
    else:
        if not isinstance(notify.get(ConfigKeys.NOTIFY_ENABLED), bool):
            problems.append(f"{ConfigKeys.NOTIFY}.{ConfigKeys.NOTIFY_ENABLED}: must be true or false")
        ok, msg = _is_optional_str(notify.get(ConfigKeys.NOTIFY_USER))
        if not ok:
            problems.append(f"{ConfigKeys.NOTIFY}.{ConfigKeys.NOTIFY_USER}: {msg}")
        ok, msg = _is_non_empty_str(notify.get(ConfigKeys.NOTIFY_DISPLAY))
        if not ok:
            problems.append(f"{ConfigKeys.NOTIFY}.{ConfigKeys.NOTIFY_DISPLAY}: {msg}")
    return problems


# =============================================================================
# Migration
# =============================================================================


class ConfigMigrationResult:
    """Result of config migration operation."""

    def __init__(self):
        self.migrated = False
        self.changes: list[str] = []

    def add_change(self, description: str) -> None:
        """Record a migration change."""
        self.changes.append(description)
        self.migrated = True
        _config_logger.info(f"config.migrate: {description}")


def migrate_config(config: Dict[str, Any]) -> Tuple[Dict[str, Any], ConfigMigrationResult]:
    """
    Bring a loaded config up to the current schema.

    Handles:
    - Missing keys (filled from defaults)
    - A notify section that is missing or partial
    - Schema version bump

    Unknown keys are preserved untouched.

    Args:
        config: Configuration dictionary as read from disk

    Returns:
        Tuple of (migrated_config, migration_result)
    """
    result = ConfigMigrationResult()
    migrated = copy.deepcopy(config)
    defaults = default_config()

    for key, value in defaults.items():
        if key == ConfigKeys.NOTIFY:
            continue
        if key not in migrated:
            migrated[key] = value
            if key != ConfigKeys.SCHEMA_VERSION:
                result.add_change(f"Added missing {key}={value!r}")

    notify = migrated.get(ConfigKeys.NOTIFY)
    if notify is None:
        migrated[ConfigKeys.NOTIFY] = defaults[ConfigKeys.NOTIFY]
        result.add_change("Added default notify section")
    elif isinstance(notify, dict):
        for key, value in defaults[ConfigKeys.NOTIFY].items():
            if key not in notify:
                notify[key] = value
                result.add_change(f"Added missing notify.{key}={value!r}")

    current_schema = migrated.get(ConfigKeys.SCHEMA_VERSION, 0)
    if isinstance(current_schema, int) and current_schema < CURRENT_SCHEMA_VERSION:
        migrated[ConfigKeys.SCHEMA_VERSION] = CURRENT_SCHEMA_VERSION
        result.add_change(f"Updated schema_version: {current_schema} -> {CURRENT_SCHEMA_VERSION}")

    for key in sorted(set(migrated) - set(defaults)):
        _config_logger.debug(f"config.unknown_key: key={key}")

    return migrated, result


# =============================================================================
# Load / Write
# =============================================================================


def load_config(config_path: Path) -> Dict[str, Any]:
    """
    Load configuration, falling back to defaults when the file is absent.

    The file is never rewritten on load; use write_config_atomic() for that.

    Raises:
        ConfigError: File is unreadable, not JSON, or fails validation
    """
    config_path = Path(config_path)

    if not config_path.exists():
        _config_logger.info(f"config.load: path={config_path}, exists=False, using defaults")
        return default_config()

    _config_logger.info(f"config.load: path={config_path}")
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"{config_path}: not valid JSON ({e})") from e
    except OSError as e:
        raise ConfigError(f"{config_path}: cannot be read ({e.strerror})") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path}: top level must be a JSON object")

    config, _ = migrate_config(raw)
    problems = validate_config(config)
    if problems:
        raise ConfigError(f"{config_path}: invalid configuration\n  " + "\n  ".join(problems))
    return config


def write_config_atomic(config_path: Path, config: Dict[str, Any]) -> None:
    """
    Write configuration to file atomically.

    Uses write-to-temp + rename strategy to prevent partial writes.

    Args:
        config_path: Path to the config file
        config: Configuration dictionary to write

    Raises:
        OSError: If write fails
    """
    config_path = Path(config_path)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    temp_path = None
    try:
        temp_fd, temp_path_str = tempfile.mkstemp(suffix=".tmp", prefix="config_", dir=str(config_path.parent))
        os.close(temp_fd)
        temp_path = Path(temp_path_str)

        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(config, f, indent=2, ensure_ascii=False)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())

        temp_path.rename(config_path)
        temp_path = None

        _config_logger.info(f"config.write: path={config_path}")
    finally:
        if temp_path is not None and temp_path.exists():
            try:
                temp_path.unlink()
            except OSError:
                pass


# =============================================================================
# Typed view
# =============================================================================


@dataclass(frozen=True)
class Settings:
    """Read-only view of a validated config, plus per-invocation overrides."""

    volumes_dir: Path
    backing_suffix: str
    mount_root: Path
    mapper_suffix: str
    token_count: int
    filesystem: str
    bootstrap_key_dir: Path
    prompt_timeout: float
    token_poll_timeout: float
    notify_enabled: bool
    notify_user: Optional[str]
    notify_display: str
    log_file: Optional[Path]
    assume_yes: bool = False
    force_format: bool = False

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "Settings":
        notify = config[ConfigKeys.NOTIFY]
        log_file = config.get(ConfigKeys.LOG_FILE)
        return cls(
            volumes_dir=Path(config[ConfigKeys.VOLUMES_DIR]).expanduser(),
            backing_suffix=config[ConfigKeys.BACKING_SUFFIX],
            mount_root=Path(config[ConfigKeys.MOUNT_ROOT]).expanduser(),
            mapper_suffix=config[ConfigKeys.MAPPER_SUFFIX],
            token_count=config[ConfigKeys.TOKEN_COUNT],
            filesystem=config[ConfigKeys.FILESYSTEM],
            bootstrap_key_dir=Path(config[ConfigKeys.BOOTSTRAP_KEY_DIR]),
            prompt_timeout=float(config[ConfigKeys.PROMPT_TIMEOUT]),
            token_poll_timeout=float(config[ConfigKeys.TOKEN_POLL_TIMEOUT]),
            notify_enabled=notify[ConfigKeys.NOTIFY_ENABLED],
            notify_user=notify[ConfigKeys.NOTIFY_USER],
            notify_display=notify[ConfigKeys.NOTIFY_DISPLAY],
            log_file=Path(log_file).expanduser() if log_file else None,
        )

    def with_overrides(self, **overrides: Any) -> "Settings":
        """Apply CLI overrides; None means "not given"."""
        given = {k: v for k, v in overrides.items() if v is not None}
        if "token_count" in given:
            ok, msg = _is_token_count(given["token_count"])
            if not ok:
                raise ConfigError(f"--tokens {msg}")
        for key in ("prompt_timeout", "token_poll_timeout"):
            if key in given:
                ok, msg = _is_timeout(given[key])
                if not ok:
                    raise ConfigError(f"--timeout {msg}")
        for key in ("volumes_dir", "mount_root"):
            if key in given:
                given[key] = Path(given[key]).expanduser()
        return replace(self, **given)
