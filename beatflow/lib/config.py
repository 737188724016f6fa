"""
Configuration loader for beatflow.

Settings come from an optional beatflow.env file (KEY=value, parsed with
the safe envparse loader) and are overridden by BEATFLOW_* environment
variables. Extra workflow descriptors may be supplied in a YAML file.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from . import envparse

CONFIG_FILENAME = "beatflow.env"
ENV_PREFIX = "BEATFLOW_"

BACKEND_CHOICES = ("auto", "cli", "knots", "jsonl", "stub")


class ConfigError(Exception):
    """Configuration is missing or invalid."""


@dataclass
class BeatflowConfig:
    """Runtime configuration."""
    backend: str = "auto"
    fallback_backend: str = "cli"
    bd_bin: str = "bd"
    bd_db: str | None = None
    knots_bin: str = "knots"
    knots_db_path: str | None = None
    command_timeout: int = 30  # seconds, per tracker CLI call
    verification_enabled: bool = True
    verification_max_retries: int = 3
    verification_lock_timeout: int = 600  # seconds before a held lock counts as stale
    workflows_file: Path | None = None


def _parse_bool(key: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{key}: expected a boolean, got '{value}'")


def _parse_int(key: str, value: str, minimum: int = 0) -> int:
    try:
        parsed = int(value)
    except ValueError:
        raise ConfigError(f"{key}: expected an integer, got '{value}'") from None
    if parsed < minimum:
        raise ConfigError(f"{key}: must be >= {minimum}, got {parsed}")
    return parsed


def _parse_backend(key: str, value: str, allow_auto: bool = True) -> str:
    lowered = value.strip().lower()
    choices = BACKEND_CHOICES if allow_auto else BACKEND_CHOICES[1:]
    if lowered not in choices:
        raise ConfigError(f"{key}: must be one of {', '.join(choices)}, got '{value}'")
    return lowered


def _merged_settings(config_path: Path | None, environ: Mapping[str, str]) -> dict[str, str]:
    """File values first, then BEATFLOW_* environment overrides."""
    settings: dict[str, str] = {}

    if config_path is not None:
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")
        try:
            settings.update(envparse.load_env(config_path))
        except ValueError as e:
            raise ConfigError(str(e)) from None

    for key, value in environ.items():
        if key.startswith(ENV_PREFIX):
            settings[key[len(ENV_PREFIX):]] = value

    return settings


def load_config(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
    cwd: Path | None = None,
) -> BeatflowConfig:
    """Load configuration.

    Args:
        config_path: Explicit env file. When None, ./beatflow.env is used if present.
        environ: Environment mapping (defaults to os.environ)
        cwd: Directory searched for the default config file

    Raises:
        ConfigError: If the file is unreadable or a value is invalid
    """
    if environ is None:
        environ = os.environ
    if config_path is None:
        default = (cwd or Path.cwd()) / CONFIG_FILENAME
        config_path = default if default.exists() else None

    env = _merged_settings(config_path, environ)
    config = BeatflowConfig()

    if "BACKEND" in env:
        config.backend = _parse_backend("BACKEND", env["BACKEND"])
    if "FALLBACK_BACKEND" in env:
        config.fallback_backend = _parse_backend(
            "FALLBACK_BACKEND", env["FALLBACK_BACKEND"], allow_auto=False
        )
    config.bd_bin = env.get("BD_BIN", config.bd_bin) or config.bd_bin
    config.bd_db = env.get("BD_DB") or None
    config.knots_bin = env.get("KNOTS_BIN", config.knots_bin) or config.knots_bin
    config.knots_db_path = env.get("KNOTS_DB_PATH") or None
    if "COMMAND_TIMEOUT" in env:
        config.command_timeout = _parse_int("COMMAND_TIMEOUT", env["COMMAND_TIMEOUT"], minimum=1)
    if "VERIFICATION_ENABLED" in env:
        config.verification_enabled = _parse_bool("VERIFICATION_ENABLED", env["VERIFICATION_ENABLED"])
    if "VERIFICATION_MAX_RETRIES" in env:
        config.verification_max_retries = _parse_int(
            "VERIFICATION_MAX_RETRIES", env["VERIFICATION_MAX_RETRIES"]
        )
    if "VERIFICATION_LOCK_TIMEOUT" in env:
        config.verification_lock_timeout = _parse_int(
            "VERIFICATION_LOCK_TIMEOUT", env["VERIFICATION_LOCK_TIMEOUT"], minimum=1
        )
    if env.get("WORKFLOWS_FILE"):
        path = Path(env["WORKFLOWS_FILE"])
        if not path.is_absolute() and config_path is not None:
            path = config_path.parent / path
        config.workflows_file = path

    return config
