"""Configuration loading and management for VDIMedic."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from vdimedic.models import VDIMedicConfig

# Default paths
DEFAULT_CONFIG_DIR = Path.home() / ".vdimedic"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "vdimedic.yaml"
DEFAULT_LOGS_DIR = DEFAULT_CONFIG_DIR / "logs"


class ConfigError(Exception):
    """Configuration error."""

    pass


def ensure_config_dir(config_dir: Path | None = None) -> Path:
    """Ensure the config directory exists."""
    config_dir = config_dir or DEFAULT_CONFIG_DIR
    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / "logs").mkdir(parents=True, exist_ok=True)
    return config_dir


def expand_env_vars(value: str) -> str:
    """Expand environment variables in a string.

    Supports:
    - ${env:VAR_NAME} - environment variable
    - $VAR_NAME or ${VAR_NAME} - standard env var expansion
    """
    def replace_env(match: re.Match[str]) -> str:
        var_name = match.group(1)
        return os.environ.get(var_name, "")

    value = re.sub(r"\$\{env:([^}]+)\}", replace_env, value)

    # Standard environment variable expansion
    value = os.path.expandvars(value)

    return value


def _expand_tree(data: Any) -> Any:
    """Expand env vars in every string of a loaded YAML tree."""
    if isinstance(data, dict):
        return {k: _expand_tree(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_expand_tree(v) for v in data]
    if isinstance(data, str):
        return expand_env_vars(data)
    return data


def load_yaml_file(path: Path) -> dict:
    """Load a YAML file."""
    if not path.exists():
        return {}

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config file {path}: expected a mapping, got {type(data).__name__}")

    return data


def load_config(config_path: Path | None = None) -> VDIMedicConfig:
    """Load the main VDIMedic configuration."""
    path = config_path or DEFAULT_CONFIG_FILE

    if not path.exists():
        logger.info(f"Config file not found at {path}, using defaults")
        return VDIMedicConfig()

    try:
        data = load_yaml_file(path)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    try:
        config = VDIMedicConfig.model_validate(_expand_tree(data))
    except Exception as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e

    _validate_config(config, path)
    logger.debug(f"Loaded config from {path}")
    return config


def _validate_config(config: VDIMedicConfig, path: Path) -> None:
    """Validate cross-field settings that pydantic cannot express."""
    if config.remediation.poll_interval <= 0:
        raise ConfigError(f"{path}: remediation.poll_interval must be positive")

    if config.remediation.max_parallel < 1:
        raise ConfigError(f"{path}: remediation.max_parallel must be at least 1")

    if "{endpoint}" not in config.broker.url_template:
        raise ConfigError(f"{path}: broker.url_template must contain '{{endpoint}}'")

    if config.diagnostics.enabled and not config.diagnostics.command:
        raise ConfigError(f"{path}: diagnostics.command is empty but diagnostics are enabled")

    # Jobs must time out within the record budget so restart is reachable
    if config.diagnostics.enabled and config.diagnostics.job_timeout >= config.remediation.budget:
        raise ConfigError(
            f"{path}: diagnostics.job_timeout ({config.diagnostics.job_timeout}s) must be "
            f"shorter than remediation.budget ({config.remediation.budget}s)"
        )

    try:
        from croniter import croniter

        croniter(config.scan.schedule)
    except Exception as e:
        raise ConfigError(
            f"{path}: invalid scan.schedule '{config.scan.schedule}': {e}"
        ) from e


def save_config(config: VDIMedicConfig, config_path: Path | None = None) -> Path:
    """Save a configuration to disk."""
    path = config_path or DEFAULT_CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.safe_dump(
            config.model_dump(mode="json"),
            f,
            default_flow_style=False,
            sort_keys=False,
        )

    logger.info(f"Saved config to {path}")
    return path


def create_default_config(config_path: Path | None = None) -> Path:
    """Create the default configuration file if it doesn't exist."""
    path = config_path or DEFAULT_CONFIG_FILE
    ensure_config_dir(path.parent)

    if path.exists():
        logger.debug(f"Config already exists at {path}")
        return path

    config = VDIMedicConfig()
    config.broker.endpoints = ["broker01.example.local"]
    config.broker.token = "${env:VDIMEDIC_BROKER_TOKEN}"
    save_config(config, path)
    logger.info(f"Created default config at {path}")
    return path
