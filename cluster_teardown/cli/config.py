"""Configuration loading for the CLI."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "CLUSTER_TEARDOWN_CONFIG"
DEFAULT_CONFIG_PATH = Path.home() / ".cluster-teardown" / "config.yaml"

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class ConfigError(Exception):
    """Invalid configuration file or value."""


@dataclass
class Config:
    """Settings for a teardown run.

    Values are read from the config file, then environment variables, then
    CLI options (applied by the caller).
    """

    log_level: str = "INFO"
    max_workers: int = 10
    stall_retries: int = 0
    retry_interval: float = 10.0
    timeout: Optional[float] = None
    aws_profile: Optional[str] = None
    gce_project: Optional[str] = None
    region: Optional[str] = None

    @classmethod
    def load(cls, path: Optional[Path] = None) -> Config:
        """Load configuration.

        Args:
            path: Config file path (default: $CLUSTER_TEARDOWN_CONFIG or
                ~/.cluster-teardown/config.yaml)

        Returns:
            Loaded configuration

        Raises:
            ConfigError: If the file cannot be parsed or a value is invalid
        """
        if path is None:
            env_path = os.environ.get(CONFIG_ENV_VAR)
            path = Path(env_path) if env_path else DEFAULT_CONFIG_PATH

        data: dict[str, Any] = {}
        if path.exists():
            logger.debug(f"Loading config from {path}")
            try:
                with open(path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid config file {path}: {e}") from e

            if not isinstance(data, dict):
                raise ConfigError(f"Invalid config file {path}: expected a mapping")

        known = {field.name for field in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(sorted(unknown))}")

        config = cls(**{key: value for key, value in data.items() if key in known})
        config._apply_env()
        config.validate()
        return config

    def _apply_env(self) -> None:
        if os.environ.get("CLUSTER_TEARDOWN_LOG_LEVEL"):
            self.log_level = os.environ["CLUSTER_TEARDOWN_LOG_LEVEL"]

        if os.environ.get("CLUSTER_TEARDOWN_MAX_WORKERS"):
            try:
                self.max_workers = int(os.environ["CLUSTER_TEARDOWN_MAX_WORKERS"])
            except ValueError as e:
                raise ConfigError(f"CLUSTER_TEARDOWN_MAX_WORKERS must be an integer: {e}") from e

        if os.environ.get("AWS_PROFILE"):
            self.aws_profile = os.environ["AWS_PROFILE"]

        if os.environ.get("GOOGLE_CLOUD_PROJECT"):
            self.gce_project = os.environ["GOOGLE_CLOUD_PROJECT"]

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigError: If a value is out of range
        """
        self.log_level = str(self.log_level).upper()
        if self.log_level not in VALID_LOG_LEVELS:
            raise ConfigError(f"Invalid log_level: {self.log_level}")

        if self.max_workers < 1:
            raise ConfigError(f"max_workers must be at least 1, got {self.max_workers}")

        if self.stall_retries < 0:
            raise ConfigError(f"stall_retries must not be negative, got {self.stall_retries}")

        if self.retry_interval < 0:
            raise ConfigError(f"retry_interval must not be negative, got {self.retry_interval}")

        if self.timeout is not None and self.timeout <= 0:
            raise ConfigError(f"timeout must be positive, got {self.timeout}")
