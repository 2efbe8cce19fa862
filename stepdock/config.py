"""
Configuration management for stepdock.

Loads $STEPDOCK_HOME/config.yaml (default ~/.config/stepdock/config.yaml).
"""

import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from stepdock.errors import ConfigError


LOG_FORMATS = ("pretty", "structured")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def get_stepdock_home() -> Path:
    """Return the stepdock configuration directory."""
    home = os.environ.get("STEPDOCK_HOME")
    if home:
        return Path(home)
    return Path("~/.config/stepdock").expanduser()


@dataclass
class StepdockConfig:
    """
    Runtime configuration.

    Attributes:
        docker_host: Docker daemon URL; None uses DOCKER_HOST and friends
        api_version: Docker API version, or "auto" to negotiate
        timeout: Default request timeout in seconds (not applied to wait or logs)
        wait_poll_interval: Seconds between cancel checks while waiting
        log_level: Logging level
        log_format: "pretty" (rich console) or "structured" (JSON)
        log_file: Optional log file path
        env_file: Optional dotenv file loaded into the environment
    """
    docker_host: Optional[str] = None
    api_version: str = "auto"
    timeout: int = 60
    wait_poll_interval: float = 0.5
    log_level: str = "INFO"
    log_format: str = "pretty"
    log_file: Optional[str] = None
    env_file: Optional[str] = None

    def validate(self) -> None:
        """Validate configuration values."""
        if self.timeout <= 0:
            raise ConfigError(f"timeout must be positive: {self.timeout}")
        if self.wait_poll_interval <= 0:
            raise ConfigError(f"wait_poll_interval must be positive: {self.wait_poll_interval}")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigError(f"Unknown log_level: {self.log_level}")
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(f"Unknown log_format: {self.log_format}")

    def get_log_file_path(self) -> Optional[Path]:
        """Get log file path, if file logging is enabled."""
        if not self.log_file:
            return None
        return Path(self.log_file).expanduser()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepdockConfig":
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config keys: {unknown}")
        try:
            config = cls(**data)
            config.timeout = int(config.timeout)
            config.wait_poll_interval = float(config.wait_poll_interval)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid config value: {e}")
        config.validate()
        return config


def load_config(config_path: Optional[Path] = None) -> StepdockConfig:
    """
    Load stepdock configuration from YAML.

    Args:
        config_path: Path to config file. Defaults to $STEPDOCK_HOME/config.yaml

    Returns:
        StepdockConfig instance

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigError: If the config is invalid
    """
    if config_path is None:
        config_path = get_stepdock_home() / "config.yaml"

    if not config_path.exists():
        raise FileNotFoundError(f"stepdock config.yaml not found at {config_path}")

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}")

    if not isinstance(data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    config = StepdockConfig.from_dict(data)

    if config.env_file:
        env_path = Path(config.env_file).expanduser()
        if env_path.exists():
            load_dotenv(env_path)

    return config
