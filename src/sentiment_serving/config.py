"""
Configuration Management Module

Loads application configuration from environment variables (and a ``.env``
file in the working directory) with defaults and validation.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_MODEL_URI = "models/sentiment_model.zip"
VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
VALID_LOG_FORMATS = ["text", "json"]


def _env_str(var_name: str, default: str) -> str:
    return os.getenv(var_name, default)


def _env_int(var_name: str, default: int) -> int:
    value = os.getenv(var_name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{var_name} must be an integer, got {value!r}")


def _env_float(var_name: str, default: float) -> float:
    value = os.getenv(var_name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{var_name} must be a number, got {value!r}")


@dataclass
class Config:
    """
    Application configuration.

    Every field reads its environment variable when the instance is created,
    so tests can set variables and build a fresh ``Config()``.

    Example:
        >>> config = Config()
        >>> config.POOL_MAX_SIZE
        4
        >>> config.validate()
        True
    """

    # Model
    MODEL_URI: str = field(default_factory=lambda: _env_str('MODEL_URI', DEFAULT_MODEL_URI))
    MODEL_CACHE_DIR: str = field(default_factory=lambda: os.path.expanduser(
        _env_str('MODEL_CACHE_DIR', '~/.cache/sentiment-serving')
    ))
    MODEL_DOWNLOAD_TIMEOUT: float = field(default_factory=lambda: _env_float('MODEL_DOWNLOAD_TIMEOUT', 30.0))
    MODEL_DOWNLOAD_RETRIES: int = field(default_factory=lambda: _env_int('MODEL_DOWNLOAD_RETRIES', 3))
    # Seconds between change checks; 0 disables reloading
    MODEL_RELOAD_INTERVAL: float = field(default_factory=lambda: _env_float('MODEL_RELOAD_INTERVAL', 0.0))

    # Engine pool
    POOL_MAX_SIZE: int = field(default_factory=lambda: _env_int('POOL_MAX_SIZE', os.cpu_count() or 1))
    # Seconds to wait for a free engine; 0 waits forever
    POOL_ACQUIRE_TIMEOUT: float = field(default_factory=lambda: _env_float('POOL_ACQUIRE_TIMEOUT', 0.0))
    POOL_WARMUP: int = field(default_factory=lambda: _env_int('POOL_WARMUP', 1))

    # API
    HOST: str = field(default_factory=lambda: _env_str('HOST', '0.0.0.0'))
    PORT: int = field(default_factory=lambda: _env_int('PORT', 8000))
    API_VERSION: str = field(default_factory=lambda: _env_str('API_VERSION', '1.0.0'))

    # Logging
    LOG_LEVEL: str = field(default_factory=lambda: _env_str('LOG_LEVEL', 'INFO').upper())
    LOG_FORMAT: str = field(default_factory=lambda: _env_str('LOG_FORMAT', 'text').lower())

    @property
    def acquire_timeout(self) -> Optional[float]:
        """Pool acquire timeout, or None to wait forever."""
        return self.POOL_ACQUIRE_TIMEOUT if self.POOL_ACQUIRE_TIMEOUT > 0 else None

    def validate(self) -> bool:
        """
        Validate configuration values.

        Returns:
            True if all configuration is valid

        Raises:
            ValueError: If any configuration value is invalid
        """
        if not self.MODEL_URI:
            raise ValueError("MODEL_URI must be set")

        if self.POOL_MAX_SIZE < 1:
            raise ValueError(f"Invalid POOL_MAX_SIZE: {self.POOL_MAX_SIZE}. Must be at least 1")

        if self.POOL_WARMUP < 0 or self.POOL_WARMUP > self.POOL_MAX_SIZE:
            raise ValueError(
                f"Invalid POOL_WARMUP: {self.POOL_WARMUP}. "
                f"Must be between 0 and POOL_MAX_SIZE ({self.POOL_MAX_SIZE})"
            )

        if self.POOL_ACQUIRE_TIMEOUT < 0:
            raise ValueError("POOL_ACQUIRE_TIMEOUT must not be negative")
        if self.MODEL_RELOAD_INTERVAL < 0:
            raise ValueError("MODEL_RELOAD_INTERVAL must not be negative")
        if self.MODEL_DOWNLOAD_TIMEOUT <= 0:
            raise ValueError("MODEL_DOWNLOAD_TIMEOUT must be positive")
        if self.MODEL_DOWNLOAD_RETRIES < 1:
            raise ValueError("MODEL_DOWNLOAD_RETRIES must be at least 1")

        if not (1 <= self.PORT <= 65535):
            raise ValueError(f"Invalid PORT: {self.PORT}. Must be between 1 and 65535")

        if self.LOG_LEVEL not in VALID_LOG_LEVELS:
            raise ValueError(
                f"Invalid LOG_LEVEL: {self.LOG_LEVEL}. Must be one of {VALID_LOG_LEVELS}"
            )
        if self.LOG_FORMAT not in VALID_LOG_FORMATS:
            raise ValueError(
                f"Invalid LOG_FORMAT: {self.LOG_FORMAT}. Must be one of {VALID_LOG_FORMATS}"
            )

        return True

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            key: value
            for key, value in vars(self).items()
            if not key.startswith('_') and key.isupper()
        }

    def __repr__(self) -> str:
        return (
            f"Config(MODEL_URI='{self.MODEL_URI}', POOL_MAX_SIZE={self.POOL_MAX_SIZE}, "
            f"PORT={self.PORT}, LOG_LEVEL='{self.LOG_LEVEL}')"
        )


def get_config() -> Config:
    """
    Load and validate configuration from the environment.

    Raises:
        ValueError: If any configuration value is invalid
    """
    config = Config()
    config.validate()
    logger.info(f"Configuration loaded: {config}")
    return config
