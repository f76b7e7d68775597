"""Configuration Manager for the Record Store.

This module loads the configuration of the storage backends, the key
derivation and the record store itself from environment variables or a JSON
file, and validates it with Pydantic before anything is constructed.

Security Impact:
    - The passphrase is held as SecretStr and never logged
    - Configuration is validated before use (fail-fast)
    - Database paths are checked before a connection is attempted

Architecture:
    - Follows Hexagonal Architecture: Infrastructure layer isolated from domain
    - Type-safe configuration using Pydantic models
    - Converts into the domain's RetryConfig/QuotaConfig dataclasses
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

from src.domain.guardrails import QuotaConfig, RetryConfig

logger = logging.getLogger(__name__)

#: Environment variable prefix for every setting.
ENV_PREFIX = "IV_"

#: Project root .env, read when no other file is given.
DEFAULT_ENV_FILE = Path(__file__).parent.parent.parent / ".env"


def load_env_file(env_file: Optional[Path] = None) -> bool:
    """Load IV_* variables from a .env file without overriding the real environment.

    Returns:
        bool: True if the file existed and was read
    """
    env_path = Path(env_file) if env_file is not None else DEFAULT_ENV_FILE
    if not env_path.exists():
        return False
    load_dotenv(env_path)
    logger.debug(f"Loaded environment variables from {env_path}")
    return True


class BackendConfig(BaseModel):
    """Storage backend configuration.

    Parameters:
        backend_type: Primary backend ('duckdb' or 'memory')
        db_path: Path to the DuckDB file (':memory:' for a transient database)
        quota_bytes: Byte budget for the primary backend (None = unlimited)
        fallback_enabled: Use an in-memory fallback on quota/availability errors
    """

    backend_type: str = Field(default="duckdb", description="Primary backend type (duckdb, memory)")
    db_path: Optional[str] = Field(default="data/intake_vault.duckdb", description="Path to DuckDB file")
    quota_bytes: Optional[int] = Field(default=50 * 1024 * 1024, ge=1, description="Primary backend byte quota")
    fallback_enabled: bool = Field(default=True, description="Enable the in-memory fallback backend")

    @field_validator("backend_type")
    @classmethod
    def validate_backend_type(cls, v: str) -> str:
        """Validate backend type."""
        supported_types = ["duckdb", "memory"]
        if v.lower() not in supported_types:
            raise ValueError(f"Unsupported backend type: {v}. Supported: {supported_types}")
        return v.lower()

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: Optional[str]) -> Optional[str]:
        """Validate database path (parent directory is created on demand)."""
        if v is None or v == ":memory:":
            return v
        if not v.strip():
            raise ValueError("db_path must not be blank")
        return str(Path(v))


class CryptoConfig(BaseModel):
    """Key derivation configuration.

    Parameters:
        pbkdf2_iterations: PBKDF2 iteration count
        device_profile_path: File holding the device id and salt
        passphrase: Optional passphrase (SecretStr - never logged)
    """

    pbkdf2_iterations: int = Field(default=100_000, ge=10_000, description="PBKDF2 iterations")
    device_profile_path: str = Field(default="data/device_profile.json", description="Device profile file")
    passphrase: Optional[SecretStr] = Field(default=None, description="Passphrase (secret)")


class RecordStoreConfig(BaseModel):
    """RecordStore behavior.

    Parameters:
        cache_capacity: LRU cache size (records)
        max_attempts: Backend attempts per operation, including the first
        retry_base_delay: First retry delay in seconds
        retry_max_delay: Cap for any single retry delay
        batch_chunk_size: Records saved concurrently per chunk
        quota_warning_ratio: Usage ratio that triggers a quota warning
        quota_reject_ratio: Usage ratio at which saves are refused
    """

    cache_capacity: int = Field(default=50, ge=0)
    max_attempts: int = Field(default=3, ge=1, le=10)
    retry_base_delay: float = Field(default=0.1, ge=0)
    retry_max_delay: float = Field(default=2.0, ge=0)
    batch_chunk_size: int = Field(default=10, ge=1)
    quota_warning_ratio: float = Field(default=0.80, gt=0, le=1)
    quota_reject_ratio: float = Field(default=0.95, gt=0, le=1)

    @model_validator(mode='after')
    def check_thresholds(self) -> 'RecordStoreConfig':
        if self.quota_warning_ratio > self.quota_reject_ratio:
            raise ValueError("quota_warning_ratio must not exceed quota_reject_ratio")
        if self.retry_base_delay > self.retry_max_delay:
            raise ValueError("retry_base_delay must not exceed retry_max_delay")
        return self

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.max_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )

    def quota_config(self) -> QuotaConfig:
        return QuotaConfig(
            warning_ratio=self.quota_warning_ratio,
            reject_ratio=self.quota_reject_ratio,
        )


class ConfigManager:
    """Configuration manager for the record store.

    Loads one configuration dictionary with ``backend``, ``crypto`` and
    ``store`` sections and hands out validated models for each.

    Example Usage:
        ```python
        # Load from environment variables
        config = ConfigManager.from_environment()
        backend_config = config.get_backend_config()

        # Load from file
        config = ConfigManager.from_file("vault.json")
        store_config = config.get_store_config()
        ```
    """

    def __init__(self, config_data: Dict[str, Any]):
        """Initialize configuration manager.

        Parameters:
            config_data: Configuration dictionary
        """
        self._config_data = config_data
        self._backend_config: Optional[BackendConfig] = None
        self._crypto_config: Optional[CryptoConfig] = None
        self._store_config: Optional[RecordStoreConfig] = None

    @classmethod
    def from_environment(cls, env_file: Optional[Path] = None) -> 'ConfigManager':
        """Load configuration from environment variables.

        Environment Variables:
            - IV_BACKEND_TYPE: Primary backend (duckdb, memory)
            - IV_DB_PATH: DuckDB file path
            - IV_QUOTA_BYTES: Primary backend byte quota
            - IV_FALLBACK_ENABLED: Enable in-memory fallback (true/false)
            - IV_PBKDF2_ITERATIONS: PBKDF2 iteration count
            - IV_DEVICE_PROFILE_PATH: Device profile file
            - IV_PASSPHRASE: Passphrase (secret)
            - IV_CACHE_CAPACITY, IV_MAX_ATTEMPTS, IV_RETRY_BASE_DELAY,
              IV_RETRY_MAX_DELAY, IV_BATCH_CHUNK_SIZE,
              IV_QUOTA_WARNING_RATIO, IV_QUOTA_REJECT_RATIO

        Parameters:
            env_file: Optional .env file (defaults to the project root .env)

        Returns:
            ConfigManager instance
        """
        load_env_file(env_file)

        def env(name: str) -> Optional[str]:
            return os.getenv(f"{ENV_PREFIX}{name}")

        sections: Dict[str, Dict[str, Any]] = {
            "backend": {
                "backend_type": env("BACKEND_TYPE"),
                "db_path": env("DB_PATH"),
                "quota_bytes": env("QUOTA_BYTES"),
                "fallback_enabled": env("FALLBACK_ENABLED"),
            },
            "crypto": {
                "pbkdf2_iterations": env("PBKDF2_ITERATIONS"),
                "device_profile_path": env("DEVICE_PROFILE_PATH"),
                "passphrase": env("PASSPHRASE"),
            },
            "store": {
                "cache_capacity": env("CACHE_CAPACITY"),
                "max_attempts": env("MAX_ATTEMPTS"),
                "retry_base_delay": env("RETRY_BASE_DELAY"),
                "retry_max_delay": env("RETRY_MAX_DELAY"),
                "batch_chunk_size": env("BATCH_CHUNK_SIZE"),
                "quota_warning_ratio": env("QUOTA_WARNING_RATIO"),
                "quota_reject_ratio": env("QUOTA_REJECT_RATIO"),
            },
        }

        # Unset variables fall back to model defaults
        config_data = {
            section: {k: v for k, v in values.items() if v is not None}
            for section, values in sections.items()
        }
        return cls(config_data)

    @classmethod
    def from_file(cls, config_path: str) -> 'ConfigManager':
        """Load configuration from a JSON file.

        Parameters:
            config_path: Path to configuration file

        Returns:
            ConfigManager instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config file is invalid
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        # A passphrase may live in this file; warn on loose permissions
        stat_info = config_file.stat()
        if stat_info.st_mode & 0o077 != 0:
            logger.warning(
                f"Configuration file has overly permissive permissions: {config_path}. "
                "Consider setting to 600."
            )

        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file: {str(e)}") from e

        if not isinstance(config_data, dict):
            raise ValueError("Configuration file must contain a JSON object")
        return cls(config_data)

    def get_backend_config(self) -> BackendConfig:
        if self._backend_config is None:
            self._backend_config = BackendConfig(**self._config_data.get("backend", {}))
        return self._backend_config

    def get_crypto_config(self) -> CryptoConfig:
        """Get key derivation configuration (passphrase kept as SecretStr)."""
        if self._crypto_config is None:
            self._crypto_config = CryptoConfig(**self._config_data.get("crypto", {}))
        return self._crypto_config

    def get_store_config(self) -> RecordStoreConfig:
        if self._store_config is None:
            self._store_config = RecordStoreConfig(**self._config_data.get("store", {}))
        return self._store_config

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key.

        Parameters:
            key: Configuration key (supports dot notation, e.g., "store.cache_capacity")
            default: Default value if key not found

        Returns:
            Configuration value
        """
        keys = key.split(".")
        value: Any = self._config_data

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default

        return value if value is not None else default
