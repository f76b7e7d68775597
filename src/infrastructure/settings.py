"""Application-level settings for the vault CLI.

Backend, crypto and store configuration come from the ConfigManager (loaded
lazily); the values here are the ones only the application layer needs:
logging mode, the audit trail location and the export/import size limits.
A .env file is read before any of them, so it covers both groups.

Security Impact:
    - The passphrase stays inside CryptoConfig as a SecretStr
    - Size ceilings protect against oversized import files
"""

import os
from pathlib import Path
from typing import Optional

from src.infrastructure.config_manager import (
    BackendConfig,
    ConfigManager,
    CryptoConfig,
    RecordStoreConfig,
    load_env_file,
)

# Application metadata
APP_NAME = "Intake-Vault"
APP_VERSION = "1.0.0"

# Audit trail (JSON lines)
DEFAULT_AUDIT_LOG_PATH = "data/audit_log.jsonl"

# Export file ceilings (MB): refuse above the max, warn above the warning
DEFAULT_EXPORT_MAX_MB = 20.0
DEFAULT_EXPORT_WARN_MB = 10.0

# Import ceilings (MB): file size, and parsed content size
DEFAULT_IMPORT_MAX_FILE_MB = 20.0
DEFAULT_IMPORT_MAX_CONTENT_MB = 25.0


class Settings:
    """IV_* application settings plus lazy access to the ConfigManager models."""

    def __init__(self, config_manager: Optional[ConfigManager] = None, env_file: Optional[Path] = None):
        self._config_manager = config_manager
        self._env_file = env_file
        load_env_file(env_file)

        self.app_name = os.getenv("IV_APP_NAME", APP_NAME)
        self.log_level = os.getenv("IV_LOG_LEVEL", "INFO")
        self.log_json = os.getenv("IV_LOG_JSON", "false").lower() == "true"
        self.audit_log_path = os.getenv("IV_AUDIT_LOG_PATH", DEFAULT_AUDIT_LOG_PATH)

        self.export_max_mb = float(os.getenv("IV_EXPORT_MAX_MB", str(DEFAULT_EXPORT_MAX_MB)))
        self.export_warn_mb = float(os.getenv("IV_EXPORT_WARN_MB", str(DEFAULT_EXPORT_WARN_MB)))
        self.import_max_file_mb = float(os.getenv("IV_IMPORT_MAX_FILE_MB", str(DEFAULT_IMPORT_MAX_FILE_MB)))
        self.import_max_content_mb = float(
            os.getenv("IV_IMPORT_MAX_CONTENT_MB", str(DEFAULT_IMPORT_MAX_CONTENT_MB))
        )

    @property
    def config_manager(self) -> ConfigManager:
        """Get configuration manager instance (loaded lazily)."""
        if self._config_manager is None:
            self._config_manager = ConfigManager.from_environment(self._env_file)
        return self._config_manager

    @property
    def backend_config(self) -> BackendConfig:
        return self.config_manager.get_backend_config()

    @property
    def crypto_config(self) -> CryptoConfig:
        return self.config_manager.get_crypto_config()

    @property
    def store_config(self) -> RecordStoreConfig:
        return self.config_manager.get_store_config()


# Global settings instance
settings = Settings()
