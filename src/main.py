"""Composition root for the Patient Intake Vault.

This module wires configuration, the device profile, key derivation, the
storage backends and the RecordStore together. Nothing else in the code base
constructs concrete adapters.

Security Impact:
    - The passphrase is only used to derive the key and is never stored
    - The device salt is created once and reused; it is never regenerated
    - Backends only ever receive encrypted envelopes

Architecture:
    - Follows Hexagonal Architecture principles
    - Backend adapters are selected from BackendConfig
    - The in-memory fallback is attached when fallback_enabled is set
"""

import logging
from typing import Optional

from src.adapters.storage import DuckDBKeyValueAdapter, InMemoryKeyValueAdapter
from src.domain.ports import CryptoError, KeyValuePort
from src.infrastructure.audit import AuditLogger
from src.infrastructure.config_manager import BackendConfig
from src.infrastructure.device_profile import load_or_create_device_profile
from src.infrastructure.encryption import EncryptionService
from src.infrastructure.events import EventEmitter
from src.infrastructure.settings import Settings, settings as default_settings
from src.services.record_store import RecordStore

logger = logging.getLogger(__name__)


def create_backend(backend_config: BackendConfig) -> KeyValuePort:
    """Create the primary backend described by ``backend_config``.

    Raises:
        ValueError: If the backend type is unsupported
    """
    if backend_config.backend_type == "duckdb":
        logger.info(f"Initializing DuckDB backend with path: {backend_config.db_path or ':memory:'}")
        return DuckDBKeyValueAdapter(backend_config=backend_config)
    elif backend_config.backend_type == "memory":
        logger.info("Initializing in-memory backend (data is not persisted)")
        return InMemoryKeyValueAdapter(quota_bytes=backend_config.quota_bytes)
    else:
        raise ValueError(f"Unsupported backend type: {backend_config.backend_type}")


def resolve_passphrase(passphrase: Optional[str], settings: Settings) -> str:
    """Pick the explicit passphrase, else the configured one.

    Raises:
        CryptoError: If neither is available
    """
    if passphrase:
        return passphrase
    configured = settings.crypto_config.passphrase
    if configured is not None and configured.get_secret_value():
        return configured.get_secret_value()
    raise CryptoError("A passphrase is required to open the vault")


def create_record_store(
    passphrase: Optional[str] = None,
    settings: Optional[Settings] = None,
    emitter: Optional[EventEmitter] = None,
    audit: Optional[AuditLogger] = None
) -> RecordStore:
    """Build a RecordStore from configuration.

    Parameters:
        passphrase: Passphrase (falls back to IV_PASSPHRASE / config file)
        settings: Application settings (global settings if None)
        emitter: Optional shared EventEmitter
        audit: Optional shared AuditLogger

    Returns:
        RecordStore: Ready to use; call ``close()`` when done

    Raises:
        CryptoError: If no passphrase is available or the device profile is unreadable
    """
    settings = settings or default_settings
    backend_config = settings.backend_config
    crypto_config = settings.crypto_config

    profile = load_or_create_device_profile(crypto_config.device_profile_path)
    cipher = EncryptionService(
        passphrase=resolve_passphrase(passphrase, settings),
        salt=profile.salt_bytes,
        iterations=crypto_config.pbkdf2_iterations,
    )

    fallback = InMemoryKeyValueAdapter() if backend_config.fallback_enabled else None
    store = RecordStore(
        backend=create_backend(backend_config),
        cipher=cipher,
        config=settings.store_config,
        fallback=fallback,
        emitter=emitter,
        audit=audit or AuditLogger(path=settings.audit_log_path),
        device_id=profile.device_id,
    )
    logger.info(f"Record store ready (device {profile.device_id}, key {cipher.get_key_id()})")
    return store


if __name__ == "__main__":
    from src.cli import app

    app()
