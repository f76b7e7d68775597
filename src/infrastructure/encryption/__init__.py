"""Record encryption (PBKDF2 key derivation + AES-GCM)."""

from src.infrastructure.encryption.encryption_service import (
    EncryptionService,
    derive_key,
    encrypt,
    decrypt,
)

__all__ = ['EncryptionService', 'derive_key', 'encrypt', 'decrypt']
