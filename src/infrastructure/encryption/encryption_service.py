"""Encryption service for patient records.

This service derives a symmetric key from the user's passphrase and the
device salt, and encrypts/decrypts whole serialized records before they
reach a storage backend.

Security Impact:
    - AES-256-GCM authenticated encryption (tamper-evident)
    - Key derived with PBKDF2-HMAC-SHA256 at a high, fixed iteration count
    - A fresh random 12-byte nonce for every encryption call
    - Wrong key and tampered ciphertext fail identically (no oracle)
    - Keys, passphrases and plaintext are never logged

Architecture:
    - Infrastructure layer component
    - Used by the RecordStore for every save and load
    - Follows Hexagonal Architecture: isolated from domain core
"""

import base64
import binascii
import json
import logging
import os
from typing import Any, Dict, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import ValidationError as PydanticValidationError

from src.domain.patient_record import EncryptedEnvelope
from src.domain.ports import CryptoError, DataCorruptionError

logger = logging.getLogger(__name__)

#: PBKDF2 iteration count used for key derivation.
PBKDF2_ITERATIONS = 100_000

#: Derived key length in bytes (AES-256).
KEY_LENGTH = 32

#: AES-GCM nonce length in bytes.
NONCE_LENGTH = 12

# Single message for every authentication failure
_AUTH_FAILURE = "Decryption failed: wrong passphrase or tampered data"


def derive_key(passphrase: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """Derive an AES-256 key from a passphrase and salt.

    Deterministic: the same ``(passphrase, salt, iterations)`` always yields
    the same key.

    Parameters:
        passphrase: User passphrase or PIN
        salt: Per-device salt
        iterations: PBKDF2 iteration count

    Returns:
        bytes: 32-byte key

    Raises:
        CryptoError: If the passphrase or salt is empty
    """
    if not passphrase:
        raise CryptoError("Passphrase must not be empty")
    if not salt:
        raise CryptoError("Salt must not be empty")

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode('utf-8'))


def encrypt(plaintext: bytes, key: bytes) -> EncryptedEnvelope:
    """Encrypt ``plaintext`` with AES-GCM under a fresh random nonce.

    Returns:
        EncryptedEnvelope: base64 nonce and ciphertext (tag appended)

    Raises:
        CryptoError: If the primitive rejects the key or input
    """
    nonce = os.urandom(NONCE_LENGTH)
    try:
        ciphertext = AESGCM(key).encrypt(nonce, plaintext, None)
    except (ValueError, TypeError, OverflowError) as e:
        raise CryptoError(f"Encryption failed: {type(e).__name__}") from e

    return EncryptedEnvelope(
        iv=base64.b64encode(nonce).decode('ascii'),
        ciphertext=base64.b64encode(ciphertext).decode('ascii'),
    )


def decrypt(envelope: EncryptedEnvelope, key: bytes) -> bytes:
    """Decrypt and authenticate an envelope.

    Raises:
        CryptoError: On authentication failure (wrong key or tampering)
        DataCorruptionError: If the envelope fields are not valid base64
    """
    try:
        nonce = base64.b64decode(envelope.iv, validate=True)
        ciphertext = base64.b64decode(envelope.ciphertext, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DataCorruptionError("Encrypted envelope is not valid base64") from e

    if len(nonce) != NONCE_LENGTH:
        raise DataCorruptionError(f"Encrypted envelope nonce must be {NONCE_LENGTH} bytes")

    try:
        return AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag:
        raise CryptoError(_AUTH_FAILURE) from None
    except (ValueError, TypeError) as e:
        raise CryptoError(_AUTH_FAILURE) from e


class EncryptionService:
    """Service for encrypting/decrypting whole patient records.

    The key is derived once at construction; every call reuses it with a
    fresh nonce.

    Security Impact:
        - All record data is encrypted before it reaches a backend
        - The derived key only lives in this object
        - ``key_id`` is a non-secret fingerprint usable in diagnostics
    """

    def __init__(
        self,
        passphrase: Optional[str] = None,
        salt: Optional[bytes] = None,
        key: Optional[bytes] = None,
        iterations: int = PBKDF2_ITERATIONS
    ):
        """Initialize encryption service.

        Parameters:
            passphrase: User passphrase (required unless ``key`` is given)
            salt: Device salt (required unless ``key`` is given)
            key: Pre-derived 32-byte key
            iterations: PBKDF2 iteration count

        Raises:
            CryptoError: If no usable key can be obtained
        """
        if key is None:
            if passphrase is None or salt is None:
                raise CryptoError("EncryptionService requires a passphrase and salt, or a key")
            key = derive_key(passphrase, salt, iterations)

        if len(key) != KEY_LENGTH:
            raise CryptoError(f"Encryption key must be {KEY_LENGTH} bytes")

        self._key = key
        self.key_id = _fingerprint(key)
        logger.debug(f"EncryptionService initialized with key_id: {self.key_id}")

    def encrypt_bytes(self, data: bytes) -> EncryptedEnvelope:
        return encrypt(data, self._key)

    def decrypt_bytes(self, envelope: EncryptedEnvelope) -> bytes:
        return decrypt(envelope, self._key)

    def encrypt_record(self, record_dict: Dict[str, Any]) -> str:
        """Encrypt entire record as JSON.

        Parameters:
            record_dict: Dictionary representing the record

        Returns:
            str: Serialized EncryptedEnvelope, ready for a backend

        Raises:
            CryptoError: If the record cannot be serialized or encrypted
        """
        try:
            json_str = json.dumps(record_dict, default=str, sort_keys=True, separators=(',', ':'))
        except (TypeError, ValueError) as e:
            raise CryptoError(f"Record is not serializable: {type(e).__name__}") from e

        envelope = self.encrypt_bytes(json_str.encode('utf-8'))
        return envelope.model_dump_json()

    def decrypt_record(self, stored: Union[str, bytes]) -> Any:
        """Decrypt a stored envelope back into the record.

        Parameters:
            stored: Serialized EncryptedEnvelope as written by encrypt_record

        Returns:
            The decoded JSON value (a dict for well-formed records)

        Raises:
            DataCorruptionError: If the stored value is not an envelope or
                the authenticated plaintext is not JSON
            CryptoError: On authentication failure
        """
        envelope = parse_envelope(stored)
        plaintext = self.decrypt_bytes(envelope)
        try:
            return json.loads(plaintext.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DataCorruptionError("Decrypted record is not valid JSON") from e

    def get_key_id(self) -> str:
        """Get the current encryption key fingerprint."""
        return self.key_id


def parse_envelope(stored: Union[str, bytes]) -> EncryptedEnvelope:
    """Parse a serialized envelope.

    Raises:
        DataCorruptionError: If ``stored`` is not a valid envelope
    """
    try:
        return EncryptedEnvelope.model_validate_json(stored)
    except PydanticValidationError as e:
        raise DataCorruptionError("Stored value is not an encrypted envelope") from e


def _fingerprint(key: bytes) -> str:
    # Short, non-reversible identifier for the key
    digest = hashes.Hash(hashes.SHA256())
    digest.update(b"key-id:" + key)
    return digest.finalize().hex()[:12]
