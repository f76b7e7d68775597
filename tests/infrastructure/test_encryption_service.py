"""Unit tests for the encryption service."""

import base64
import json

import pytest

from src.domain.patient_record import EncryptedEnvelope
from src.domain.ports import CryptoError, DataCorruptionError
from src.infrastructure.encryption import EncryptionService, decrypt, derive_key, encrypt

SALT = b"fedcba9876543210"
ITERATIONS = 10_000


@pytest.fixture(scope="module")
def service():
    return EncryptionService(passphrase="pin1234", salt=SALT, iterations=ITERATIONS)


class TestKeyDerivation:
    """Test suite for derive_key."""

    def test_deterministic(self):
        assert derive_key("pin1234", SALT, ITERATIONS) == derive_key("pin1234", SALT, ITERATIONS)

    def test_depends_on_passphrase_and_salt(self):
        key = derive_key("pin1234", SALT, ITERATIONS)
        assert len(key) == 32
        assert key != derive_key("pin1235", SALT, ITERATIONS)
        assert key != derive_key("pin1234", b"0000000000000000", ITERATIONS)

    @pytest.mark.parametrize("passphrase,salt", [("", SALT), ("pin1234", b"")])
    def test_rejects_empty_inputs(self, passphrase, salt):
        with pytest.raises(CryptoError):
            derive_key(passphrase, salt, ITERATIONS)


class TestPrimitives:
    """Test suite for encrypt/decrypt."""

    def test_fresh_nonce_per_call(self):
        key = derive_key("pin1234", SALT, ITERATIONS)
        first = encrypt(b"same", key)
        second = encrypt(b"same", key)
        assert first.iv != second.iv
        assert first.ciphertext != second.ciphertext
        assert len(base64.b64decode(first.iv)) == 12

    def test_wrong_key_fails_like_tampering(self):
        key = derive_key("pin1234", SALT, ITERATIONS)
        other = derive_key("other", SALT, ITERATIONS)
        envelope = encrypt(b"secret", key)

        raw = bytearray(base64.b64decode(envelope.ciphertext))
        raw[0] ^= 0x01
        tampered = EncryptedEnvelope(iv=envelope.iv, ciphertext=base64.b64encode(bytes(raw)).decode())

        with pytest.raises(CryptoError) as wrong_key:
            decrypt(envelope, other)
        with pytest.raises(CryptoError) as tampered_error:
            decrypt(tampered, key)
        assert str(wrong_key.value) == str(tampered_error.value)

    def test_bad_base64_is_corruption(self):
        key = derive_key("pin1234", SALT, ITERATIONS)
        with pytest.raises(DataCorruptionError):
            decrypt(EncryptedEnvelope(iv="***", ciphertext="AAAA"), key)

    def test_short_nonce_is_corruption(self):
        key = derive_key("pin1234", SALT, ITERATIONS)
        with pytest.raises(DataCorruptionError):
            decrypt(EncryptedEnvelope(iv="AAAA", ciphertext="AAAA"), key)


class TestEncryptionService:
    """Test suite for EncryptionService."""

    def test_record_round_trip(self, service):
        record = {"id": "abc123", "name": "Jane Doe", "patientInfo": {"age": 40}}
        stored = service.encrypt_record(record)

        assert set(json.loads(stored)) == {"v", "iv", "ciphertext"}
        assert "Jane" not in stored
        assert service.decrypt_record(stored) == record

    def test_same_key_from_key_bytes(self, service):
        key = derive_key("pin1234", SALT, ITERATIONS)
        clone = EncryptionService(key=key)
        assert clone.get_key_id() == service.get_key_id()
        assert clone.decrypt_record(service.encrypt_record({"id": "x"})) == {"id": "x"}

    def test_key_id_differs_per_key(self, service):
        other = EncryptionService(passphrase="not-the-pin", salt=SALT, iterations=ITERATIONS)
        assert other.get_key_id() != service.get_key_id()
        assert len(service.get_key_id()) == 12

    def test_wrong_passphrase(self, service):
        other = EncryptionService(passphrase="not-the-pin", salt=SALT, iterations=ITERATIONS)
        with pytest.raises(CryptoError):
            other.decrypt_record(service.encrypt_record({"id": "abc123"}))

    @pytest.mark.parametrize("stored", ["garbage", "{}", '{"iv": 1}', "[]"])
    def test_non_envelope_is_corruption(self, service, stored):
        with pytest.raises(DataCorruptionError):
            service.decrypt_record(stored)

    def test_non_json_plaintext_is_corruption(self, service):
        envelope = service.encrypt_bytes(b"\xff\xfe not json")
        with pytest.raises(DataCorruptionError):
            service.decrypt_record(envelope.model_dump_json())

    def test_construction_errors(self):
        with pytest.raises(CryptoError):
            EncryptionService(passphrase="pin1234")
        with pytest.raises(CryptoError):
            EncryptionService(key=b"short")
