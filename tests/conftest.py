"""Shared fixtures for the record store test suite."""

import logging

import pytest

from src.adapters.storage import InMemoryKeyValueAdapter
from src.domain.guardrails import RetryConfig, RetryPolicy
from src.infrastructure.encryption import EncryptionService
from src.services.record_store import RecordStore

TEST_SALT = b"0123456789abcdef"


@pytest.fixture(scope="session")
def cipher():
    """Cipher keyed with the passphrase used throughout the tests."""
    return EncryptionService(passphrase="pin1234", salt=TEST_SALT)


@pytest.fixture(scope="session")
def other_cipher():
    """Cipher keyed with a different passphrase (same salt)."""
    return EncryptionService(passphrase="not-the-pin", salt=TEST_SALT)


@pytest.fixture
def backend():
    return InMemoryKeyValueAdapter()


@pytest.fixture
def make_store(cipher):
    """Factory for stores whose retries never sleep."""
    def factory(backend=None, **kwargs):
        kwargs.setdefault("retry_policy", RetryPolicy(RetryConfig(max_attempts=3, base_delay=0.0, max_delay=0.0)))
        return RecordStore(backend if backend is not None else InMemoryKeyValueAdapter(), cipher, **kwargs)
    return factory


@pytest.fixture
def store(make_store, backend):
    return make_store(backend)


@pytest.fixture
def restore_root_logger():
    """Undo setup_logging() handler changes made during a test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
