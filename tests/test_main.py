"""Tests for the composition root."""

import pytest

from src.adapters.storage import DuckDBKeyValueAdapter, InMemoryKeyValueAdapter
from src.domain.ports import CryptoError
from src.infrastructure.config_manager import BackendConfig, ConfigManager
from src.infrastructure.settings import Settings
from src.main import create_backend, create_record_store, resolve_passphrase


def make_settings(root, **crypto):
    crypto.setdefault("pbkdf2_iterations", 10_000)
    crypto.setdefault("device_profile_path", str(root / "profile.json"))
    settings = Settings(ConfigManager({"backend": {"backend_type": "memory"}, "crypto": crypto}))
    settings.audit_log_path = str(root / "audit.jsonl")
    return settings


class TestCompositionRoot:
    """Test backend selection and store wiring."""

    def test_create_backend(self):
        assert isinstance(create_backend(BackendConfig(backend_type="memory")), InMemoryKeyValueAdapter)
        duckdb_backend = create_backend(BackendConfig(backend_type="duckdb", db_path=":memory:"))
        assert isinstance(duckdb_backend, DuckDBKeyValueAdapter)

    def test_resolve_passphrase(self, tmp_path):
        assert resolve_passphrase("explicit", make_settings(tmp_path, passphrase="configured")) == "explicit"
        assert resolve_passphrase(None, make_settings(tmp_path, passphrase="configured")) == "configured"
        with pytest.raises(CryptoError):
            resolve_passphrase("", make_settings(tmp_path))

    @pytest.mark.asyncio
    async def test_store_survives_reopen(self, tmp_path):
        settings = make_settings(tmp_path)
        store = create_record_store("pin1234", settings=settings)
        await store.save("abc123", {"name": "Jane Doe", "dateCreated": "2024-01-01T00:00:00Z"})
        payload = await store.export_all()
        await store.close()

        reopened = create_record_store("pin1234", settings=settings)
        assert reopened.device_id == payload["metadata"]["deviceId"]
        assert reopened.cache_info()["fallback"] == "memory"
        assert reopened.audit_log(action="SAVE_PATIENT")[0].patient_id == "abc123"
        await reopened.close()
