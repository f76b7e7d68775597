"""Unit tests for InMemoryKeyValueAdapter."""

import pytest

from src.adapters.storage import InMemoryKeyValueAdapter
from src.domain.ports import QuotaExceededError


class TestInMemoryKeyValueAdapter:
    """Test suite for the in-memory backend."""

    @pytest.mark.asyncio
    async def test_basic_operations(self):
        adapter = InMemoryKeyValueAdapter()
        await adapter.set("patient-b", "2")
        await adapter.set("patient-a", "1")
        await adapter.set("backup-a-1", "0")

        assert await adapter.get("patient-a") == "1"
        assert await adapter.get("missing") is None
        assert await adapter.list_keys("patient-") == ["patient-a", "patient-b"]
        assert await adapter.delete("patient-a")
        assert not await adapter.delete("patient-a")
        assert len(adapter) == 2

    @pytest.mark.asyncio
    async def test_initial_data_and_clear(self):
        adapter = InMemoryKeyValueAdapter(initial={"patient-a": "1", "patient-b": "2", "other": "x"})
        assert await adapter.clear("patient-") == 2
        assert await adapter.list_keys() == ["other"]

    @pytest.mark.asyncio
    async def test_quota(self):
        adapter = InMemoryKeyValueAdapter(quota_bytes=20)
        await adapter.set("k", "x" * 10)
        await adapter.set("k", "y" * 19)

        with pytest.raises(QuotaExceededError):
            await adapter.set("k2", "z")
        assert await adapter.get("k2") is None

        estimate = await adapter.estimate()
        assert estimate.usage == 20
        assert estimate.ratio == 1.0

    @pytest.mark.asyncio
    async def test_no_estimate_without_quota(self):
        assert await InMemoryKeyValueAdapter().estimate() is None
