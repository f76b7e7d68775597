"""In-memory Key-Value Storage Adapter.

Dict-backed implementation of KeyValuePort. The record store uses it as the
degraded fallback when the primary backend is full or unreachable, and tests
use it as a fast primary. Nothing written here survives the process.
"""

import asyncio
import logging
from typing import Optional

from src.domain.ports import KeyValuePort, QuotaExceededError, StorageEstimate

logger = logging.getLogger(__name__)


class InMemoryKeyValueAdapter(KeyValuePort):
    """Volatile key-value backend.

    Parameters:
        quota_bytes: Optional byte budget, enforced like the DuckDB adapter
        initial: Optional key -> value pairs to start with
    """

    name = "memory"

    def __init__(self, quota_bytes: Optional[int] = None, initial: Optional[dict[str, str]] = None):
        self._data: dict[str, str] = dict(initial or {})
        self.quota_bytes = quota_bytes

    def _usage(self) -> int:
        return sum(len(k.encode('utf-8')) + len(v.encode('utf-8')) for k, v in self._data.items())

    async def get(self, key: str) -> Optional[str]:
        await asyncio.sleep(0)
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        await asyncio.sleep(0)
        if self.quota_bytes is not None:
            existing = self._data.get(key)
            existing_size = len(key.encode('utf-8')) + len(existing.encode('utf-8')) if existing is not None else 0
            projected = self._usage() - existing_size + len(key.encode('utf-8')) + len(value.encode('utf-8'))
            if projected > self.quota_bytes:
                raise QuotaExceededError(
                    f"Write of {key} would exceed the {self.quota_bytes}-byte quota",
                    operation="set",
                    details={"projected": projected, "quota": self.quota_bytes},
                )
        self._data[key] = value

    async def delete(self, key: str) -> bool:
        await asyncio.sleep(0)
        return self._data.pop(key, None) is not None

    async def list_keys(self, prefix: str = "") -> list[str]:
        await asyncio.sleep(0)
        return sorted(k for k in self._data if k.startswith(prefix))

    async def estimate(self) -> Optional[StorageEstimate]:
        if self.quota_bytes is None:
            return None
        return StorageEstimate(usage=self._usage(), quota=self.quota_bytes)

    def __len__(self) -> int:
        return len(self._data)
