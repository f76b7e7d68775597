"""Storage adapters for the Patient Intake Vault.

This module contains key-value backends that implement the KeyValuePort
interface: a persistent DuckDB primary and an in-memory fallback.
"""

from src.adapters.storage.duckdb_kv_adapter import DuckDBKeyValueAdapter
from src.adapters.storage.memory_adapter import InMemoryKeyValueAdapter

__all__ = ["DuckDBKeyValueAdapter", "InMemoryKeyValueAdapter"]
