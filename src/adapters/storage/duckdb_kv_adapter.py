"""DuckDB Key-Value Storage Adapter.

This adapter implements the KeyValuePort contract on top of a single DuckDB
table, giving the record store a persistent, file-backed primary backend.

Security Impact:
    - Only opaque, already-encrypted values are written
    - An optional byte quota stops the database from filling the device
    - Connection failures are reported as BackendUnavailableError so the
      store can fall back instead of losing the write

Architecture:
    - Implements KeyValuePort (Hexagonal Architecture)
    - Isolated from domain core - only depends on ports and configuration
    - DuckDB is synchronous; calls run in a worker thread behind a lock
      because the connection is shared
"""

import asyncio
import logging
import threading
from pathlib import Path
from typing import Callable, Optional, TypeVar

import duckdb

from src.domain.ports import (
    BackendUnavailableError,
    KeyValuePort,
    QuotaExceededError,
    StorageError,
    StorageEstimate,
)
from src.infrastructure.config_manager import BackendConfig

logger = logging.getLogger(__name__)

T = TypeVar('T')

_TABLE = "kv_store"


class DuckDBKeyValueAdapter(KeyValuePort):
    """DuckDB implementation of KeyValuePort.

    Parameters:
        backend_config: BackendConfig from configuration manager (preferred)
        db_path: Path to DuckDB database file (or ':memory:')
        quota_bytes: Byte budget for stored keys and values (None = unlimited)

    Example Usage:
        ```python
        adapter = DuckDBKeyValueAdapter(db_path="data/intake_vault.duckdb")
        await adapter.set("patient-abc123", envelope_json)
        value = await adapter.get("patient-abc123")
        await adapter.close()
        ```
    """

    name = "duckdb"

    def __init__(
        self,
        backend_config: Optional[BackendConfig] = None,
        db_path: Optional[str] = None,
        quota_bytes: Optional[int] = None
    ):
        """Initialize DuckDB adapter.

        Note:
            If both backend_config and db_path are provided, backend_config
            takes precedence. If neither is provided, defaults to in-memory.
        """
        if backend_config:
            if backend_config.backend_type != "duckdb":
                raise StorageError(
                    f"BackendConfig type '{backend_config.backend_type}' does not match DuckDB adapter",
                    operation="__init__"
                )
            self.db_path = backend_config.db_path or ":memory:"
            self.quota_bytes = backend_config.quota_bytes
        else:
            self.db_path = db_path or ":memory:"
            self.quota_bytes = quota_bytes

        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialized = False
        self._lock = threading.Lock()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create the DuckDB connection (created lazily, then reused)."""
        if self._connection is None:
            try:
                if self.db_path != ":memory:":
                    Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
                self._connection = duckdb.connect(self.db_path)
                logger.info(f"Connected to DuckDB database: {self.db_path}")
            except (duckdb.Error, OSError) as e:
                raise BackendUnavailableError(
                    f"Failed to connect to DuckDB: {str(e)}",
                    operation="connect",
                    details={"db_path": self.db_path}
                ) from e
        return self._connection

    def _initialize_schema(self, conn: duckdb.DuckDBPyConnection) -> None:
        if self._initialized:
            return
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {_TABLE} (
                key VARCHAR PRIMARY KEY,
                value VARCHAR NOT NULL,
                updated_at TIMESTAMP DEFAULT current_timestamp
            )
        """)
        self._initialized = True

    def _run(self, operation: str, fn: Callable[[duckdb.DuckDBPyConnection], T]) -> T:
        """Execute ``fn`` against the connection, translating DuckDB errors."""
        with self._lock:
            conn = self._get_connection()
            try:
                self._initialize_schema(conn)
                return fn(conn)
            except (QuotaExceededError, BackendUnavailableError):
                raise
            except (duckdb.IOException, duckdb.ConnectionException) as e:
                raise BackendUnavailableError(
                    f"DuckDB unavailable during {operation}: {str(e)}", operation=operation
                ) from e
            except duckdb.OutOfMemoryException as e:
                raise QuotaExceededError(
                    f"DuckDB out of space during {operation}: {str(e)}", operation=operation
                ) from e
            except duckdb.Error as e:
                raise StorageError(f"DuckDB {operation} failed: {str(e)}", operation=operation) from e

    async def _call(self, operation: str, fn: Callable[[duckdb.DuckDBPyConnection], T]) -> T:
        return await asyncio.to_thread(self._run, operation, fn)

    @staticmethod
    def _usage(conn: duckdb.DuckDBPyConnection) -> int:
        row = conn.execute(
            f"SELECT COALESCE(SUM(strlen(key) + strlen(value)), 0) FROM {_TABLE}"
        ).fetchone()
        return int(row[0]) if row else 0

    async def get(self, key: str) -> Optional[str]:
        def fn(conn: duckdb.DuckDBPyConnection) -> Optional[str]:
            row = conn.execute(f"SELECT value FROM {_TABLE} WHERE key = ?", [key]).fetchone()
            return row[0] if row else None

        return await self._call("get", fn)

    async def set(self, key: str, value: str) -> None:
        """Insert or replace ``key``.

        Raises:
            QuotaExceededError: If the write would exceed ``quota_bytes``
        """
        def fn(conn: duckdb.DuckDBPyConnection) -> None:
            if self.quota_bytes is not None:
                row = conn.execute(
                    f"SELECT strlen(key) + strlen(value) FROM {_TABLE} WHERE key = ?", [key]
                ).fetchone()
                existing = int(row[0]) if row else 0
                projected = self._usage(conn) - existing + len(key.encode('utf-8')) + len(value.encode('utf-8'))
                if projected > self.quota_bytes:
                    raise QuotaExceededError(
                        f"Write of {key} would exceed the {self.quota_bytes}-byte quota",
                        operation="set",
                        details={"projected": projected, "quota": self.quota_bytes},
                    )
            conn.execute(
                f"INSERT OR REPLACE INTO {_TABLE} (key, value, updated_at) VALUES (?, ?, current_timestamp)",
                [key, value],
            )

        await self._call("set", fn)

    async def delete(self, key: str) -> bool:
        def fn(conn: duckdb.DuckDBPyConnection) -> bool:
            row = conn.execute(f"SELECT 1 FROM {_TABLE} WHERE key = ?", [key]).fetchone()
            if row is None:
                return False
            conn.execute(f"DELETE FROM {_TABLE} WHERE key = ?", [key])
            return True

        return await self._call("delete", fn)

    async def list_keys(self, prefix: str = "") -> list[str]:
        def fn(conn: duckdb.DuckDBPyConnection) -> list[str]:
            rows = conn.execute(
                f"SELECT key FROM {_TABLE} WHERE starts_with(key, ?) ORDER BY key", [prefix]
            ).fetchall()
            return [r[0] for r in rows]

        return await self._call("list_keys", fn)

    async def clear(self, prefix: str = "") -> int:
        def fn(conn: duckdb.DuckDBPyConnection) -> int:
            row = conn.execute(
                f"SELECT COUNT(*) FROM {_TABLE} WHERE starts_with(key, ?)", [prefix]
            ).fetchone()
            conn.execute(f"DELETE FROM {_TABLE} WHERE starts_with(key, ?)", [prefix])
            return int(row[0]) if row else 0

        return await self._call("clear", fn)

    async def estimate(self) -> Optional[StorageEstimate]:
        """Report usage against the configured quota (None when unlimited)."""
        if self.quota_bytes is None:
            return None
        usage = await self._call("estimate", self._usage)
        return StorageEstimate(usage=usage, quota=self.quota_bytes)

    async def close(self) -> None:
        """Close storage connection and release resources."""
        with self._lock:
            if self._connection is not None:
                try:
                    self._connection.close()
                    logger.info("Closed DuckDB connection")
                except duckdb.Error as e:
                    logger.warning(f"Error closing connection: {str(e)}")
                finally:
                    self._connection = None
                    self._initialized = False
